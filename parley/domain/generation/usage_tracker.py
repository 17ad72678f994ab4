"""
Token usage and cost accounting.

Records are append-only and rolled up into hourly, daily, per-model and
per-operation aggregates. Everything older than the retention window is
pruned on write. Aggregates tolerate lost updates; they drive budget
decisions and reports, not billing.
"""

from typing import Dict, Any, List, Optional, Callable
from collections import defaultdict, deque
from datetime import datetime, timedelta, timezone
import structlog

from parley.domain.models.generation import UsageRecord
from parley.infrastructure.config.settings import BudgetConfig
from parley.infrastructure.errors import BudgetExceeded
from parley.infrastructure.observability.logging import engine_logger

logger = structlog.get_logger(__name__)

ALERT_LEVELS = (
    (1.0, "exceeded"),
    (0.8, "warning"),
)
ALERT_RANK = {"warning": 1, "exceeded": 2}


def _new_bucket() -> Dict[str, float]:
    return {"tokens": 0, "cost": 0.0}


def hour_key(moment: datetime) -> str:
    return moment.strftime("%Y-%m-%dT%H")


def day_key(moment: datetime) -> str:
    return moment.strftime("%Y-%m-%d")


class UsageTracker:
    """In-process usage ledger with rollups and budget alerts"""

    def __init__(
        self,
        config: Optional[BudgetConfig] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.config = config or BudgetConfig()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self.records: deque = deque()
        self.hourly: Dict[str, Dict[str, float]] = defaultdict(_new_bucket)
        self.daily: Dict[str, Dict[str, float]] = defaultdict(_new_bucket)
        self.by_model: Dict[str, Dict[str, float]] = defaultdict(_new_bucket)
        self.by_operation: Dict[str, Dict[str, float]] = defaultdict(_new_bucket)
        self._alerts_sent: Dict[str, str] = {}

    def calculate_cost(self, model: str, prompt_tokens: float, completion_tokens: float) -> float:
        """USD cost from the per-1K-token price table; unknown models cost 0"""

        costs = self.config.model_costs.get(model)
        if costs is None:
            logger.warning("unknown_model_cost", model=model)
            return 0.0

        return prompt_tokens / 1000 * costs["prompt"] + completion_tokens / 1000 * costs["completion"]

    async def track_usage(
        self,
        model: str,
        prompt_tokens: int = 0,
        completion_tokens: int = 0,
        operation: str = "completion",
        user_id: Optional[str] = None,
        channel_id: Optional[str] = None,
        timestamp: Optional[datetime] = None
    ) -> UsageRecord:
        """Append a usage record, update rollups and check the daily budget"""

        moment = timestamp or self._clock()
        record = UsageRecord(
            model=model,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            cost=self.calculate_cost(model, prompt_tokens, completion_tokens),
            operation=operation,
            user_id=user_id,
            channel_id=channel_id,
            timestamp=moment
        )

        self.records.append(record)
        for bucket in (
            self.hourly[hour_key(moment)],
            self.daily[day_key(moment)],
            self.by_model[model],
            self.by_operation[operation],
        ):
            bucket["tokens"] += record.total_tokens
            bucket["cost"] += record.cost

        self._prune(self._clock())
        self._check_budget_alerts(day_key(moment))

        logger.debug(
            "usage_tracked",
            model=model,
            operation=operation,
            tokens=record.total_tokens,
            cost=round(record.cost, 6)
        )
        return record

    def _prune(self, now: datetime):
        cutoff = now - timedelta(days=self.config.retention_days)

        while self.records and self.records[0].timestamp < cutoff:
            self.records.popleft()

        cutoff_day = day_key(cutoff)
        for key in [k for k in self.daily if k < cutoff_day]:
            del self.daily[key]
        for key in [k for k in self.hourly if k[:10] < cutoff_day]:
            del self.hourly[key]
        for key in [k for k in self._alerts_sent if k < cutoff_day]:
            del self._alerts_sent[key]

    def _check_budget_alerts(self, date_key: str):
        """Log once per level per day when daily spend crosses 80% / 100%"""

        budget = self.config.daily_budget
        if budget <= 0:
            return

        spent = self.daily[date_key]["cost"]
        for fraction, level in ALERT_LEVELS:
            if spent < budget * fraction:
                continue
            already = self._alerts_sent.get(date_key)
            if ALERT_RANK[level] > ALERT_RANK.get(already, 0):
                self._alerts_sent[date_key] = level
                engine_logger.log_budget_alert(level, spent, budget, window="daily")
            break

    def cost_since(self, since: datetime) -> Dict[str, float]:
        cost = 0.0
        tokens = 0
        for record in self.records:
            if record.timestamp >= since:
                cost += record.cost
                tokens += record.total_tokens
        return {"cost": cost, "tokens": tokens}

    def last_hour_cost(self) -> float:
        """Spend over the trailing 60 minutes"""
        return self.cost_since(self._clock() - timedelta(hours=1))["cost"]

    def check_hourly_budget(self) -> None:
        """Raise BudgetExceeded if the trailing hour is over budget"""

        spent = self.last_hour_cost()
        if spent > self.config.hourly_budget:
            raise BudgetExceeded(spent, self.config.hourly_budget, window="hourly")

    async def get_realtime_stats(self) -> Dict[str, Any]:
        """Trailing hour, trailing day and tokens/minute over 5 minutes"""

        now = self._clock()
        last_five = self.cost_since(now - timedelta(minutes=5))

        return {
            "last_hour": self.cost_since(now - timedelta(hours=1)),
            "last_24_hours": self.cost_since(now - timedelta(hours=24)),
            "current_rate": last_five["tokens"] / 5,
        }

    async def generate_report(self, days: int = 30) -> Dict[str, Any]:
        """Cost report over the last `days` days with projections"""

        now = self._clock()
        start = now - timedelta(days=days - 1)

        daily = {}
        for offset in range(days):
            key = day_key(start + timedelta(days=offset))
            if key in self.daily and self.daily[key]["cost"] > 0:
                daily[key] = self.daily[key]["cost"]

        hourly_cutoff = hour_key(now - timedelta(days=7))
        hourly = {key: bucket["cost"] for key, bucket in sorted(self.hourly.items()) if key >= hourly_cutoff}

        total = sum(daily.values())
        daily_average = total / len(daily) if daily else 0.0

        return {
            "total_cost": total,
            "by_model": {model: dict(bucket) for model, bucket in self.by_model.items()},
            "by_operation": {op: dict(bucket) for op, bucket in self.by_operation.items()},
            "by_time_range": {"hourly": hourly, "daily": daily},
            "projections": {
                "daily_average": daily_average,
                "monthly_projection": daily_average * 30,
                "yearly_projection": daily_average * 365,
            },
        }

    async def export_usage(self, start: datetime, end: datetime) -> List[UsageRecord]:
        """Raw records with start <= timestamp <= end"""
        return [r for r in self.records if start <= r.timestamp <= end]
