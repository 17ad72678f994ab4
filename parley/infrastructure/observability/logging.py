"""
Structured logging and in-process metrics.

Every module logs through ``structlog.get_logger(__name__)``. The orchestrator
binds ``request_id`` and ``channel_id`` as context vars for the duration of a
response, so everything logged underneath carries them.
"""

import structlog
import logging
import sys
from typing import Dict, Any, List, Optional
from collections import defaultdict
from dataclasses import dataclass
from importlib import metadata

# Context vars promoted onto every event when the caller did not set them
REQUEST_CONTEXT_KEYS = ("request_id", "channel_id", "user_id")


def _package_version() -> str:
    try:
        return metadata.version("parley")
    except metadata.PackageNotFoundError:
        return "unknown"


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    service_name: str = "parley",
    environment: str = "development"
) -> None:
    """Route structlog through stdlib logging with a JSON or console renderer"""

    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level, force=True)

    shared: List[Any] = [
        structlog.contextvars.merge_contextvars,
        add_service_context,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    renderer = structlog.dev.ConsoleRenderer() if log_format == "console" else structlog.processors.JSONRenderer()

    structlog.configure(
        processors=shared + [renderer],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.bind_contextvars(
        service=service_name,
        environment=environment,
        version=_package_version()
    )


def add_service_context(logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Copy bound request identifiers onto the event"""

    bound = structlog.contextvars.get_contextvars()
    for key in REQUEST_CONTEXT_KEYS:
        if key in bound:
            event_dict.setdefault(key, bound[key])
    return event_dict


class EngineLogger:
    """Domain events with a fixed shape, so dashboards can key on them"""

    def __init__(self, name: str):
        self.logger = structlog.get_logger(name)

    def log_context_build(
        self,
        channel_id: str,
        recent_count: int,
        relevant_count: int,
        token_estimate: int,
        quality: float,
        cached: bool = False,
        **kwargs
    ):
        self.logger.info(
            "context_build",
            channel_id=channel_id,
            sections={"recent": recent_count, "relevant": relevant_count},
            token_estimate=token_estimate,
            quality=round(quality, 3),
            cached=cached,
            **kwargs
        )

    def log_provider_call(
        self,
        provider: str,
        operation: str,
        duration_ms: Optional[float] = None,
        success: bool = True,
        error: Optional[str] = None,
        **kwargs
    ):
        log = self.logger.info if success else self.logger.warning
        log(
            "provider_call",
            provider=provider,
            operation=operation,
            duration_ms=round(duration_ms, 2) if duration_ms is not None else None,
            success=success,
            error=error,
            **kwargs
        )

    def log_cache_event(self, tier: str, action: str, key: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.logger.debug("cache_event", tier=tier, action=action, key=key, **(details or {}))

    def log_budget_alert(self, level: str, spent: float, budget: float, window: str = "daily"):
        """Budget threshold crossed; ``level`` is warning or exceeded"""

        usage = spent / budget if budget else None
        self.logger.warning(
            "budget_alert",
            level=level,
            window=window,
            spent=round(spent, 6),
            budget=budget,
            percentage=round(usage * 100, 1) if usage is not None else None
        )


engine_logger = EngineLogger("parley")


@dataclass
class LatencyStats:
    count: int = 0
    total: float = 0.0
    low: float = float("inf")
    high: float = 0.0

    def add(self, value: float) -> None:
        self.count += 1
        self.total += value
        self.low = min(self.low, value)
        self.high = max(self.high, value)

    def summary(self) -> Dict[str, float]:
        if self.count == 0:
            return {"count": 0, "avg": 0, "min": 0, "max": 0}
        return {"count": self.count, "avg": self.total / self.count, "min": self.low, "max": self.high}


class MetricsCollector:
    """Latencies, counters and gauges held in process and reported on /health"""

    def __init__(self):
        self.latencies: Dict[str, LatencyStats] = defaultdict(LatencyStats)
        self.counters: Dict[str, int] = defaultdict(int)
        self.gauges: Dict[str, float] = {}

    def record_latency(self, operation: str, duration_ms: float, tags: Optional[Dict[str, str]] = None):
        self.latencies[operation].add(duration_ms)
        engine_logger.logger.debug("metric", kind="latency", name=operation, value=duration_ms, tags=tags or {})

    def increment_counter(self, name: str, value: int = 1, tags: Optional[Dict[str, str]] = None):
        self.counters[name] += value
        engine_logger.logger.debug("metric", kind="counter", name=name, value=value, tags=tags or {})

    def set_gauge(self, name: str, value: float, tags: Optional[Dict[str, str]] = None):
        self.gauges[name] = value
        engine_logger.logger.debug("metric", kind="gauge", name=name, value=value, tags=tags or {})

    def get_metrics_summary(self) -> Dict[str, Any]:
        summary: Dict[str, Any] = {f"latency.{name}": stats.summary() for name, stats in self.latencies.items()}
        summary.update(self.counters)
        summary.update(self.gauges)
        return summary

    def reset(self):
        self.latencies.clear()
        self.counters.clear()
        self.gauges.clear()


metrics = MetricsCollector()
