"""
Prompt experiments.

Users are bucketed deterministically: the first 8 hex digits of
md5("<test_id>:<user_id>") mod 100 are walked against the cumulative
allocation table, so the same user always lands on the same variant for a
given test. Every assignment counts as an impression.
"""

from typing import Dict, Any, List, Optional, Sequence
from datetime import datetime, timezone
import hashlib
import math
import structlog
from pydantic import ValidationError

from parley.domain.models.generation import PromptTest, PromptVariant, VariantMetrics
from parley.infrastructure.errors import PromptTestError
from parley.infrastructure.observability.logging import metrics

logger = structlog.get_logger(__name__)


def bucket_for(test_id: str, user_id: str) -> int:
    """Stable bucket in [0, 100) for a (test, user) pair"""

    digest = hashlib.md5(f"{test_id}:{user_id}".encode("utf-8")).hexdigest()
    return int(digest[:8], 16) % 100


def two_proportion_confidence(successes_a: int, trials_a: int, successes_b: int, trials_b: int) -> float:
    """Two-sided confidence that two rates differ, from a pooled z-test"""

    if trials_a == 0 or trials_b == 0:
        return 0.0

    pooled = (successes_a + successes_b) / (trials_a + trials_b)
    variance = pooled * (1 - pooled) * (1 / trials_a + 1 / trials_b)
    if variance <= 0:
        return 0.0

    z = abs(successes_a / trials_a - successes_b / trials_b) / math.sqrt(variance)
    return math.erf(z / math.sqrt(2))


class PromptOptimizer:
    """Runs A/B tests over prompt variants"""

    def __init__(self):
        self.tests: Dict[str, PromptTest] = {}

    def create_test(
        self,
        test_id: str,
        name: str,
        variants: Sequence[PromptVariant],
        allocation: Dict[str, int],
        prompt_type: str = "system",
        min_sample_size: int = 100
    ) -> PromptTest:
        if test_id in self.tests:
            raise PromptTestError(f"Prompt test already exists: {test_id}")

        try:
            test = PromptTest(
                id=test_id,
                name=name,
                prompt_type=prompt_type,
                variants=list(variants),
                allocation=dict(allocation),
                min_sample_size=min_sample_size
            )
        except ValidationError as e:
            raise PromptTestError(f"Invalid prompt test {test_id}: {e.errors()[0]['msg']}") from e

        self.tests[test_id] = test
        logger.info(
            "prompt_test_created",
            test_id=test_id,
            prompt_type=prompt_type,
            variants=[variant.id for variant in test.variants]
        )
        return test

    def get_test(self, test_id: str) -> PromptTest:
        test = self.tests.get(test_id)
        if test is None:
            raise PromptTestError(f"Unknown prompt test: {test_id}")
        return test

    def get_active_test(self, prompt_type: str) -> Optional[PromptTest]:
        """Oldest running test for a prompt type, if any"""

        active = [t for t in self.tests.values() if t.active and t.prompt_type == prompt_type]
        if not active:
            return None
        return min(active, key=lambda t: t.start_date)

    def select_variant(self, test_id: str, user_id: str) -> PromptVariant:
        """Assign a user to a variant and count the impression"""

        test = self.get_test(test_id)
        bucket = bucket_for(test_id, user_id)

        # Allocation sums to 100, so the walk always lands on a variant
        chosen = test.variants[-1]
        cumulative = 0
        for variant in test.variants:
            cumulative += test.allocation[variant.id]
            if bucket < cumulative:
                chosen = variant
                break

        test.metrics[chosen.id].impressions += 1
        metrics.increment_counter("prompt_tests.impressions", tags={"test_id": test_id, "variant": chosen.id})
        return chosen

    def track_metrics(
        self,
        test_id: str,
        variant_id: str,
        engaged: bool = False,
        quality: Optional[float] = None,
        response_time: Optional[float] = None,
        tokens: Optional[int] = None,
        error: bool = False,
        converted: bool = False
    ) -> VariantMetrics:
        test = self.get_test(test_id)
        if variant_id not in test.metrics:
            raise PromptTestError(f"Unknown variant {variant_id} for test {test_id}")

        variant_metrics = test.metrics[variant_id]
        if engaged:
            variant_metrics.engagements += 1
        if quality is not None:
            variant_metrics.quality_total += quality
            variant_metrics.quality_samples += 1
        if response_time is not None:
            variant_metrics.response_time_total += response_time
        if tokens is not None:
            variant_metrics.tokens_total += tokens
        if error:
            variant_metrics.errors += 1
        if converted:
            variant_metrics.conversions += 1

        return variant_metrics

    def get_test_results(self, test_id: str) -> Dict[str, Any]:
        """
        Per-variant rollups plus a winner once every variant has reached the
        minimum sample size. Confidence compares engagement rates of the top
        two variants.
        """

        test = self.get_test(test_id)

        variants: List[Dict[str, Any]] = []
        for variant in test.variants:
            m = test.metrics[variant.id]
            variants.append({
                "variant_id": variant.id,
                "name": variant.name,
                "impressions": m.impressions,
                "engagement_rate": m.engagement_rate,
                "average_quality": m.average_quality,
                "average_response_time": m.average_response_time,
                "error_rate": m.error_rate,
                "tokens": m.tokens_total,
                "conversions": m.conversions,
                "score": m.score,
            })

        ranked = sorted(variants, key=lambda v: v["score"], reverse=True)
        sample_ready = all(v["impressions"] >= test.min_sample_size for v in variants)

        winner = None
        confidence = 0.0
        if sample_ready and ranked:
            winner = ranked[0]["variant_id"]
            if len(ranked) > 1:
                first = test.metrics[ranked[0]["variant_id"]]
                second = test.metrics[ranked[1]["variant_id"]]
                confidence = two_proportion_confidence(
                    first.engagements, first.impressions, second.engagements, second.impressions
                )

        return {
            "test_id": test.id,
            "name": test.name,
            "active": test.active,
            "variants": ranked,
            "winner": winner,
            "confidence": confidence,
            "sample_size_reached": sample_ready,
        }

    def end_test(self, test_id: str) -> Dict[str, Any]:
        """Stop a test and return its final results"""

        test = self.get_test(test_id)
        test.active = False
        test.end_date = datetime.now(timezone.utc)

        results = self.get_test_results(test_id)
        logger.info("prompt_test_ended", test_id=test_id, winner=results["winner"], confidence=results["confidence"])
        return results
