from typing import List, Tuple

from parley.domain.models.conversation import ContextWindow


class ContextQualityScorer:
    """Scores an assembled context window in [0, 1]"""

    RECENCY_WEIGHT = 0.3
    RELEVANCE_WEIGHT = 0.4
    DIVERSITY_WEIGHT = 0.1
    THREAD_WEIGHT = 0.1
    PROFILE_WEIGHT = 0.1

    def __init__(self, recency_target: int = 10):
        self.recency_target = recency_target

    def signals(self, window: ContextWindow) -> List[Tuple[float, float]]:
        """(value, weight) for every signal the window actually has"""

        signals = []

        if window.recent_messages:
            coverage = min(len(window.recent_messages) / max(self.recency_target, 1), 1.0)
            signals.append((coverage, self.RECENCY_WEIGHT))

        relevant = window.relevant_messages
        if relevant:
            mean = sum(m.combined_score for m in relevant) / len(relevant)
            signals.append((min(max(mean, 0.0), 1.0), self.RELEVANCE_WEIGHT))

        if len(relevant) > 1:
            unique_senders = len({m.sender_id for m in relevant})
            signals.append((unique_senders / len(relevant), self.DIVERSITY_WEIGHT))

        if window.thread_messages:
            signals.append((1.0, self.THREAD_WEIGHT))

        if window.profiles:
            signals.append((1.0, self.PROFILE_WEIGHT))

        return signals

    def score(self, window: ContextWindow) -> float:
        """Weighted mean over present signals, weights renormalized"""

        signals = self.signals(window)
        total_weight = sum(weight for _, weight in signals)
        if total_weight == 0:
            return 0.0

        score = sum(value * weight for value, weight in signals) / total_weight
        return min(max(score, 0.0), 1.0)
