import pytest

from parley.domain.context.context_ranker import ContextQualityScorer
from parley.domain.models.conversation import ContextWindow, ScoredMessage, UserProfile
from tests.conftest import make_message


def scored(message_id: str, sender: str, score: float) -> ScoredMessage:
    return ScoredMessage.from_message(make_message(message_id, "text", sender_id=sender), combined_score=score)


class TestContextQualityScorer:

    def test_empty_window_scores_zero(self):
        assert ContextQualityScorer().score(ContextWindow()) == 0.0

    def test_partial_recency_only(self):
        window = ContextWindow(recent_messages=[make_message(f"r{i}", "hi") for i in range(5)])

        assert ContextQualityScorer(recency_target=10).score(window) == pytest.approx(0.5)

    def test_weights_are_renormalized_over_present_signals(self):
        window = ContextWindow(
            recent_messages=[make_message(f"r{i}", "hi") for i in range(10)],
            relevant_messages=[scored("a", "A", 0.4), scored("b", "B", 0.6)]
        )

        # (0.3 * 1.0 + 0.4 * 0.5 + 0.1 * 1.0) / 0.8
        assert ContextQualityScorer().score(window) == pytest.approx(0.75)

    def test_thread_and_profiles_count(self):
        window = ContextWindow(
            thread_messages=[make_message("t0", "root")],
            profiles={"U1": UserProfile(user_id="U1")}
        )

        assert ContextQualityScorer().score(window) == pytest.approx(1.0)

    def test_score_is_clamped(self):
        window = ContextWindow(relevant_messages=[scored("a", "A", 1.7)])

        assert ContextQualityScorer().score(window) == 1.0
