"""
Token-budgeted rendering of a context window.

Token counts are estimated as ceil(chars / 4); every section also costs a
fixed overhead plus its header. Recent messages are placed first so they
always make it in (newest kept first, the newest one truncated if nothing
else fits). The remaining budget then goes, in order, to summaries,
profiles, thread and relevant messages; relevant messages are admitted by
descending score, so the least relevant are the first to be dropped.

Rendered order is summaries, profiles, thread, relevant, recent.
"""

from typing import Dict, List, Optional, Sequence, Tuple
import math
from pydantic import BaseModel, Field

from parley.domain.models.conversation import (
    ConversationSummary,
    Message,
    ScoredMessage,
    SearchMetadata,
    UserProfile,
)

SUMMARY_HEADER = "=== Conversation History ==="
PROFILE_HEADER = "=== Active Users ==="
THREAD_HEADER = "=== Thread Context ==="
RELEVANT_HEADER = "=== Relevant Context ==="
RECENT_HEADER = "=== Recent Conversation ==="
SEARCH_HEADER = "=== Search Quality ==="


def estimate_tokens(text: str) -> int:
    """Cheap token estimate: four characters per token"""
    return math.ceil(len(text) / 4)


class FormattedContext(BaseModel):
    """Rendered text plus the items that fit the budget"""
    text: str = ""
    token_estimate: int = 0
    recent_messages: List[Message] = Field(default_factory=list)
    relevant_messages: List[ScoredMessage] = Field(default_factory=list)
    thread_messages: List[Message] = Field(default_factory=list)
    summaries: List[ConversationSummary] = Field(default_factory=list)
    profiles: Dict[str, UserProfile] = Field(default_factory=dict)


class ContextFormatter:
    """Fits context sections into a token budget"""

    def __init__(self, section_overhead: int = 4):
        self.section_overhead = section_overhead

    def _section_cost(self, header: str) -> int:
        return self.section_overhead + estimate_tokens(header)

    def display_name(self, message: Message, profiles: Optional[Dict[str, UserProfile]]) -> str:
        profile = (profiles or {}).get(message.sender_id)
        if profile is not None and profile.display_name:
            return profile.display_name
        return message.sender_name or message.sender_id or "unknown"

    def format(
        self,
        max_tokens: int,
        recent: Sequence[Message] = (),
        relevant: Sequence[ScoredMessage] = (),
        thread: Optional[Sequence[Message]] = None,
        summaries: Optional[Sequence[ConversationSummary]] = None,
        profiles: Optional[Dict[str, UserProfile]] = None,
        include_scores: bool = False,
        search_metadata: Optional[SearchMetadata] = None,
        quality: Optional[float] = None
    ) -> FormattedContext:
        result = FormattedContext()
        if max_tokens <= 0:
            return result

        blocks: Dict[str, List[str]] = {}

        # Recent first: it is the one section that must survive
        recent_lines, kept_recent, recent_cost = self._fit_recent(recent, profiles, max_tokens)
        if kept_recent:
            blocks["recent"] = recent_lines
            result.recent_messages = kept_recent

        remaining = max_tokens - recent_cost
        used = recent_cost

        if summaries:
            items = [(s, self._summary_line(s)) for s in summaries]
            lines, kept, cost = self._fit(SUMMARY_HEADER, items, remaining, stop_on_overflow=False)
            if kept:
                blocks["summaries"] = lines
                result.summaries = kept
                remaining -= cost
                used += cost

        if profiles:
            items = [
                (profile, f"{profile.display_name or user_id}: {profile.personality_summary}")
                for user_id, profile in profiles.items()
                if profile.personality_summary
            ]
            lines, kept, cost = self._fit(PROFILE_HEADER, items, remaining, stop_on_overflow=False)
            if kept:
                blocks["profiles"] = lines
                result.profiles = {p.user_id: p for p in kept}
                remaining -= cost
                used += cost

        if thread:
            # Newest replies win the budget, output stays chronological
            ordered = sorted(thread, key=lambda m: m.timestamp, reverse=True)
            items = [(m, f"[{self.display_name(m, profiles)}]: {m.text}") for m in ordered]
            lines, kept, cost = self._fit(THREAD_HEADER, items, remaining, stop_on_overflow=True)
            if kept:
                pairs = sorted(zip(kept, lines[1:]), key=lambda pair: pair[0].timestamp)
                blocks["thread"] = [THREAD_HEADER] + [line for _, line in pairs]
                result.thread_messages = [m for m, _ in pairs]
                remaining -= cost
                used += cost

        if relevant:
            ordered = sorted(relevant, key=lambda m: m.combined_score, reverse=True)
            items = []
            for m in ordered:
                score_info = f" [relevance: {m.combined_score:.2f}]" if include_scores else ""
                items.append((m, f"[{self.display_name(m, profiles)}]{score_info}: {m.text}"))
            lines, kept, cost = self._fit(RELEVANT_HEADER, items, remaining, stop_on_overflow=True)
            if kept:
                blocks["relevant"] = lines
                result.relevant_messages = kept
                remaining -= cost
                used += cost

        if include_scores and search_metadata is not None:
            stats = [
                f"Keyword matches: {search_metadata.keyword_matches}",
                f"Semantic matches: {search_metadata.semantic_matches}",
                f"Average relevance: {search_metadata.average_score:.2f}",
            ]
            if quality is not None:
                stats.append(f"Context quality: {quality:.2f}")
            cost = self._section_cost(SEARCH_HEADER) + sum(estimate_tokens(line) for line in stats)
            if cost <= remaining:
                blocks["search"] = [SEARCH_HEADER] + stats
                remaining -= cost
                used += cost

        order = ("summaries", "profiles", "thread", "relevant", "recent", "search")
        result.text = "\n\n".join("\n".join(blocks[name]) for name in order if name in blocks)
        result.token_estimate = used
        return result

    def _fit(self, header: str, items: Sequence[Tuple], budget: int, stop_on_overflow: bool):
        """Admit (item, line) pairs in order while the section fits `budget`"""

        cost = self._section_cost(header)
        if cost >= budget:
            return [], [], 0

        lines = [header]
        kept = []
        for item, line in items:
            tokens = estimate_tokens(line)
            if cost + tokens > budget:
                if stop_on_overflow:
                    break
                continue
            lines.append(line)
            kept.append(item)
            cost += tokens

        if not kept:
            return [], [], 0
        return lines, kept, cost

    def _fit_recent(
        self,
        recent: Sequence[Message],
        profiles: Optional[Dict[str, UserProfile]],
        budget: int
    ) -> Tuple[List[str], List[Message], int]:
        if not recent:
            return [], [], 0

        cost = self._section_cost(RECENT_HEADER)
        if cost >= budget:
            return [], [], 0

        ordered = sorted(recent, key=lambda m: m.timestamp)
        kept: List[Tuple[Message, str]] = []

        for message in reversed(ordered):
            line = f"[{self.display_name(message, profiles)}]: {message.text}"
            tokens = estimate_tokens(line)
            if cost + tokens > budget:
                break
            kept.append((message, line))
            cost += tokens

        if not kept:
            # Not even the newest message fits whole; keep a truncated copy
            newest = ordered[-1]
            line = f"[{self.display_name(newest, profiles)}]: {newest.text}"
            line = line[:(budget - cost) * 4]
            kept.append((newest, line))
            cost += estimate_tokens(line)

        kept.reverse()
        return [RECENT_HEADER] + [line for _, line in kept], [m for m, _ in kept], cost

    def _summary_line(self, summary: ConversationSummary) -> str:
        line = f"[{summary.period_end.date().isoformat()}] {summary.summary}"
        if summary.key_topics:
            line += f" (topics: {', '.join(summary.key_topics)})"
        return line
