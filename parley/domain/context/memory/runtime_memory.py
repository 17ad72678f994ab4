from typing import Dict, List, Any, Optional, Sequence
from datetime import datetime, timezone
import asyncio
from collections import defaultdict, deque

from parley.domain.models.conversation import ConversationSummary, UserProfile


class RuntimeMemory:
    """In-memory profile and summary stores plus per-user interaction history"""

    def __init__(self, interaction_limit: int = 50):
        self.profiles: Dict[str, UserProfile] = {}
        self.summaries: Dict[str, List[ConversationSummary]] = defaultdict(list)
        self.interactions: Dict[str, deque] = {}
        self.interaction_limit = interaction_limit
        self._lock = asyncio.Lock()

    async def get_profiles(self, user_ids: Sequence[str]) -> Dict[str, UserProfile]:
        """Get the stored profiles for the given users"""

        async with self._lock:
            return {uid: self.profiles[uid] for uid in user_ids if uid in self.profiles}

    async def save_profile(self, profile: UserProfile) -> None:
        async with self._lock:
            self.profiles[profile.user_id] = profile

    async def add_summary(self, summary: ConversationSummary) -> None:
        async with self._lock:
            self.summaries[summary.channel_id].append(summary)

    async def recent_summaries(self, channel_id: str, limit: int = 3) -> List[ConversationSummary]:
        """Newest summaries first"""

        async with self._lock:
            summaries = sorted(
                self.summaries.get(channel_id, []),
                key=lambda s: s.period_end,
                reverse=True
            )
            return summaries[:limit]

    async def record_interaction(self, user_id: str, interaction: Dict[str, Any]) -> int:
        """Append an interaction and return how many are held for the user"""

        async with self._lock:
            if "timestamp" not in interaction:
                interaction["timestamp"] = datetime.now(timezone.utc).isoformat()

            history = self.interactions.get(user_id)
            if history is None:
                history = deque(maxlen=self.interaction_limit)
                self.interactions[user_id] = history
            history.append(interaction)
            return len(history)

    async def get_interactions(self, user_id: str) -> List[Dict[str, Any]]:
        async with self._lock:
            return list(self.interactions.get(user_id, []))

    async def clear_user(self, user_id: str) -> None:
        """Clear all data for a user"""

        async with self._lock:
            self.profiles.pop(user_id, None)
            self.interactions.pop(user_id, None)

    async def get_profile(self, user_id: str) -> Optional[UserProfile]:
        async with self._lock:
            return self.profiles.get(user_id)
