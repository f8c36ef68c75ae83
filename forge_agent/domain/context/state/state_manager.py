from typing import Dict, Any, Optional
import asyncio
from datetime import datetime, timezone


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class UserStateManager:
    """Per-user engagement state plus process-wide counters"""

    def __init__(self):
        self.states: Dict[str, Dict[str, Any]] = {}
        self.counters: Dict[str, int] = {}
        self._lock = asyncio.Lock()

    def _ensure(self, user_id: str) -> Dict[str, Any]:
        if user_id not in self.states:
            self.states[user_id] = {
                "user_id": user_id,
                "created_at": _now_iso(),
                "streak": 0,
                "badges": [],
                "conversation": {},
            }
        return self.states[user_id]

    async def get_state(self, user_id: str) -> Optional[Dict[str, Any]]:
        """Copy of a user's state, or None if nothing was recorded"""

        async with self._lock:
            state = self.states.get(user_id)
            return dict(state) if state else None

    async def update_last_seen(self, user_id: str) -> None:
        async with self._lock:
            state = self._ensure(user_id)
            state["last_seen_at"] = _now_iso()

    async def update_conversation_state(self, user_id: str, updates: Dict[str, Any]) -> None:
        """Merge updates (last message time, message count, topic summary) into the conversation state"""

        async with self._lock:
            state = self._ensure(user_id)
            state["conversation"].update(updates)
            state["last_updated"] = _now_iso()

    async def increment_streak(self, user_id: str) -> int:
        async with self._lock:
            state = self._ensure(user_id)
            state["streak"] += 1
            return state["streak"]

    async def award_badge(self, user_id: str, badge: str) -> bool:
        """Award a badge once; returns False if the user already had it"""

        async with self._lock:
            state = self._ensure(user_id)
            if badge in state["badges"]:
                return False
            state["badges"].append(badge)
            return True

    async def increment_counter(self, key: str, value: int = 1) -> int:
        async with self._lock:
            self.counters[key] = self.counters.get(key, 0) + value
            return self.counters[key]

    async def clear_state(self, user_id: str) -> None:
        async with self._lock:
            self.states.pop(user_id, None)
