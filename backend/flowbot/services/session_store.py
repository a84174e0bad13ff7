# /flowbot/services/session_store.py

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field, asdict
from typing import List, Optional, Protocol

# Typed view over the expiring key/value entries that make up one user's
# conversation session. Each field is its own key with its own TTL; absence of
# a key is the normal "not set" state, including after expiry.

logger = logging.getLogger(__name__)


class StateStore(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl: int) -> None: ...

    async def delete(self, *keys: str) -> None: ...

    async def set_if_absent(self, key: str, value: str, ttl: int) -> bool: ...


@dataclass
class AwaitingButtons:
    """A buttons node blocking on a reply: its id, lowercased titles and the reply ids sent."""
    node_id: str
    buttons: List[str] = field(default_factory=list)
    ids: List[str] = field(default_factory=list)


def _to_int(raw: Optional[str]) -> int:
    try:
        return int(raw) if raw else 0
    except ValueError:
        return 0


class ConversationSession:
    def __init__(self, store: StateStore, project_id: str, sender: str, ttl: int):
        self.store = store
        self.project_id = project_id
        self.sender = sender
        self.ttl = ttl
        self.key = f"flow-state:{sender}:{project_id}"
        self.awaiting_key = f"{self.key}:awaitingButtonResponse"
        self.invalid_count_key = f"{self.key}:buttonInvalidCount"
        self.question_key = f"{self.key}:questionPending"
        self.retries_key = f"{self.key}:questionRetries"
        self.lock_key = f"{self.key}:lock"

    def variable_key(self, name: str) -> str:
        return f"flow-var:{self.sender}:{self.project_id}:{name}"

    # --- position ---

    async def get_position(self) -> Optional[str]:
        return await self.store.get(self.key)

    async def set_position(self, node_id: str):
        await self.store.set(self.key, node_id, self.ttl)

    # --- awaiting button reply ---

    async def get_awaiting(self) -> Optional[AwaitingButtons]:
        raw = await self.store.get(self.awaiting_key)
        if not raw:
            return None
        try:
            data = json.loads(raw)
            return AwaitingButtons(
                node_id=str(data["nodeId"]),
                buttons=list(data.get("buttons", [])),
                ids=list(data.get("ids", [])),
            )
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Discarding unreadable awaiting marker for {self.key}: {e}")
            return None

    async def set_awaiting(self, awaiting: AwaitingButtons):
        # Only one node may be waiting at a time
        await self.clear_question()
        payload = asdict(awaiting)
        payload["nodeId"] = payload.pop("node_id")
        await self.store.set(self.awaiting_key, json.dumps(payload), self.ttl)
        await self.store.delete(self.invalid_count_key)

    async def clear_awaiting(self):
        await self.store.delete(self.awaiting_key, self.invalid_count_key)

    async def get_invalid_attempts(self) -> int:
        return _to_int(await self.store.get(self.invalid_count_key))

    async def increment_invalid_attempts(self) -> int:
        count = await self.get_invalid_attempts() + 1
        await self.store.set(self.invalid_count_key, str(count), self.ttl)
        return count

    # --- pending question ---

    async def get_question_pending(self) -> Optional[str]:
        """Node id of the question awaiting an answer, if any."""
        return await self.store.get(self.question_key)

    async def set_question_pending(self, node_id: str):
        await self.clear_awaiting()
        await self.store.set(self.question_key, node_id, self.ttl)
        await self.store.delete(self.retries_key)

    async def clear_question(self):
        await self.store.delete(self.question_key, self.retries_key)

    async def get_retries(self) -> int:
        return _to_int(await self.store.get(self.retries_key))

    async def increment_retries(self) -> int:
        count = await self.get_retries() + 1
        await self.store.set(self.retries_key, str(count), self.ttl)
        return count

    # --- variables ---

    async def get_variable(self, name: str) -> Optional[str]:
        return await self.store.get(self.variable_key(name))

    async def set_variable(self, name: str, value: str):
        await self.store.set(self.variable_key(name), value, self.ttl)

    # --- lifecycle ---

    async def clear(self):
        """End the session. Variables are left to expire on their own."""
        await self.store.delete(
            self.key,
            self.awaiting_key,
            self.invalid_count_key,
            self.question_key,
            self.retries_key,
        )

    def lock(self, ttl: int, wait_seconds: float) -> "SessionLock":
        return SessionLock(self.store, self.lock_key, ttl, wait_seconds)


class SessionLock:
    """
    Best-effort mutual exclusion for one session, keyed next to `position`.
    If the token cannot be taken within `wait_seconds` the caller proceeds
    without it (`acquired` is False) rather than dropping the event.
    """

    def __init__(self, store: StateStore, key: str, ttl: int, wait_seconds: float, poll_interval: float = 0.1):
        self.store = store
        self.key = key
        self.ttl = ttl
        self.wait_seconds = wait_seconds
        self.poll_interval = poll_interval
        self.token = uuid.uuid4().hex
        self.acquired = False

    async def __aenter__(self) -> "SessionLock":
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.wait_seconds
        while True:
            if await self.store.set_if_absent(self.key, self.token, self.ttl):
                self.acquired = True
                return self
            if loop.time() >= deadline:
                logger.warning(f"Session lock {self.key} still held after {self.wait_seconds}s; continuing without it")
                return self
            await asyncio.sleep(self.poll_interval)

    async def __aexit__(self, exc_type, exc, tb):
        if self.acquired and await self.store.get(self.key) == self.token:
            await self.store.delete(self.key)
        return False
