"""Key-value capability shared by every process that drives one device.

The foreground app, the API process and the arq worker never share memory, so
every piece of allowance state they agree on lives here. Semantics are plain
last-writer-wins on single string values.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

import redis.asyncio as redis

PENDING_END_DATE_KEY = "allowanceEndDate.pending"
LAST_ACCOUNT_KEY = "lastAccountId"
SELECTION_KEY = "familyActivitySelection"
SESSION_START_KEY = "currentSessionStart"
SESSION_TOTAL_KEY = "allowanceSessionTotal"
OBSERVED_STATE_KEY = "allowanceObservedState"

MONITOR_LAST_EVENT_KEY = "monitor.lastEvent"
MONITOR_LAST_ACTION_KEY = "monitor.lastAction"
MONITOR_LAST_EVENT_DATE_KEY = "monitor.lastEventDate"
RESTRICTION_STATE_KEY = "restriction.state"


def end_date_key(account_id: str) -> str:
    """Slot holding the allowance deadline of one signed-in account."""
    return f"allowanceEndDate.{account_id}"


class KeyValueStore(ABC):
    """Async string key-value store scoped to one device namespace."""

    namespace: str

    @abstractmethod
    async def get(self, key: str) -> str | None: ...

    @abstractmethod
    async def set(self, key: str, value: str) -> None: ...

    @abstractmethod
    async def delete(self, *keys: str) -> None: ...


class RedisKeyValueStore(KeyValueStore):
    """Keys live in Redis as ``{namespace}:{key}`` strings."""

    def __init__(self, client: redis.Redis, namespace: str) -> None:
        self._redis = client
        self.namespace = namespace

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    async def get(self, key: str) -> str | None:
        value = await self._redis.get(self._key(key))
        if isinstance(value, bytes):
            return value.decode()
        return value

    async def set(self, key: str, value: str) -> None:
        await self._redis.set(self._key(key), value)

    async def delete(self, *keys: str) -> None:
        if keys:
            await self._redis.delete(*(self._key(k) for k in keys))


class InMemoryKeyValueStore(KeyValueStore):
    """Dict-backed store for tests and single-process use."""

    def __init__(self, namespace: str = "memory", initial: dict[str, str] | None = None) -> None:
        self.namespace = namespace
        self.values: dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> str | None:
        return self.values.get(key)

    async def set(self, key: str, value: str) -> None:
        self.values[key] = value

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self.values.pop(key, None)
