"""Adapter between the allowance state machine and the restriction gateway."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Protocol

import structlog

from cookieledger.allowance.keyvalue import (
    MONITOR_LAST_ACTION_KEY,
    MONITOR_LAST_EVENT_DATE_KEY,
    MONITOR_LAST_EVENT_KEY,
    RESTRICTION_STATE_KEY,
    SELECTION_KEY,
    KeyValueStore,
)

if TYPE_CHECKING:
    from cookieledger.allowance.machine import AllowanceSnapshot

logger = structlog.get_logger()


class RestrictionGateway(Protocol):
    """Enforces or suspends blocking of a set of resources.

    Implementations are a function of the last call's arguments, so calling
    them redundantly is safe.
    """

    async def apply(self, selection: frozenset[str], suspend: bool) -> None: ...

    async def clear(self) -> None: ...


def _decode_selection(raw: str | None) -> frozenset[str] | None:
    if raw is None:
        return None
    try:
        values = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("selection_corrupt")
        return None
    if not isinstance(values, list):
        return None
    return frozenset(str(v) for v in values)


class SelectionStore:
    """The blocked-resource selection, readable from every process.

    Older installs kept the selection in a store only the foreground app could
    read; the first read through here moves it into the shared store.
    """

    def __init__(self, shared: KeyValueStore, legacy: KeyValueStore | None = None) -> None:
        self.shared = shared
        self.legacy = legacy

    async def load(self) -> frozenset[str]:
        selection = _decode_selection(await self.shared.get(SELECTION_KEY))
        if selection is not None:
            return selection
        if self.legacy is None:
            return frozenset()

        legacy_raw = await self.legacy.get(SELECTION_KEY)
        selection = _decode_selection(legacy_raw)
        if selection is None:
            return frozenset()
        await self.shared.set(SELECTION_KEY, legacy_raw)
        await self.legacy.delete(SELECTION_KEY)
        logger.info("selection_migrated", resources=len(selection))
        return selection

    async def save(self, selection: frozenset[str] | set[str]) -> None:
        await self.shared.set(SELECTION_KEY, json.dumps(sorted(selection)))


class RestrictionAdapter:
    """Pushes the current lock state and selection into the gateway."""

    def __init__(self, gateway: RestrictionGateway, selections: SelectionStore) -> None:
        self.gateway = gateway
        self.selections = selections

    async def sync(self, unlock_active: bool) -> None:
        selection = await self.selections.load()
        await self.gateway.apply(selection, suspend=unlock_active)

    async def on_transition(self, account_id: str | None, snapshot: AllowanceSnapshot) -> None:
        await self.sync(snapshot.unlock_active)

    async def reset(self) -> None:
        await self.gateway.clear()


class KeyValueRestrictionGateway:
    """Gateway that publishes the desired restriction into the shared store.

    The enforcing process on the device reads ``restriction.state``; the
    ``monitor.*`` keys record the most recent decision for inspection.
    """

    def __init__(self, kv: KeyValueStore) -> None:
        self.kv = kv

    async def _record(self, event: str, action: str) -> None:
        await self.kv.set(MONITOR_LAST_EVENT_KEY, event)
        await self.kv.set(MONITOR_LAST_ACTION_KEY, action)
        await self.kv.set(MONITOR_LAST_EVENT_DATE_KEY, datetime.now(timezone.utc).isoformat())

    async def apply(self, selection: frozenset[str], suspend: bool) -> None:
        state = {"blocked": sorted(selection), "suspended": suspend}
        await self.kv.set(RESTRICTION_STATE_KEY, json.dumps(state))
        action = "suspend" if suspend else "shield"
        await self._record("apply", action)
        logger.info("restriction_applied", action=action, resources=len(selection))

    async def clear(self) -> None:
        await self.kv.delete(RESTRICTION_STATE_KEY)
        await self._record("clear", "clear")
        logger.info("restriction_cleared")
