from __future__ import annotations

import logging
from typing import Optional

from backend.app.store import InMemoryStore

logger = logging.getLogger("funnel_tracker.sequence")

GLOBAL_CLIENT_REF_KEY = "global:client_ref"


def client_counter_key(client_ref: str) -> str:
    return f"client:{client_ref}"


def bootstrap_target(
    *,
    floor: int,
    persisted: Optional[int],
    max_observed: Optional[int],
    force_raise: bool,
) -> Optional[int]:
    """Return the value a counter should be set to at startup, or None to leave it alone.

    The target is the largest of the floor, the persisted value and the largest reference
    already observed. Force-raise writes the target even when it equals the persisted value;
    neither mode ever lowers a persisted counter.
    """
    candidates = [floor]
    if persisted is not None:
        candidates.append(persisted)
    if max_observed is not None:
        candidates.append(max_observed)
    target = max(candidates)
    if persisted is None:
        return target
    if force_raise:
        return max(target, persisted)
    if persisted < target:
        return target
    return None


class SequenceAllocator:
    def __init__(
        self,
        store: InMemoryStore,
        *,
        floors: Optional[dict[str, int]] = None,
        default_floor: int = 0,
    ) -> None:
        self.store = store
        self.floors = dict(floors or {})
        self.default_floor = default_floor

    def floor_for(self, key: str) -> int:
        return self.floors.get(key, self.default_floor)

    def allocate_next(self, key: str) -> int:
        value = self.store.increment_counter(key, self.floor_for(key))
        logger.debug("sequence_allocated key=%s value=%s", key, value)
        return value

    def bootstrap(self, key: str, floor: int, force_raise: bool) -> int:
        persisted = self.store.ensure_counter(key, floor)
        max_observed = None
        if key == GLOBAL_CLIENT_REF_KEY:
            max_observed = self.store.max_numeric_client_ref()
        target = bootstrap_target(
            floor=floor,
            persisted=persisted,
            max_observed=max_observed,
            force_raise=force_raise,
        )
        if target is None:
            logger.info("sequence_bootstrap key=%s value=%s unchanged", key, persisted)
            return persisted
        self.store.set_counter(key, target)
        logger.info(
            "sequence_bootstrap key=%s persisted=%s max_observed=%s value=%s force=%s",
            key,
            persisted,
            max_observed,
            target,
            force_raise,
        )
        return target
