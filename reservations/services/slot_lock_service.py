"""
Slot Lock Service

TTL-bound exclusivity markers for (tenant, doctor, slot start). A lock is held
while a caller completes code verification; the lock TTL matches the code
lifetime window so an abandoned reservation frees itself.

DESIGN:
- acquire is a single SET NX EX, never a read followed by a write
- release is an atomic compare-and-delete: between an ownership check and a
  delete the lock could expire and be re-acquired by someone else
- slot starts are normalized to UTC so the same instant always maps to the
  same key regardless of the timezone it was expressed in
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from reservations.services.kv_store import KeyValueStore

logger = logging.getLogger(__name__)

SLOT_LOCK_PREFIX = "slotlock"
DEFAULT_LOCK_TTL_SECONDS = 600  # 10 minutes


@dataclass(frozen=True)
class SlotKey:
    """Identity of a lockable slot. Tenants never share a key namespace."""
    tenant_id: str
    doctor_id: str
    slot_start: datetime

    @property
    def storage_key(self) -> str:
        start_utc = self.slot_start.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        return f"{SLOT_LOCK_PREFIX}:{self.tenant_id}:{self.doctor_id}:{start_utc}"

    def __str__(self) -> str:
        return self.storage_key


class SlotLockService:
    """
    Acquire / release / verify slot locks on top of an injected KeyValueStore.

    Usage:
        locks = SlotLockService(store, ttl_seconds=600)
        key = SlotKey(tenant_id, doctor_id, slot_start)
        if await locks.acquire(key, session_id):
            ...
            await locks.release(key, session_id)
    """

    def __init__(self, store: KeyValueStore, ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS):
        self.store = store
        self.ttl_seconds = ttl_seconds

    async def acquire(self, key: SlotKey, owner_id: str, ttl_seconds: Optional[int] = None) -> bool:
        """
        Claim the slot for owner_id.

        Returns:
            True if the lock was acquired, False if a live lock already exists
        """
        acquired = await self.store.set_if_absent(
            key.storage_key,
            owner_id,
            ttl_seconds or self.ttl_seconds
        )

        if acquired:
            logger.info(f"🔒 Slot locked: {key.storage_key}")
        else:
            logger.info(f"Slot already locked: {key.storage_key}")

        return acquired

    async def release(self, key: SlotKey, owner_id: str) -> bool:
        """
        Release the lock only if owner_id still holds it.

        Returns:
            False if the key is absent or owned by someone else
        """
        released = await self.store.compare_and_delete(key.storage_key, owner_id)

        if released:
            logger.info(f"🔓 Slot unlocked: {key.storage_key}")
        else:
            logger.warning(f"Cannot unlock {key.storage_key} - not owner or already expired")

        return released

    async def verify_ownership(self, key: SlotKey, owner_id: str) -> bool:
        """Non-destructive check that owner_id still holds the lock."""
        owner = await self.store.get(key.storage_key)
        owns = owner is not None and owner == owner_id

        if not owns:
            logger.warning(
                f"Lock verification failed for {key.storage_key} "
                f"({'expired' if owner is None else 'held by another session'})"
            )

        return owns

    async def owner_of(self, key: SlotKey) -> Optional[str]:
        return await self.store.get(key.storage_key)

    async def locked_keys(self, keys: Sequence[SlotKey]) -> List[bool]:
        """Batch check used by availability filtering (one round trip)."""
        owners = await self.store.get_many([key.storage_key for key in keys])
        return [owner is not None for owner in owners]
