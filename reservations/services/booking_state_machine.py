"""
Booking State Machine

Lifecycle of a single reservation attempt, persisted as a JSON draft in the
ephemeral store:

    INITIATED -> AWAITING_CODE -> CONFIRMED
        |              |
        +--> CANCELLED / EXPIRED

Transitions are the only mutation path for a draft. Each one is written with
an atomic compare-and-swap against the exact document that was read, so two
concurrent transitions on the same booking cannot both win.

A missing draft (TTL elapsed without an explicit transition) is reported as
EXPIRED by get_state.

Redis Key Schema:
    booking:draft:{booking_id} - ReservationDraft JSON
"""

import logging
import secrets
import string
import time
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from reservations.exceptions import (
    BookingNotFoundError,
    ConcurrentModificationError,
    InvalidTransitionError,
)
from reservations.models.booking import BookingState, ReservationDraft
from reservations.services.kv_store import KeyValueStore

logger = logging.getLogger(__name__)

DRAFT_PREFIX = "booking:draft"
DEFAULT_DRAFT_TTL_SECONDS = 600
DEFAULT_CODE_TTL_SECONDS = 300

# Forward transitions. Terminal states have empty lists.
# AWAITING_CODE -> AWAITING_CODE is a code resend.
VALID_TRANSITIONS: Dict[BookingState, List[BookingState]] = {
    BookingState.INITIATED: [
        BookingState.AWAITING_CODE,
        BookingState.CANCELLED,
        BookingState.EXPIRED,
    ],
    BookingState.AWAITING_CODE: [
        BookingState.AWAITING_CODE,
        BookingState.CONFIRMED,
        BookingState.CANCELLED,
        BookingState.EXPIRED,
    ],
    BookingState.CONFIRMED: [],  # Terminal state
    BookingState.CANCELLED: [],  # Terminal state
    BookingState.EXPIRED: [],  # Terminal state
}

# Compensation only: a CONFIRMED draft whose durable write failed
ROLLBACK_TRANSITIONS: Dict[BookingState, List[BookingState]] = {
    BookingState.CONFIRMED: [BookingState.CANCELLED],
}

_uncovered = set(BookingState) - set(VALID_TRANSITIONS)
if _uncovered:
    raise RuntimeError(f"Transition table missing states: {sorted(s.value for s in _uncovered)}")

TERMINAL_STATES = frozenset(state for state, targets in VALID_TRANSITIONS.items() if not targets)

_BASE36 = string.digits + string.ascii_uppercase


def _to_base36(value: int) -> str:
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
    return ''.join(reversed(digits)) or '0'


def generate_booking_id() -> str:
    """BK + base-36 millisecond timestamp + random suffix, e.g. BKMBX3K2Q1F7H2A"""
    suffix = ''.join(secrets.choice(_BASE36) for _ in range(5))
    return f"BK{_to_base36(int(time.time() * 1000))}{suffix}"


def is_terminal_state(state: BookingState) -> bool:
    return state in TERMINAL_STATES


def is_valid_transition(from_state: BookingState, to_state: BookingState) -> bool:
    return to_state in VALID_TRANSITIONS.get(from_state, [])


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BookingStateMachine:
    """
    Create, read and transition reservation drafts.

    Usage:
        machine = BookingStateMachine(store, draft_ttl_seconds=600, code_ttl_seconds=300)
        draft = await machine.create_booking(...)
        draft = await machine.request_code(draft.booking_id)
        draft = await machine.confirm(draft.booking_id)
    """

    def __init__(
        self,
        store: KeyValueStore,
        draft_ttl_seconds: int = DEFAULT_DRAFT_TTL_SECONDS,
        code_ttl_seconds: int = DEFAULT_CODE_TTL_SECONDS,
        now: Callable[[], datetime] = _utcnow
    ):
        self.store = store
        self.draft_ttl_seconds = draft_ttl_seconds
        self.code_ttl_seconds = code_ttl_seconds
        self._now = now

    @staticmethod
    def _draft_key(booking_id: str) -> str:
        return f"{DRAFT_PREFIX}:{booking_id}"

    # Keep module-level helpers reachable from an instance
    is_terminal_state = staticmethod(is_terminal_state)
    is_valid_transition = staticmethod(is_valid_transition)

    async def create_booking(
        self,
        tenant_id: str,
        doctor_id: str,
        slot_start: datetime,
        duration_minutes: int,
        encrypted_patient_identity: str,
        session_id: str
    ) -> ReservationDraft:
        """Write a fresh draft in INITIATED with the draft TTL."""
        now = self._now()
        draft = ReservationDraft(
            booking_id=generate_booking_id(),
            tenant_id=tenant_id,
            doctor_id=doctor_id,
            slot_start=slot_start,
            duration_minutes=duration_minutes,
            encrypted_patient_identity=encrypted_patient_identity,
            state=BookingState.INITIATED,
            session_id=session_id,
            created_at=now,
            updated_at=now,
        )

        created = await self.store.set_if_absent(
            self._draft_key(draft.booking_id),
            draft.model_dump_json(),
            self.draft_ttl_seconds
        )
        if not created:
            raise ConcurrentModificationError(draft.booking_id)

        logger.info(f"📝 Booking draft created: {draft.booking_id} (tenant={tenant_id}, doctor={doctor_id})")
        return draft

    async def _load(self, booking_id: str):
        raw = await self.store.get(self._draft_key(booking_id))
        if raw is None:
            raise BookingNotFoundError(booking_id)
        return raw, ReservationDraft.model_validate_json(raw)

    async def get_booking(self, booking_id: str) -> Optional[ReservationDraft]:
        """Current draft, or None if it never existed or has expired."""
        raw = await self.store.get(self._draft_key(booking_id))
        if raw is None:
            return None
        return ReservationDraft.model_validate_json(raw)

    async def get_state(self, booking_id: str) -> BookingState:
        draft = await self.get_booking(booking_id)
        if draft is None:
            return BookingState.EXPIRED
        return draft.state

    async def transition(
        self,
        booking_id: str,
        to_state: BookingState,
        ttl_seconds: Optional[int] = None,
        allowed: Optional[Dict[BookingState, List[BookingState]]] = None,
        **updates
    ) -> ReservationDraft:
        """
        Move a draft to to_state.

        Args:
            booking_id: Draft to transition
            to_state: Target state
            ttl_seconds: New TTL; when omitted the remaining TTL is kept
            allowed: Transition table to check against (defaults to VALID_TRANSITIONS)
            **updates: Extra draft fields to set alongside the state

        Raises:
            BookingNotFoundError: Draft missing or expired
            InvalidTransitionError: Edge not in the table
            ConcurrentModificationError: Draft changed between read and write
        """
        table = allowed if allowed is not None else VALID_TRANSITIONS
        key = self._draft_key(booking_id)
        raw, draft = await self._load(booking_id)

        if to_state not in table.get(draft.state, []):
            raise InvalidTransitionError(booking_id, draft.state.value, to_state.value)

        updated = draft.model_copy(update={
            **updates,
            'state': to_state,
            'previous_state': draft.state,
            'updated_at': self._now(),
            'version': draft.version + 1,
        })

        if ttl_seconds is None:
            remaining = await self.store.ttl(key)
            if remaining is None:
                raise BookingNotFoundError(booking_id)
            ttl_seconds = remaining if remaining > 0 else self.draft_ttl_seconds

        swapped = await self.store.compare_and_swap(key, raw, updated.model_dump_json(), ttl_seconds)
        if not swapped:
            logger.warning(f"Concurrent modification on booking {booking_id} ({draft.state.value} → {to_state.value})")
            raise ConcurrentModificationError(booking_id)

        logger.info(f"Booking {booking_id}: {draft.state.value} → {to_state.value}")
        return updated

    async def request_code(self, booking_id: str) -> ReservationDraft:
        """INITIATED/AWAITING_CODE -> AWAITING_CODE, re-arming the TTL to the code lifetime."""
        return await self.transition(
            booking_id,
            BookingState.AWAITING_CODE,
            ttl_seconds=self.code_ttl_seconds,
            code_requested_at=self._now()
        )

    async def confirm(self, booking_id: str) -> ReservationDraft:
        return await self.transition(booking_id, BookingState.CONFIRMED, confirmed_at=self._now())

    async def cancel(self, booking_id: str, reason: Optional[str] = None) -> ReservationDraft:
        return await self.transition(
            booking_id,
            BookingState.CANCELLED,
            cancelled_at=self._now(),
            cancellation_reason=reason
        )

    async def expire(self, booking_id: str) -> ReservationDraft:
        return await self.transition(booking_id, BookingState.EXPIRED, expired_at=self._now())

    async def rollback(self, booking_id: str, reason: str) -> ReservationDraft:
        """Compensate a CONFIRMED draft whose durable write did not happen."""
        return await self.transition(
            booking_id,
            BookingState.CANCELLED,
            allowed=ROLLBACK_TRANSITIONS,
            cancelled_at=self._now(),
            cancellation_reason=reason
        )

    async def delete_draft(self, booking_id: str) -> bool:
        return await self.store.delete(self._draft_key(booking_id)) > 0
