"""
Per-call session state and the process-wide session registry.

The store is the single source of truth for live calls. Every read-modify-write
of a session goes through the per-call lock (`update` / `locked`) so that
callbacks from the Twilio socket, the model socket and the settle timer never
interleave on the same call. Different calls never share a lock.
"""

from __future__ import annotations

import asyncio
import time
import weakref
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable, Optional, TypeVar

import structlog

from src.intake.lead_types import LeadFields, Speaker, Utterance

if TYPE_CHECKING:
    from src.intake.realtime import ModelConnection
    from src.intake.twilio_protocol import TelephonyChannel

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class SessionExistsError(Exception):
    """Raised when creating a session for a call id that is already live."""

    def __init__(self, call_id: str):
        super().__init__(f"Session already exists for call {call_id}")
        self.call_id = call_id


class CallState(str, Enum):
    CREATED = "created"
    MODEL_CONNECTING = "model_connecting"
    MODEL_READY = "model_ready"
    ACTIVE = "active"
    SETTLING = "settling"
    SAVED = "saved"
    CLOSED = "closed"


@dataclass
class CallSession:
    """State for one live call."""

    call_id: str
    caller_phone: str = ""
    state: CallState = CallState.CREATED
    stream_sid: str = ""
    model: Optional["ModelConnection"] = None
    lead: LeadFields = field(default_factory=LeadFields)
    transcript: list[Utterance] = field(default_factory=list)
    saved: bool = False
    reached_active: bool = False
    created_at: float = field(default_factory=time.time)
    _telephony_ref: Optional["weakref.ReferenceType[TelephonyChannel]"] = field(default=None, repr=False)

    @property
    def telephony(self) -> Optional["TelephonyChannel"]:
        """The Twilio-side channel, if the socket that owns it is still around."""
        if self._telephony_ref is None:
            return None
        return self._telephony_ref()

    def attach_telephony(self, channel: "TelephonyChannel") -> None:
        self._telephony_ref = weakref.ref(channel)
        self.stream_sid = channel.stream_sid

    def detach_telephony(self) -> None:
        self._telephony_ref = None

    def caller_has_spoken(self) -> bool:
        return any(utterance.speaker == Speaker.CALLER for utterance in self.transcript)

    def last_assistant_text(self) -> str:
        for utterance in reversed(self.transcript):
            if utterance.speaker == Speaker.ASSISTANT:
                return utterance.text
        return ""


@dataclass
class _Entry:
    session: CallSession
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class SessionStore:
    """
    Registry of live call sessions keyed by call id.

    Owned by the orchestrator and injected where needed; tests can swap it for
    a fresh instance per case.
    """

    def __init__(self) -> None:
        self._entries: dict[str, _Entry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, call_id: object) -> bool:
        return call_id in self._entries

    def call_ids(self) -> list[str]:
        return list(self._entries)

    def create(self, call_id: str, **fields: Any) -> CallSession:
        """
        Create a session for a new call.

        Raises:
            SessionExistsError: If the call id is already live
        """
        if call_id in self._entries:
            raise SessionExistsError(call_id)

        session = CallSession(call_id=call_id, **fields)
        if session.caller_phone and session.lead.is_empty("phone"):
            session.lead.phone = session.caller_phone

        self._entries[call_id] = _Entry(session=session)
        logger.info("Session created", call_id=call_id, caller_phone=session.caller_phone or None)
        return session

    def get(self, call_id: str) -> Optional[CallSession]:
        entry = self._entries.get(call_id)
        return entry.session if entry else None

    @asynccontextmanager
    async def locked(self, call_id: str) -> AsyncIterator[Optional[CallSession]]:
        """
        Hold the call's lock for a multi-step read-modify-write.

        Yields None if the session is absent, or was deleted while waiting for
        the lock.
        """
        entry = self._entries.get(call_id)
        if entry is None:
            yield None
            return

        async with entry.lock:
            if self._entries.get(call_id) is not entry:
                yield None
            else:
                yield entry.session

    async def update(self, call_id: str, mutator: Callable[[CallSession], T]) -> Optional[T]:
        """Apply `mutator` to the session under its lock and return its result."""
        async with self.locked(call_id) as session:
            if session is None:
                return None
            return mutator(session)

    def delete(self, call_id: str) -> bool:
        """Remove a session. Idempotent."""
        entry = self._entries.pop(call_id, None)
        if entry is None:
            logger.debug("Delete of absent session ignored", call_id=call_id)
            return False
        logger.info("Session deleted", call_id=call_id)
        return True
