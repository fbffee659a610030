"""
Transcript accumulation and incremental lead extraction.

Every finalized utterance is appended to the call's transcript. Caller
utterances are then run through the extractors for each field that is still
empty, plus the accumulating injuries field. The assistant's last line is
passed as a hint so short answers ("yesterday", "no") can be read against
the question they answer.
"""

from datetime import date
from typing import Callable, Iterable, Optional

import structlog

from src.intake.extract import ACCUMULATING_FIELDS, extract, merge_injuries
from src.intake.lead_types import LEAD_FIELDS, Speaker, Utterance
from src.intake.session_store import CallSession, SessionStore

logger = structlog.get_logger(__name__)

_SPEAKER_LABELS = {
    Speaker.CALLER: "Caller",
    Speaker.ASSISTANT: "Assistant",
}


def render_transcript(utterances: Iterable[Utterance]) -> str:
    """Render utterances as "Caller: ..." / "Assistant: ..." lines."""
    return "\n".join(f"{_SPEAKER_LABELS[u.speaker]}: {u.text}" for u in utterances)


class TranscriptAccumulator:
    def __init__(self, store: SessionStore, clock: Optional[Callable[[], date]] = None):
        self.store = store
        self._clock = clock or date.today

    async def record_utterance(self, call_id: str, speaker: Speaker, text: str) -> list[str]:
        """
        Append an utterance and update lead fields from it.

        Returns:
            Wire names of the fields whose value changed (empty if none, or if
            the call is no longer live)
        """
        text = (text or "").strip()
        if not text:
            return []

        result = await self.store.update(
            call_id,
            lambda session: self._apply(session, Speaker(speaker), text),
        )
        return result or []

    def _apply(self, session: CallSession, speaker: Speaker, text: str) -> list[str]:
        # Hint is the assistant line *before* this utterance.
        hint = session.last_assistant_text()
        session.transcript.append(Utterance(speaker=speaker, text=text))

        if speaker != Speaker.CALLER:
            return []

        today = self._clock()
        changed: list[str] = []
        for field_name in LEAD_FIELDS:
            accumulating = field_name in ACCUMULATING_FIELDS
            if not accumulating and not session.lead.is_empty(field_name):
                continue

            try:
                value = extract(field_name, text, today=today, hint=hint)
            except Exception as e:
                logger.warning(
                    "Field extraction failed",
                    call_id=session.call_id,
                    field=field_name,
                    error=str(e),
                )
                continue

            if not value:
                continue

            prior = session.lead.value(field_name)
            if accumulating:
                value = merge_injuries(prior, value)
            if value == prior:
                continue

            session.lead.assign(field_name, value)
            changed.append(field_name)

        if changed:
            logger.info(
                "Lead fields updated",
                call_id=session.call_id,
                fields=changed,
            )
        return changed
