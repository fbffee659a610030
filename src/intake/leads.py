"""
Lead persistence.

The orchestrator hands a snapshot of the lead fields and the rendered
transcript to a `LeadSink` once per call. The Airtable sink owns its own
retry policy; callers never retry.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from datetime import date
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import quote

import httpx
import structlog

from src.intake.config import Config
from src.intake.lead_types import LeadFields

logger = structlog.get_logger(__name__)

AIRTABLE_API_BASE = "https://api.airtable.com/v0"

# Truck labels that do not indicate a commercial vehicle.
_NON_COMMERCIAL_TRUCKS = frozenset({"Pickup Truck"})

RECENT_ACCIDENT_DAYS = 180


class LeadSaveError(Exception):
    """Raised when a lead could not be stored after all attempts."""
    pass


def qualify_lead(lead: LeadFields, today: Optional[date] = None) -> str:
    """
    Score a lead for attorney follow-up.

    Commercial truck 40, injuries 30, police report 15, accident within the
    last 180 days 15.
    """
    today = today or date.today()
    score = 0
    factors: list[str] = []

    if lead.type_of_truck and lead.type_of_truck not in _NON_COMMERCIAL_TRUCKS:
        score += 40
        factors.append("commercial truck")

    if lead.injuries_sustained and lead.injuries_sustained.strip():
        score += 30
        factors.append("injuries")

    if lead.police_report_filed == "Yes":
        score += 15
        factors.append("police report")

    if lead.date_of_accident:
        try:
            accident = date.fromisoformat(lead.date_of_accident)
        except ValueError:
            accident = None
        if accident is not None and 0 <= (today - accident).days <= RECENT_ACCIDENT_DAYS:
            score += 15
            factors.append("recent accident")

    if score >= 75:
        status = "Highly Qualified"
    elif score >= 50:
        status = "Qualified"
    elif score >= 30:
        status = "Maybe Qualified"
    else:
        status = "Not Qualified"

    logger.info("Lead qualified", status=status, score=score, factors=factors)
    return status


def build_record(lead: LeadFields, transcript: str = "", *, today: Optional[date] = None) -> dict[str, Any]:
    """Map lead fields to the table's columns."""
    fields: dict[str, Any] = {
        "Name": lead.name or "",
        "Phone Number": lead.phone or "",
        "Accident Location": lead.location_of_accident or "",
        "Type of Truck": lead.type_of_truck or "",
        "Injuries Sustained": lead.injuries_sustained or "",
        "Police Report Filed": lead.police_report_filed or "",
    }

    # Airtable rejects an empty string in a date column.
    if lead.date_of_accident and lead.date_of_accident.strip():
        fields["Date of Accident"] = lead.date_of_accident

    if transcript and transcript.strip():
        fields["Raw Transcript"] = transcript

    fields["Qualified?"] = qualify_lead(lead, today)
    return fields


class LeadSink(ABC):
    @abstractmethod
    async def save(self, lead: LeadFields, transcript: str) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class LoggingLeadSink(LeadSink):
    """Used when no record store is configured; the lead only goes to the log."""

    async def save(self, lead: LeadFields, transcript: str) -> None:
        logger.info(
            "Record store not configured; lead not stored",
            lead=lead.to_wire(),
            transcript_chars=len(transcript or ""),
        )


class AirtableLeadSink(LeadSink):
    """Creates one Airtable record per lead, retrying with exponential backoff."""

    def __init__(
        self,
        config: Config,
        *,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], date] = date.today,
    ):
        self.config = config
        self.max_attempts = max(1, int(config.airtable_max_attempts))
        self._client = client
        self._owns_client = client is None
        self._sleep = sleep
        self._clock = clock

    @property
    def url(self) -> str:
        table = quote(self.config.airtable_table_name, safe="")
        return f"{AIRTABLE_API_BASE}/{self.config.airtable_base_id}/{table}"

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(10.0))
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def save(self, lead: LeadFields, transcript: str) -> None:
        """
        Create the record.

        Raises:
            LeadSaveError: If every attempt failed
        """
        payload = {"fields": build_record(lead, transcript, today=self._clock())}
        headers = {
            "Authorization": f"Bearer {self.config.airtable_api_key}",
            "Content-Type": "application/json",
        }

        client = self._get_client()
        for attempt in range(1, self.max_attempts + 1):
            try:
                resp = await client.post(self.url, json=payload, headers=headers)
                resp.raise_for_status()
            except httpx.HTTPError as e:
                detail = None
                if isinstance(e, httpx.HTTPStatusError):
                    detail = e.response.text[:500]
                logger.error(
                    "Airtable save attempt failed",
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    error=str(e),
                    detail=detail,
                )
                if attempt == self.max_attempts:
                    raise LeadSaveError(
                        f"Failed to save to Airtable after {self.max_attempts} attempts: {e}"
                    ) from e

                wait_s = float(2 ** attempt)
                logger.info("Retrying Airtable save", wait_s=wait_s)
                await self._sleep(wait_s)
                continue

            record_id = None
            try:
                record_id = resp.json().get("id")
            except ValueError:
                pass
            logger.info(
                "Lead saved to Airtable",
                record_id=record_id,
                name=lead.name or "Unknown",
                attempt=attempt,
            )
            return


def build_lead_sink(config: Config) -> LeadSink:
    if config.airtable_enabled:
        return AirtableLeadSink(config)
    logger.warning("AIRTABLE_API_KEY / AIRTABLE_BASE_ID not set; leads will only be logged")
    return LoggingLeadSink()
