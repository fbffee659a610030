from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class Speaker(str, Enum):
    CALLER = "caller"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class Utterance:
    """One speaker-tagged line of the call transcript."""

    speaker: Speaker
    text: str
    timestamp: float = field(default_factory=time.time)


class LeadFields(BaseModel):
    """Structured intake data collected during a call."""

    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = Field(
        default=None,
        description="The caller's name if they introduced themselves",
    )

    phone: Optional[str] = Field(
        default=None,
        description="Caller ID, or a phone number the caller mentioned",
    )

    date_of_accident: Optional[str] = Field(
        default=None,
        alias="dateOfAccident",
        description="Accident date as YYYY-MM-DD",
    )

    location_of_accident: Optional[str] = Field(
        default=None,
        alias="locationOfAccident",
        description="Where the accident happened",
    )

    type_of_truck: Optional[str] = Field(
        default=None,
        alias="typeOfTruck",
        description="Canonical truck label, e.g. 'Semi Truck'",
    )

    injuries_sustained: Optional[str] = Field(
        default=None,
        alias="injuriesSustained",
        description="Comma-separated injury terms, accumulated over the call",
    )

    police_report_filed: Optional[str] = Field(
        default=None,
        alias="policeReportFiled",
        description="'Yes' or 'No'",
    )

    def value(self, field_name: str) -> Optional[str]:
        """Get a field by its wire name (e.g. ``dateOfAccident``)."""
        return getattr(self, LEAD_FIELD_ATTRS[field_name])

    def assign(self, field_name: str, value: Optional[str]) -> None:
        setattr(self, LEAD_FIELD_ATTRS[field_name], value)

    def is_empty(self, field_name: str) -> bool:
        current = self.value(field_name)
        return current is None or not current.strip()

    def to_wire(self) -> dict[str, Optional[str]]:
        return self.model_dump(by_alias=True)


# Wire name -> attribute name, in intake order.
LEAD_FIELD_ATTRS: dict[str, str] = {
    "name": "name",
    "phone": "phone",
    "dateOfAccident": "date_of_accident",
    "locationOfAccident": "location_of_accident",
    "typeOfTruck": "type_of_truck",
    "injuriesSustained": "injuries_sustained",
    "policeReportFiled": "police_report_filed",
}

LEAD_FIELDS: tuple[str, ...] = tuple(LEAD_FIELD_ATTRS)
