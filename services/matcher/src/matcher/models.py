from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from common.queue import MalformedMessageError
from common.utils import dig
from pydantic import BaseModel, Field, ValidationError, field_validator

PUBLISHED_EVENT = "opportunity.published"


class Location(BaseModel):
    # Range checks are left to producers; geo math treats bad input as "no match".
    latitude: float
    longitude: float


class OperatingArea(BaseModel):
    center: Location
    radius_km: float


class Opportunity(BaseModel):
    id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1)
    description: str = ""
    location: Location | None = None

    @field_validator("description", mode="before")
    @classmethod
    def blank_missing_description(cls, value: Any) -> Any:
        return "" if value is None else value


@dataclass(frozen=True)
class Subscriber:
    id: str
    email: str | None


def _from_envelope(document: dict[str, Any]) -> dict[str, Any] | None:
    if document.get("eventType") != PUBLISHED_EVENT:
        return None
    project = dig(document, "opportunity", "data", "project", default={})
    coordinates = dig(project, "location", "coordinates")
    location = None
    if coordinates is not None:
        location = {
            "latitude": dig(coordinates, "lat"),
            "longitude": dig(coordinates, "lng"),
        }
    return {
        "id": dig(document, "opportunity", "id"),
        "title": dig(project, "details", "title"),
        "description": dig(project, "details", "description"),
        "location": location,
    }


def decode_opportunity_message(body: bytes) -> Opportunity | None:
    """Decode a queue body into an Opportunity.

    Accepts the flat ``{id, title, description, location}`` shape and the
    publisher's ``opportunity.published`` envelope. Envelopes carrying any
    other event type decode to ``None``.
    """
    try:
        document = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedMessageError(f"Message body is not valid JSON: {exc}") from exc

    if not isinstance(document, dict):
        raise MalformedMessageError("Message body must be a JSON object.")

    if "eventType" in document:
        fields = _from_envelope(document)
        if fields is None:
            return None
    else:
        fields = document

    try:
        return Opportunity.model_validate(fields)
    except ValidationError as exc:
        raise MalformedMessageError(f"Invalid opportunity payload: {exc}") from exc
