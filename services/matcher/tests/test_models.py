from __future__ import annotations

import json

import pytest
from common.queue import MalformedMessageError
from matcher.models import decode_opportunity_message

pytestmark = pytest.mark.unit


def encode(document: object) -> bytes:
    return json.dumps(document).encode()


def test_decodes_flat_message() -> None:
    opportunity = decode_opportunity_message(
        encode(
            {
                "id": "o1",
                "title": "Job",
                "description": "Survey a plot",
                "location": {"latitude": 37.98, "longitude": 23.73},
            }
        )
    )

    assert opportunity is not None
    assert opportunity.id == "o1"
    assert opportunity.location is not None
    assert opportunity.location.latitude == 37.98


def test_decodes_published_envelope() -> None:
    opportunity = decode_opportunity_message(
        encode(
            {
                "eventType": "opportunity.published",
                "opportunity": {
                    "id": "o2",
                    "status": "public",
                    "data": {
                        "project": {
                            "category": "survey",
                            "details": {"title": "Topographic survey", "description": "Plot"},
                            "location": {
                                "address": "Athens",
                                "coordinates": {"lat": 37.98, "lng": 23.73},
                            },
                        }
                    },
                },
            }
        )
    )

    assert opportunity is not None
    assert opportunity.id == "o2"
    assert opportunity.title == "Topographic survey"
    assert opportunity.location is not None
    assert opportunity.location.longitude == 23.73


def test_other_envelope_events_decode_to_none() -> None:
    body = encode({"eventType": "opportunity.closed", "opportunity": {"id": "o3"}})
    assert decode_opportunity_message(body) is None


def test_missing_location_is_allowed() -> None:
    opportunity = decode_opportunity_message(encode({"id": "o4", "title": "Job"}))
    assert opportunity is not None
    assert opportunity.location is None
    assert opportunity.description == ""


def test_null_description_becomes_empty_in_both_shapes() -> None:
    flat = decode_opportunity_message(encode({"id": "o8", "title": "Job", "description": None}))
    envelope = decode_opportunity_message(
        encode(
            {
                "eventType": "opportunity.published",
                "opportunity": {
                    "id": "o9",
                    "data": {"project": {"details": {"title": "Job", "description": None}}},
                },
            }
        )
    )

    assert flat is not None and flat.description == ""
    assert envelope is not None and envelope.description == ""


@pytest.mark.parametrize(
    "body",
    [
        b"not json",
        b"\xff\xfe",
        encode(["a", "list"]),
        encode({"title": "No id"}),
        encode({"id": "o5", "title": ""}),
        encode({"id": "o6", "title": "Job", "location": {"latitude": "north"}}),
        encode(
            {
                "eventType": "opportunity.published",
                "opportunity": {"id": "o7", "data": {"project": {}}},
            }
        ),
    ],
)
def test_malformed_bodies_raise(body: bytes) -> None:
    with pytest.raises(MalformedMessageError):
        decode_opportunity_message(body)
