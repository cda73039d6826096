from __future__ import annotations

import json
from pathlib import Path

import pytest
from common.queue import BrokerConnection, MalformedMessageError
from common.store import ProfileStore
from profiles.webhooks import (
    WebhookEvent,
    WebhookEventHandler,
    build_webhook_consumer,
    decode_webhook_message,
    extract_identity,
)

pytestmark = pytest.mark.unit


class FakeMessage:
    def __init__(self, body: bytes) -> None:
        self.body = body
        self.message_id = "w-1"
        self.acked = False
        self.rejected_with: bool | None = None

    async def ack(self) -> None:
        self.acked = True

    async def reject(self, requeue: bool = False) -> None:
        self.rejected_with = requeue


@pytest.fixture
def store(tmp_path: Path):
    profile_store = ProfileStore(str(tmp_path / "profiles.sqlite3"))
    profile_store.connect()
    yield profile_store
    profile_store.close()


def clerk_user(clerk_id: str = "user_1", status: str = "verified") -> dict:
    return {
        "id": clerk_id,
        "first_name": "Ada",
        "last_name": "Lovelace",
        "primary_email_address_id": "idn_2",
        "email_addresses": [
            {"id": "idn_1", "email_address": "old@example.com"},
            {
                "id": "idn_2",
                "email_address": "ada@example.com",
                "verification": {"status": status},
            },
        ],
    }


def test_extract_identity_prefers_primary_address() -> None:
    identity = extract_identity(clerk_user())
    assert identity == {
        "email": "ada@example.com",
        "email_verified": True,
        "first_name": "Ada",
        "last_name": "Lovelace",
    }


def test_extract_identity_falls_back_to_flat_email() -> None:
    identity = extract_identity({"id": "user_1", "email": "flat@example.com"})
    assert identity["email"] == "flat@example.com"
    assert identity["email_verified"] is False


def test_decode_direct_webhook_shape() -> None:
    event = decode_webhook_message(
        json.dumps({"type": "user.created", "data": {"id": "user_1"}}).encode()
    )
    assert event.type == "user.created"
    assert event.data == {"id": "user_1"}


def test_decode_queued_shape_with_event_type_and_nested_data() -> None:
    event = decode_webhook_message(
        b'{"eventType":"user.created","data":{"data":{"id":"user_1","email":"a@x.com"}}}'
    )
    assert event.type == "user.created"
    assert event.data == {"id": "user_1", "email": "a@x.com"}


@pytest.mark.asyncio
async def test_consumer_creates_profile_from_queued_shape(store: ProfileStore) -> None:
    consumer = build_webhook_consumer(BrokerConnection("amqp://unused/"), store)
    message = FakeMessage(
        json.dumps(
            {
                "eventType": "user.created",
                "data": {"data": {"id": "user_9", "email": "nine@example.com"}},
            }
        ).encode()
    )

    await consumer.process(message)

    assert message.acked
    profile = store.get_profile("user_9")
    assert profile is not None and profile.email == "nine@example.com"


def test_decode_rejects_bad_bodies() -> None:
    with pytest.raises(MalformedMessageError):
        decode_webhook_message(b"{not json")
    with pytest.raises(MalformedMessageError):
        decode_webhook_message(json.dumps({"data": {}}).encode())


@pytest.mark.asyncio
async def test_created_then_updated_then_deleted(store: ProfileStore) -> None:
    handler = WebhookEventHandler(store)

    assert await handler.process(WebhookEvent(type="user.created", data=clerk_user())) == "created"
    profile = store.get_profile("user_1")
    assert profile is not None and profile.email_verified is True

    renamed = clerk_user()
    renamed["first_name"] = "Augusta"
    assert await handler.process(WebhookEvent(type="user.updated", data=renamed)) == "updated"
    assert store.get_profile("user_1").first_name == "Augusta"

    deleted = WebhookEvent(type="user.deleted", data={"id": "user_1"})
    assert await handler.process(deleted) == "deleted"
    assert store.get_profile("user_1") is None
    assert await handler.process(deleted) == "missing"


@pytest.mark.asyncio
async def test_redelivered_create_is_idempotent(store: ProfileStore) -> None:
    handler = WebhookEventHandler(store)
    event = WebhookEvent(type="user.created", data=clerk_user())

    await handler.process(event)
    assert await handler.process(event) == "updated"


@pytest.mark.asyncio
async def test_unknown_event_type_is_ignored(store: ProfileStore) -> None:
    handler = WebhookEventHandler(store)
    assert await handler.process(WebhookEvent(type="session.created", data={})) == "ignored"


@pytest.mark.asyncio
async def test_consumer_acks_handled_events_and_rejects_broken_ones(store: ProfileStore) -> None:
    consumer = build_webhook_consumer(BrokerConnection("amqp://unused/"), store)

    good = FakeMessage(json.dumps({"type": "user.created", "data": clerk_user()}).encode())
    missing_id = FakeMessage(json.dumps({"type": "user.created", "data": {}}).encode())
    garbage = FakeMessage(b"garbage")

    await consumer.process(good)
    await consumer.process(missing_id)
    await consumer.process(garbage)

    assert good.acked
    assert missing_id.rejected_with is False
    assert garbage.rejected_with is False
    assert consumer.queue_name == "webhook-events"
    assert store.get_profile("user_1") is not None
