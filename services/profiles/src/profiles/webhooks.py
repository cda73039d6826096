from __future__ import annotations

import json
import logging
from typing import Any

from common.queue import BrokerConnection, MalformedMessageError, QueueConsumer
from common.store import ProfileStore
from common.utils import dig, log_event
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field, ValidationError, model_validator

LOGGER = logging.getLogger("catchment.profiles")

DEFAULT_WEBHOOK_QUEUE = "webhook-events"


class WebhookEvent(BaseModel):
    type: str = Field(..., min_length=1)
    data: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def unwrap_queued_event(cls, value: Any) -> Any:
        """Accept the direct webhook shape and the queued ``eventType`` + ``data.data`` one."""
        if not isinstance(value, dict):
            return value
        normalized = dict(value)
        if not normalized.get("type") and normalized.get("eventType"):
            normalized["type"] = normalized["eventType"]
        data = normalized.get("data")
        if isinstance(data, dict) and isinstance(data.get("data"), dict):
            normalized["data"] = data["data"]
        return normalized


def decode_webhook_message(body: bytes) -> WebhookEvent:
    try:
        document = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedMessageError(f"Webhook body is not valid JSON: {exc}") from exc
    try:
        return WebhookEvent.model_validate(document)
    except ValidationError as exc:
        raise MalformedMessageError(f"Invalid webhook event: {exc}") from exc


def extract_identity(data: dict[str, Any]) -> dict[str, Any]:
    """Pull contact fields out of an identity-provider user payload.

    Prefers the address flagged as primary in ``email_addresses`` and falls
    back to a flat ``email`` field.
    """
    email = None
    verified = False
    addresses = data.get("email_addresses")
    if isinstance(addresses, list):
        primary_id = data.get("primary_email_address_id")
        entries = [entry for entry in addresses if isinstance(entry, dict)]
        primary = next((entry for entry in entries if entry.get("id") == primary_id), None)
        if primary is None and entries:
            primary = entries[0]
        if primary is not None:
            email = primary.get("email_address")
            verified = dig(primary, "verification", "status") == "verified"
    if email is None:
        email = data.get("email")
        verified = bool(data.get("email_verified", verified))
    return {
        "email": email,
        "email_verified": verified,
        "first_name": data.get("first_name"),
        "last_name": data.get("last_name"),
    }


class WebhookEventHandler:
    def __init__(self, store: ProfileStore) -> None:
        self.store = store

    async def process(self, event: WebhookEvent) -> str:
        if event.type == "user.created" or event.type == "user.updated":
            return await self._upsert_user(event)
        if event.type == "user.deleted":
            return await self._delete_user(event)
        log_event(LOGGER, logging.WARNING, "webhook_event_ignored", type=event.type)
        return "ignored"

    async def _upsert_user(self, event: WebhookEvent) -> str:
        clerk_id = self._clerk_id(event)
        identity = extract_identity(event.data)
        existing = await run_in_threadpool(self.store.get_profile, clerk_id)
        # Redelivered or out-of-order events converge on the same row.
        if existing is None:
            await run_in_threadpool(lambda: self.store.create_profile(clerk_id, **identity))
            action = "created"
        else:
            await run_in_threadpool(lambda: self.store.update_profile(clerk_id, **identity))
            action = "updated"
        log_event(
            LOGGER,
            logging.INFO,
            "webhook_event_processed",
            type=event.type,
            clerk_id=clerk_id,
            action=action,
        )
        return action

    async def _delete_user(self, event: WebhookEvent) -> str:
        clerk_id = self._clerk_id(event)
        deleted = await run_in_threadpool(self.store.delete_profile, clerk_id)
        action = "deleted" if deleted else "missing"
        log_event(
            LOGGER,
            logging.INFO,
            "webhook_event_processed",
            type=event.type,
            clerk_id=clerk_id,
            action=action,
        )
        return action

    @staticmethod
    def _clerk_id(event: WebhookEvent) -> str:
        clerk_id = event.data.get("id")
        if not isinstance(clerk_id, str) or not clerk_id:
            raise ValueError(f"{event.type} event is missing data.id")
        return clerk_id


def build_webhook_consumer(
    connection: BrokerConnection,
    store: ProfileStore,
    *,
    queue_name: str = DEFAULT_WEBHOOK_QUEUE,
) -> QueueConsumer[WebhookEvent]:
    handler = WebhookEventHandler(store)
    return QueueConsumer(
        connection,
        queue_name,
        decode=decode_webhook_message,
        handle=handler.process,
    )
