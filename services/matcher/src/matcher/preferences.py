from __future__ import annotations

import logging
from typing import Any, Protocol

from common.utils import dig, log_event

LOGGER = logging.getLogger("catchment.matcher")


class PreferenceStore(Protocol):
    async def get_preferences(self, subscriber_id: str) -> dict[str, Any] | None: ...


class PreferenceGate:
    """Decides whether a subscriber wants opportunity emails. Fails closed."""

    def __init__(self, store: PreferenceStore) -> None:
        self.store = store

    async def should_notify(self, subscriber_id: str) -> bool:
        try:
            preferences = await self.store.get_preferences(subscriber_id)
        except Exception as exc:
            log_event(
                LOGGER,
                logging.WARNING,
                "preference_lookup_failed",
                subscriber_id=subscriber_id,
                error=str(exc),
            )
            return False

        if preferences is None:
            log_event(LOGGER, logging.INFO, "preferences_missing", subscriber_id=subscriber_id)
            return False

        # Only a literal True opts in; truthy strings or numbers do not.
        return dig(preferences, "notifications", "email", "updates", default=False) is True
