from __future__ import annotations

import math
from typing import Any

from common.store import ProfileStore
from common.utils import dig
from fastapi.concurrency import run_in_threadpool

from matcher.models import Location, OperatingArea, Subscriber


def _as_number(value: Any) -> float | None:
    # bool is an int subclass; a stored True is not a coordinate.
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def operating_area_from_document(info: dict[str, Any] | None) -> OperatingArea | None:
    """Read ``areaOfOperation`` from a professional-info document.

    Returns ``None`` unless both coordinates and a positive radius are present.
    """
    area = dig(info, "areaOfOperation")
    latitude = _as_number(dig(area, "coordinates", "latitude"))
    longitude = _as_number(dig(area, "coordinates", "longitude"))
    radius_km = _as_number(dig(area, "radiusKm"))
    if latitude is None or longitude is None or radius_km is None:
        return None
    if not math.isfinite(radius_km) or radius_km <= 0:
        return None
    return OperatingArea(
        center=Location(latitude=latitude, longitude=longitude),
        radius_km=radius_km,
    )


class StoreSubscriberDirectory:
    def __init__(self, store: ProfileStore) -> None:
        self.store = store

    async def list_verified_subscribers(self) -> list[Subscriber]:
        profiles = await run_in_threadpool(self.store.list_verified_profiles)
        return [Subscriber(id=profile.clerk_id, email=profile.email) for profile in profiles]


class StorePreferenceLookup:
    def __init__(self, store: ProfileStore) -> None:
        self.store = store

    async def get_preferences(self, subscriber_id: str) -> dict[str, Any] | None:
        return await run_in_threadpool(self.store.get_preferences, subscriber_id)


class StoreOperatingAreaLookup:
    def __init__(self, store: ProfileStore) -> None:
        self.store = store

    async def get_operating_area(self, subscriber_id: str) -> OperatingArea | None:
        info = await run_in_threadpool(self.store.get_professional_info, subscriber_id)
        return operating_area_from_document(info)
