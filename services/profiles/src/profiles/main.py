from __future__ import annotations

import logging
import secrets
import sqlite3
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, Literal

from common.store import (
    ALLOWED_PROFESSIONS,
    DEFAULT_DB_PATH,
    Profile,
    ProfileStore,
    default_preferences,
    default_professional_info,
    merge_document,
)
from common.utils import env_str, log_event
from fastapi import FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator

LOGGER = logging.getLogger("catchment.profiles")


class ProfileCreateRequest(BaseModel):
    clerk_id: str = Field(..., min_length=3, max_length=64, pattern=r"^[a-zA-Z0-9_-]+$")
    email: EmailStr | None = None
    email_verified: bool = False
    first_name: str | None = Field(default=None, max_length=120)
    last_name: str | None = Field(default=None, max_length=120)


class ProfileUpdateRequest(BaseModel):
    email: EmailStr | None = None
    email_verified: bool | None = None
    first_name: str | None = Field(default=None, max_length=120)
    last_name: str | None = Field(default=None, max_length=120)

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class DashboardPreferences(BaseModel):
    timezone: str = "Europe/Athens"
    language: str = "el-GR"


class EmailNotificationPreferences(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    marketing: bool = False
    updates: bool = False
    security: bool = True
    newsletters: bool = False
    product_announcements: bool = Field(default=False, alias="productAnnouncements")


class NotificationPreferences(BaseModel):
    email: EmailNotificationPreferences = Field(default_factory=EmailNotificationPreferences)


class DisplayPreferences(BaseModel):
    theme: Literal["light", "dark", "system"] = "light"


class PreferencesUpdateRequest(BaseModel):
    dashboard: DashboardPreferences | None = None
    notifications: NotificationPreferences | None = None
    display: DisplayPreferences | None = None

    def patch(self) -> dict[str, Any]:
        # Each section that was sent replaces the stored section whole.
        return {
            name: getattr(self, name).model_dump(by_alias=True)
            for name in self.model_fields_set
            if getattr(self, name) is not None
        }


class Coordinates(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class AreaOfOperation(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    primary: str = ""
    address: str = ""
    coordinates: Coordinates | None = None
    radius_km: float | None = Field(default=None, gt=0, alias="radiusKm")


class ProfessionUpdate(BaseModel):
    current: str = ""


class ProfessionalInfoUpdateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    profession: ProfessionUpdate | None = None
    amtee: str | None = None
    area_of_operation: AreaOfOperation | None = Field(default=None, alias="areaOfOperation")

    @model_validator(mode="after")
    def validate_profession(self) -> ProfessionalInfoUpdateRequest:
        current = self.profession.current if self.profession else ""
        if current and current not in ALLOWED_PROFESSIONS:
            raise ValueError(f"Invalid profession value: {current}")
        return self

    def patch(self) -> dict[str, Any]:
        patch: dict[str, Any] = {}
        if self.profession is not None:
            patch["profession"] = {
                "current": self.profession.current,
                "allowedValues": list(ALLOWED_PROFESSIONS),
            }
        if self.amtee is not None:
            patch["amtee"] = self.amtee
        if self.area_of_operation is not None:
            patch["areaOfOperation"] = self.area_of_operation.model_dump(
                by_alias=True, exclude_none=True
            )
        return patch


def create_app(
    *,
    database_path: str | None = None,
    api_key: str | None = None,
) -> FastAPI:
    resolved_path = database_path or env_str("CATCHMENT_DB_PATH", DEFAULT_DB_PATH)
    resolved_api_key = (api_key or env_str("PROFILES_API_KEY")).strip() or None

    store = ProfileStore(database_path=resolved_path)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await run_in_threadpool(store.connect)
        app.state.store = store
        try:
            yield
        finally:
            await run_in_threadpool(store.close)

    app = FastAPI(title="Catchment Profiles", version="0.1.0", lifespan=lifespan)

    @app.middleware("http")
    async def request_logging_middleware(request: Request, call_next):
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as exc:
            log_event(
                LOGGER,
                logging.ERROR,
                "request_complete",
                exc_info=True,
                request_id=request_id,
                method=request.method,
                path=request.url.path,
                status_code=500,
                error=str(exc),
            )
            return JSONResponse(
                status_code=500,
                content={"detail": "Internal Server Error", "request_id": request_id},
                headers={"x-request-id": request_id},
            )

        duration_ms = (time.perf_counter() - started) * 1000
        response.headers["x-request-id"] = request_id
        log_event(
            LOGGER,
            logging.INFO,
            "request_complete",
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round(duration_ms, 3),
        )
        return response

    def require_api_key(request: Request) -> None:
        if resolved_api_key is None:
            return
        provided = request.headers.get("x-api-key", "")
        if not provided or not secrets.compare_digest(provided, resolved_api_key):
            raise HTTPException(status_code=401, detail="Unauthorized")

    async def get_profile_or_404(request: Request, clerk_id: str) -> Profile:
        profile = await run_in_threadpool(request.app.state.store.get_profile, clerk_id)
        if profile is None:
            raise HTTPException(status_code=404, detail="Unknown clerk_id")
        return profile

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "service": "profiles"}

    @app.post("/profiles", response_model=Profile, status_code=201)
    async def create_profile(payload: ProfileCreateRequest, request: Request) -> Profile:
        require_api_key(request)
        try:
            return await run_in_threadpool(
                request.app.state.store.create_profile,
                payload.clerk_id,
                email=str(payload.email) if payload.email else None,
                email_verified=payload.email_verified,
                first_name=payload.first_name,
                last_name=payload.last_name,
            )
        except sqlite3.IntegrityError as exc:
            raise HTTPException(status_code=409, detail="Profile already exists") from exc

    @app.get("/profiles/{clerk_id}", response_model=Profile)
    async def get_profile(clerk_id: str, request: Request) -> Profile:
        return await get_profile_or_404(request, clerk_id)

    @app.patch("/profiles/{clerk_id}", response_model=Profile)
    async def update_profile(
        clerk_id: str,
        payload: ProfileUpdateRequest,
        request: Request,
    ) -> Profile:
        require_api_key(request)
        changes = payload.changes()
        if "email" in changes and changes["email"] is not None:
            changes["email"] = str(changes["email"])
        profile = await run_in_threadpool(
            lambda: request.app.state.store.update_profile(clerk_id, **changes)
        )
        if profile is None:
            raise HTTPException(status_code=404, detail="Unknown clerk_id")
        return profile

    @app.delete("/profiles/{clerk_id}")
    async def delete_profile(clerk_id: str, request: Request) -> dict[str, bool]:
        require_api_key(request)
        deleted = await run_in_threadpool(request.app.state.store.delete_profile, clerk_id)
        if not deleted:
            raise HTTPException(status_code=404, detail="Unknown clerk_id")
        return {"deleted": True}

    @app.get("/profiles/{clerk_id}/preferences")
    async def get_preferences(clerk_id: str, request: Request) -> dict[str, Any]:
        await get_profile_or_404(request, clerk_id)
        store: ProfileStore = request.app.state.store
        preferences = await run_in_threadpool(store.get_preferences, clerk_id)
        if preferences is None:
            preferences = await run_in_threadpool(
                store.upsert_preferences, clerk_id, default_preferences()
            )
        return preferences

    @app.put("/profiles/{clerk_id}/preferences")
    async def update_preferences(
        clerk_id: str,
        payload: PreferencesUpdateRequest,
        request: Request,
    ) -> dict[str, Any]:
        require_api_key(request)
        await get_profile_or_404(request, clerk_id)
        store: ProfileStore = request.app.state.store
        current = await run_in_threadpool(store.get_preferences, clerk_id)
        updated = merge_document(default_preferences(), current, payload.patch())
        return await run_in_threadpool(store.upsert_preferences, clerk_id, updated)

    @app.get("/profiles/{clerk_id}/professional-info")
    async def get_professional_info(clerk_id: str, request: Request) -> dict[str, Any]:
        await get_profile_or_404(request, clerk_id)
        store: ProfileStore = request.app.state.store
        info = await run_in_threadpool(store.get_professional_info, clerk_id)
        if info is None:
            info = await run_in_threadpool(
                store.upsert_professional_info, clerk_id, default_professional_info()
            )
        return info

    @app.put("/profiles/{clerk_id}/professional-info")
    async def update_professional_info(
        clerk_id: str,
        payload: ProfessionalInfoUpdateRequest,
        request: Request,
    ) -> dict[str, Any]:
        require_api_key(request)
        await get_profile_or_404(request, clerk_id)
        store: ProfileStore = request.app.state.store
        current = await run_in_threadpool(store.get_professional_info, clerk_id)
        updated = merge_document(default_professional_info(), current, payload.patch())
        return await run_in_threadpool(store.upsert_professional_info, clerk_id, updated)

    return app


app = create_app()
