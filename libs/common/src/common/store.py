from __future__ import annotations

import copy
import json
import os
import sqlite3
import tempfile
import threading
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from common.utils import now_utc_iso

DEFAULT_DB_PATH = os.path.join(tempfile.gettempdir(), "catchment", "profiles.sqlite3")

ALLOWED_PROFESSIONS = (
    "Civil Engineer",
    "Architectural Engineer",
    "Mechanical Engineer",
    "Chemical Engineer",
    "Electrical Engineer",
    "Surveying and Rural Engineer",
    "Naval Architect and Marine Engineer",
    "Electronics Engineer",
    "Mining and Metallurgical Engineer",
    "Urban, Regional and Development Planning Engineer",
    "Automation Engineer",
    "Environmental Engineer",
    "Production and Management Engineer",
    "Acoustical Engineer",
    "Materials Engineer",
    "Product and Systems Design Engineer",
)

DEFAULT_PREFERENCES: dict[str, Any] = {
    "dashboard": {"timezone": "Europe/Athens", "language": "el-GR"},
    "notifications": {
        "email": {
            "marketing": False,
            "updates": False,
            "security": True,
            "newsletters": False,
            "productAnnouncements": False,
        }
    },
    "display": {"theme": "light"},
}

DEFAULT_PROFESSIONAL_INFO: dict[str, Any] = {
    "profession": {"current": "", "allowedValues": list(ALLOWED_PROFESSIONS)},
    "amtee": "",
    "areaOfOperation": {"primary": "", "address": ""},
}


def default_preferences() -> dict[str, Any]:
    return copy.deepcopy(DEFAULT_PREFERENCES)


def default_professional_info() -> dict[str, Any]:
    return copy.deepcopy(DEFAULT_PROFESSIONAL_INFO)


def merge_document(
    defaults: dict[str, Any],
    current: dict[str, Any] | None,
    patch: dict[str, Any],
) -> dict[str, Any]:
    # Shallow on purpose: a patched top-level section replaces the stored one.
    return {**defaults, **(current or {}), **patch}


class Profile(BaseModel):
    clerk_id: str
    email: str | None = None
    email_verified: bool = False
    first_name: str | None = None
    last_name: str | None = None
    created_at: str
    updated_at: str


class ProfileStore:
    def __init__(self, database_path: str) -> None:
        self.database_path = Path(database_path)
        self._connection: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    @property
    def connection(self) -> sqlite3.Connection:
        if self._connection is None:
            raise RuntimeError("Database connection is not initialized")
        return self._connection

    def connect(self) -> None:
        with self._lock:
            if self._connection is not None:
                return
            self.database_path.parent.mkdir(parents=True, exist_ok=True)
            self._connection = sqlite3.connect(self.database_path, check_same_thread=False)
            self._connection.row_factory = sqlite3.Row
            self._connection.execute("PRAGMA foreign_keys=ON")
            self._connection.executescript(
                """
                CREATE TABLE IF NOT EXISTS profiles (
                    clerk_id TEXT PRIMARY KEY,
                    email TEXT,
                    email_verified INTEGER NOT NULL DEFAULT 0,
                    first_name TEXT,
                    last_name TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS user_preferences (
                    clerk_id TEXT PRIMARY KEY
                        REFERENCES profiles(clerk_id) ON DELETE CASCADE,
                    preferences_json TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS professional_info (
                    clerk_id TEXT PRIMARY KEY
                        REFERENCES profiles(clerk_id) ON DELETE CASCADE,
                    info_json TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                """
            )
            self._connection.commit()

    def close(self) -> None:
        with self._lock:
            if self._connection is None:
                return
            self._connection.close()
            self._connection = None

    def create_profile(
        self,
        clerk_id: str,
        *,
        email: str | None,
        email_verified: bool = False,
        first_name: str | None = None,
        last_name: str | None = None,
    ) -> Profile:
        with self._lock:
            now = now_utc_iso()
            self.connection.execute(
                """
                INSERT INTO profiles (
                    clerk_id,
                    email,
                    email_verified,
                    first_name,
                    last_name,
                    created_at,
                    updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    clerk_id,
                    email,
                    1 if email_verified else 0,
                    first_name,
                    last_name,
                    now,
                    now,
                ),
            )
            self.connection.commit()
            return self.get_profile_or_raise(clerk_id)

    def update_profile(self, clerk_id: str, /, **changes: Any) -> Profile | None:
        allowed = {"email", "email_verified", "first_name", "last_name"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValueError(f"Unsupported profile fields: {sorted(unknown)}")

        with self._lock:
            if self.get_profile(clerk_id) is None:
                return None
            if changes:
                assignments = [f"{column} = ?" for column in changes]
                params: list[Any] = [
                    (1 if value else 0) if column == "email_verified" else value
                    for column, value in changes.items()
                ]
                assignments.append("updated_at = ?")
                params.append(now_utc_iso())
                params.append(clerk_id)
                self.connection.execute(
                    f"UPDATE profiles SET {', '.join(assignments)} WHERE clerk_id = ?",
                    tuple(params),
                )
                self.connection.commit()
            return self.get_profile(clerk_id)

    def get_profile_or_raise(self, clerk_id: str) -> Profile:
        profile = self.get_profile(clerk_id)
        if profile is None:
            raise KeyError(f"Unknown clerk_id: {clerk_id}")
        return profile

    def get_profile(self, clerk_id: str) -> Profile | None:
        with self._lock:
            row = self.connection.execute(
                """
                SELECT
                    clerk_id,
                    email,
                    email_verified,
                    first_name,
                    last_name,
                    created_at,
                    updated_at
                FROM profiles
                WHERE clerk_id = ?
                """,
                (clerk_id,),
            ).fetchone()
            if row is None:
                return None
            return self._to_profile(row)

    def list_verified_profiles(self) -> list[Profile]:
        with self._lock:
            cursor = self.connection.execute(
                """
                SELECT
                    clerk_id,
                    email,
                    email_verified,
                    first_name,
                    last_name,
                    created_at,
                    updated_at
                FROM profiles
                WHERE email_verified = 1
                ORDER BY clerk_id
                """
            )
            return [self._to_profile(row) for row in cursor.fetchall()]

    def delete_profile(self, clerk_id: str) -> bool:
        with self._lock:
            cursor = self.connection.execute(
                "DELETE FROM profiles WHERE clerk_id = ?",
                (clerk_id,),
            )
            self.connection.commit()
            return cursor.rowcount > 0

    def get_preferences(self, clerk_id: str) -> dict[str, Any] | None:
        return self._get_document("user_preferences", "preferences_json", clerk_id)

    def upsert_preferences(self, clerk_id: str, preferences: dict[str, Any]) -> dict[str, Any]:
        self._upsert_document("user_preferences", "preferences_json", clerk_id, preferences)
        return preferences

    def get_professional_info(self, clerk_id: str) -> dict[str, Any] | None:
        return self._get_document("professional_info", "info_json", clerk_id)

    def upsert_professional_info(self, clerk_id: str, info: dict[str, Any]) -> dict[str, Any]:
        self._upsert_document("professional_info", "info_json", clerk_id, info)
        return info

    def _get_document(self, table: str, column: str, clerk_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self.connection.execute(
                f"SELECT {column} FROM {table} WHERE clerk_id = ?",
                (clerk_id,),
            ).fetchone()
            if row is None:
                return None
            document = json.loads(row[column])
            if not isinstance(document, dict):
                raise ValueError(f"Stored {table} document for {clerk_id} is not an object")
            return document

    def _upsert_document(
        self,
        table: str,
        column: str,
        clerk_id: str,
        document: dict[str, Any],
    ) -> None:
        with self._lock:
            now = now_utc_iso()
            self.connection.execute(
                f"""
                INSERT INTO {table} (clerk_id, {column}, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(clerk_id) DO UPDATE SET
                    {column} = excluded.{column},
                    updated_at = excluded.updated_at
                """,
                (clerk_id, json.dumps(document), now, now),
            )
            self.connection.commit()

    def _to_profile(self, row: sqlite3.Row) -> Profile:
        return Profile(
            clerk_id=row["clerk_id"],
            email=row["email"],
            email_verified=bool(row["email_verified"]),
            first_name=row["first_name"],
            last_name=row["last_name"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
