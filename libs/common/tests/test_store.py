from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest
from common.store import (
    ALLOWED_PROFESSIONS,
    ProfileStore,
    default_preferences,
    merge_document,
)

pytestmark = pytest.mark.unit


@pytest.fixture
def store(tmp_path: Path):
    profile_store = ProfileStore(str(tmp_path / "profiles.sqlite3"))
    profile_store.connect()
    yield profile_store
    profile_store.close()


def test_create_and_get_profile(store: ProfileStore) -> None:
    created = store.create_profile("user_1", email="one@example.com", email_verified=True)

    assert created.clerk_id == "user_1"
    assert created.email_verified is True
    assert store.get_profile("user_1") == created
    assert store.get_profile("missing") is None


def test_create_profile_twice_raises_integrity_error(store: ProfileStore) -> None:
    store.create_profile("user_1", email="one@example.com")
    with pytest.raises(sqlite3.IntegrityError):
        store.create_profile("user_1", email="other@example.com")


def test_list_verified_profiles_excludes_unverified(store: ProfileStore) -> None:
    store.create_profile("user_a", email="a@example.com", email_verified=True)
    store.create_profile("user_b", email="b@example.com", email_verified=False)
    store.create_profile("user_c", email=None, email_verified=True)

    verified = store.list_verified_profiles()

    assert [profile.clerk_id for profile in verified] == ["user_a", "user_c"]


def test_update_profile_only_touches_given_fields(store: ProfileStore) -> None:
    store.create_profile("user_1", email="one@example.com", first_name="Ada")

    updated = store.update_profile("user_1", email_verified=True)

    assert updated is not None
    assert updated.email_verified is True
    assert updated.first_name == "Ada"
    assert store.update_profile("missing", email_verified=True) is None


def test_update_profile_rejects_unknown_columns(store: ProfileStore) -> None:
    store.create_profile("user_1", email="one@example.com")
    with pytest.raises(ValueError, match="Unsupported"):
        store.update_profile("user_1", clerk_id="hijack")
    with pytest.raises(ValueError, match="Unsupported"):
        store.update_profile("user_1", created_at="2000-01-01T00:00:00+00:00")
    assert store.get_profile_or_raise("user_1").clerk_id == "user_1"


def test_documents_round_trip_and_absent_documents_are_none(store: ProfileStore) -> None:
    store.create_profile("user_1", email="one@example.com")
    assert store.get_preferences("user_1") is None
    assert store.get_professional_info("user_1") is None

    preferences = default_preferences()
    preferences["notifications"]["email"]["updates"] = True
    store.upsert_preferences("user_1", preferences)

    assert store.get_preferences("user_1") == preferences


def test_delete_profile_cascades_to_documents(store: ProfileStore) -> None:
    store.create_profile("user_1", email="one@example.com")
    store.upsert_preferences("user_1", default_preferences())
    store.upsert_professional_info("user_1", {"amtee": "123"})

    assert store.delete_profile("user_1") is True
    assert store.delete_profile("user_1") is False
    assert store.get_preferences("user_1") is None
    assert store.get_professional_info("user_1") is None


def test_non_object_document_is_reported(store: ProfileStore) -> None:
    store.create_profile("user_1", email="one@example.com")
    store.connection.execute(
        "INSERT INTO user_preferences VALUES (?, ?, ?, ?)",
        ("user_1", "[1, 2]", "now", "now"),
    )
    with pytest.raises(ValueError, match="not an object"):
        store.get_preferences("user_1")


def test_merge_document_is_shallow() -> None:
    merged = merge_document(
        {"a": {"x": 1, "y": 2}, "b": 1},
        {"a": {"x": 5}},
        {"b": 3},
    )
    assert merged == {"a": {"x": 5}, "b": 3}


def test_default_preferences_are_independent_copies() -> None:
    first = default_preferences()
    first["notifications"]["email"]["updates"] = True
    assert default_preferences()["notifications"]["email"]["updates"] is False
    assert "Civil Engineer" in ALLOWED_PROFESSIONS
