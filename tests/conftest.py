"""Shared fixtures.

The signing module builds its key ring from the environment at import
time, so the primary key must be set before any ``activitylog`` import.
"""

from __future__ import annotations

import os

os.environ.setdefault("ACTIVITY_SIGNING_KEY", "test-primary-key")

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import text

from activitylog.chain.append import ChainWriter
from activitylog.chain.entry import ActivityTarget, ActorRef
from activitylog.chain.verify import ChainVerifier
from activitylog.config import Settings
from activitylog.crypto.signatures import KeyRing
from activitylog.service import ActivityService
from activitylog.storage.db import Database

PRIMARY_KEY = "primary-key-2026"


class Clock:
    """Settable clock for writers that need entries at chosen times."""

    def __init__(self, now: datetime | None = None) -> None:
        self.now = now or datetime(2026, 10, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture()
def database(tmp_path):
    db = Database(f"sqlite:///{tmp_path / 'activity.db'}")
    db.create_all()
    yield db
    db.engine.dispose()


@pytest.fixture()
def bare_database(tmp_path):
    """A database whose tables were never created."""
    db = Database(f"sqlite:///{tmp_path / 'empty.db'}")
    yield db
    db.engine.dispose()


@pytest.fixture()
def keyring():
    return KeyRing(primary=PRIMARY_KEY)


@pytest.fixture()
def clock():
    return Clock()


@pytest.fixture()
def writer(database, keyring, clock):
    return ChainWriter(database.SessionLocal, keyring=keyring, clock=clock)


@pytest.fixture()
def verifier(database, keyring):
    # small batches so multi-batch scans are exercised
    return ChainVerifier(database.SessionLocal, keyring=keyring, batch_size=3, quick_limit=5)


@pytest.fixture()
def settings():
    return Settings(
        ACTIVITY_SIGNING_KEY=PRIMARY_KEY,
        CRON_SECRET="cron-secret",
        LOGIN_FAILURE_MAX_PER_MINUTE=3,
        VERIFY_BATCH_SIZE=3,
        VERIFY_QUICK_LIMIT=5,
        ACTIVITY_RETENTION_DAYS=90,
    )


@pytest.fixture()
def service(database, settings, keyring):
    return ActivityService(database, settings=settings, keyring=keyring)


@pytest.fixture()
def append_entries(writer, clock):
    """Append *n* user-update entries one minute apart; returns the entries."""

    def _append(n: int, resource: str = "users", actor_id: str = "u-1"):
        entries = []
        for i in range(n):
            entries.append(
                writer.append(
                    ActorRef.for_user(actor_id, name="Ada"),
                    "update",
                    resource,
                    ActivityTarget(type="user", id=f"target-{i}", name=f"Target {i}"),
                    metadata={"ip_address": "10.0.0.1", "n": i},
                )
            )
            clock.advance(minutes=1)
        return entries

    return _append


@pytest.fixture()
def execute_sql(database):
    """Run raw SQL against storage, bypassing the append path."""

    def _execute(sql: str, **params) -> int:
        with database.engine.begin() as conn:
            return conn.execute(text(sql), params).rowcount

    return _execute
