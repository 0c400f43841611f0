"""Append path: extend the chain tail by exactly one entry.

Every append runs in one transaction that

1. reads the head row (``SELECT ... FOR UPDATE`` where the backend supports it),
2. builds, hashes and signs the new entry linked to ``head.tail_hash``,
3. moves the head with a compare-and-swap on the hash it read,
4. inserts the entry.

The row lock serializes writers on PostgreSQL.  On backends without row
locks the compare-and-swap and the unique ``previous_hash`` constraint
reject the loser of a race, which is rolled back and retried against the
new tail.  Either way there is at most one entry per tail state.
"""

from __future__ import annotations

import logging
import random
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from activitylog.chain.entry import (
    ActivityChange,
    ActivityEntry,
    ActivityTarget,
    ActorRef,
    build_content,
    canonical_content,
)
from activitylog.config import DEFAULT_APPEND_RETRIES, GENESIS_HASH
from activitylog.crypto.signatures import KeyRing, compute_content_hash, default_keyring
from activitylog.errors import AppendError
from activitylog.storage.models import ActivityRecord, ChainHead

logger = logging.getLogger(__name__)

HEAD_ID = 1


class _TailMoved(Exception):
    """Another writer extended the chain between our read and our write."""


def lock_head(session: Session) -> Optional[ChainHead]:
    """Read the head row under a row lock (no-op lock on SQLite)."""
    stmt = select(ChainHead).where(ChainHead.id == HEAD_ID).with_for_update()
    return session.execute(stmt).scalar_one_or_none()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ChainWriter:
    """Appends signed, hash-linked entries to the activity chain."""

    def __init__(
        self,
        session_factory: sessionmaker,
        keyring: KeyRing | None = None,
        max_retries: int = DEFAULT_APPEND_RETRIES,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session_factory = session_factory
        self.keyring = keyring or default_keyring()
        self.max_retries = max(1, max_retries)
        self._clock = clock

    def append(
        self,
        actor: ActorRef | None,
        action: str,
        resource: str,
        target: ActivityTarget,
        changes: List[ActivityChange] | None = None,
        metadata: Dict[str, Any] | None = None,
    ) -> ActivityEntry:
        """Write one entry after the current tail and return it.

        Raises ``AppendError`` if the write fails or the tail keeps moving
        for ``max_retries`` attempts.
        """
        last_error: Exception | None = None
        for attempt in range(1, self.max_retries + 1):
            try:
                return self._append_once(actor, action, resource, target, changes, metadata)
            except (_TailMoved, IntegrityError, OperationalError) as exc:
                last_error = exc
                logger.debug(f"Chain tail contention on attempt {attempt}/{self.max_retries}: {exc!r}")
            except SQLAlchemyError as exc:
                raise AppendError(f"Failed to persist activity entry: {exc}", attempts=attempt) from exc
            if attempt < self.max_retries:
                time.sleep(random.uniform(0.005, 0.02) * attempt)

        raise AppendError(
            f"Chain tail contention: gave up after {self.max_retries} attempts",
            attempts=self.max_retries,
        ) from last_error

    def _append_once(
        self,
        actor: ActorRef | None,
        action: str,
        resource: str,
        target: ActivityTarget,
        changes: List[ActivityChange] | None,
        metadata: Dict[str, Any] | None,
    ) -> ActivityEntry:
        with self._session_factory() as session:
            with session.begin():
                head = lock_head(session)
                if head is None:
                    # first entry ever: create the sentinel row
                    session.add(ChainHead(id=HEAD_ID, tail_hash=GENESIS_HASH, tail_sequence=-1))
                    session.flush()
                    expected_hash, sequence = GENESIS_HASH, 0
                else:
                    expected_hash, sequence = head.tail_hash, head.tail_sequence + 1

                content = build_content(
                    entry_id=uuid.uuid4().hex,
                    sequence=sequence,
                    actor=actor,
                    action=action,
                    resource=resource,
                    target=target,
                    changes=changes,
                    metadata=metadata,
                    created_at=self._clock(),
                    previous_hash=expected_hash,
                )
                canonical = canonical_content(content)
                content_hash = compute_content_hash(canonical)
                signature = self.keyring.sign(canonical)

                moved = session.execute(
                    update(ChainHead)
                    .where(ChainHead.id == HEAD_ID, ChainHead.tail_hash == expected_hash)
                    .values(tail_hash=content_hash, tail_sequence=sequence)
                    .execution_options(synchronize_session=False)
                ).rowcount
                if moved != 1:
                    raise _TailMoved(f"expected tail {expected_hash[:12]} is gone")

                columns = dict(content)
                columns["meta"] = columns.pop("metadata")
                session.add(ActivityRecord(content_hash=content_hash, signature=signature, **columns))

        return ActivityEntry(content_hash=content_hash, signature=signature, **content)
