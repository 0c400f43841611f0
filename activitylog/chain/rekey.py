"""Key-rotation maintenance: re-sign entries with the current primary key.

After a rotation, historical entries still verify through the legacy
keys.  Re-signing them lets the legacy keys be retired.  Only entries
whose content hash still recomputes and whose signature verifies with an
accepted key are re-signed; anything else is left alone and counted as
skipped, so maintenance never turns a tampered entry into a valid one.
The hash chain itself does not depend on key material and is untouched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from activitylog.chain.entry import canonical_content
from activitylog.chain.retention import anchor_payload
from activitylog.config import DEFAULT_BATCH_SIZE
from activitylog.crypto.signatures import KeyRing, compute_content_hash, default_keyring
from activitylog.errors import ChainStorageError
from activitylog.storage.models import ActivityRecord, ChainAnchor

logger = logging.getLogger(__name__)


@dataclass
class ResignStats:
    total: int = 0
    needs_resign: int = 0
    resigned: int = 0
    skipped: int = 0
    anchors_resigned: int = 0


def resign_entries(
    session_factory: sessionmaker,
    keyring: KeyRing | None = None,
    dry_run: bool = False,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> ResignStats:
    """Re-sign legacy-signed entries and anchors with the primary key."""
    keyring = keyring or default_keyring()
    stats = ResignStats()
    cursor = -1

    try:
        while True:
            with session_factory() as session:
                with session.begin():
                    batch = list(
                        session.scalars(
                            select(ActivityRecord)
                            .where(ActivityRecord.sequence > cursor)
                            .order_by(ActivityRecord.sequence)
                            .limit(batch_size)
                        )
                    )
                    for record in batch:
                        stats.total += 1
                        canonical = canonical_content(record.content())
                        if keyring.is_signed_with_current_key(canonical, record.signature):
                            continue
                        stats.needs_resign += 1
                        if compute_content_hash(canonical) != record.content_hash or not keyring.verify(
                            canonical, record.signature
                        ):
                            stats.skipped += 1
                            logger.warning(
                                f"[Activity {record.id}] not re-signed: content or signature does not verify"
                            )
                            continue
                        if not dry_run:
                            record.signature = keyring.sign(canonical)
                            stats.resigned += 1
                    fetched = len(batch)
                    if batch:
                        cursor = batch[-1].sequence
            if fetched < batch_size:
                break

        with session_factory() as session:
            with session.begin():
                for anchor in session.scalars(select(ChainAnchor)):
                    payload = anchor_payload(anchor)
                    if keyring.is_signed_with_current_key(payload, anchor.signature):
                        continue
                    if not keyring.verify(payload, anchor.signature):
                        logger.warning(f"Chain anchor at position {anchor.sequence} not re-signed: signature does not verify")
                        continue
                    if not dry_run:
                        anchor.signature = keyring.sign(payload)
                        stats.anchors_resigned += 1
    except SQLAlchemyError as exc:
        raise ChainStorageError(f"Re-signing activity entries failed: {exc}") from exc

    logger.info(
        f"Re-sign{' (dry run)' if dry_run else ''}: {stats.total} entries, "
        f"{stats.needs_resign} on legacy keys, {stats.resigned} re-signed, {stats.skipped} skipped"
    )
    return stats
