"""Age-based retention purge that keeps the chain verifiable.

Deleting old entries necessarily removes the predecessor of the first
entry that is kept.  The purge therefore removes a *prefix* of the chain
and, in the same transaction, records a signed ``ChainAnchor`` at the
first retained position naming the hash that entry links to.  The
verifier accepts that hash in place of ``GENESIS_HASH``.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from activitylog.chain.append import lock_head
from activitylog.chain.entry import format_timestamp, truncate_timestamp
from activitylog.crypto.signatures import KeyRing, default_keyring
from activitylog.errors import ChainStorageError
from activitylog.storage.models import ActivityRecord, ChainAnchor

logger = logging.getLogger(__name__)


@dataclass
class PurgeResult:
    deleted: int
    cutoff: datetime
    anchor_sequence: Optional[int] = None


def anchor_payload(anchor: ChainAnchor) -> str:
    """Canonical content signed for an anchor."""
    return json.dumps(
        {
            "sequence": anchor.sequence,
            "previous_hash": anchor.previous_hash,
            "purged_count": anchor.purged_count,
            "cutoff": format_timestamp(anchor.cutoff),
            "created_at": format_timestamp(anchor.created_at),
        },
        sort_keys=True,
        separators=(",", ":"),
    )


def purge_older_than(
    session_factory: sessionmaker,
    days: int,
    keyring: KeyRing | None = None,
    now: datetime | None = None,
) -> PurgeResult:
    """Delete entries created at least *days* ago and re-anchor the chain."""
    if days < 0:
        raise ValueError("days must not be negative")
    keyring = keyring or default_keyring()
    now = truncate_timestamp(now or datetime.now(timezone.utc))
    cutoff = now - timedelta(days=days)

    try:
        with session_factory() as session:
            with session.begin():
                # appends wait until the prefix is gone and the anchor is in place
                lock_head(session)

                last = session.execute(
                    select(ActivityRecord.sequence, ActivityRecord.content_hash)
                    .where(ActivityRecord.created_at <= cutoff)
                    .order_by(ActivityRecord.sequence.desc())
                    .limit(1)
                ).first()
                if last is None:
                    return PurgeResult(deleted=0, cutoff=cutoff)

                deleted = session.execute(
                    delete(ActivityRecord)
                    .where(ActivityRecord.sequence <= last.sequence)
                    .execution_options(synchronize_session=False)
                ).rowcount
                # anchors inside the purged prefix point at nothing any more
                session.execute(
                    delete(ChainAnchor)
                    .where(ChainAnchor.sequence <= last.sequence)
                    .execution_options(synchronize_session=False)
                )

                anchor = ChainAnchor(
                    sequence=last.sequence + 1,
                    previous_hash=last.content_hash,
                    purged_count=deleted,
                    cutoff=cutoff,
                    created_at=now,
                )
                anchor.signature = keyring.sign(anchor_payload(anchor))
                session.add(anchor)
    except SQLAlchemyError as exc:
        raise ChainStorageError(f"Activity retention purge failed: {exc}") from exc

    logger.info(f"Purged {deleted} activity entries older than {cutoff.isoformat()}; chain re-anchored at {last.sequence + 1}")
    return PurgeResult(deleted=deleted, cutoff=cutoff, anchor_sequence=last.sequence + 1)
