"""Chain verification engine.

Walks a contiguous range of the chain in sequence order and checks every
entry three ways:

- ``contentHash``: SHA-256 of the stored content equals the stored hash
  (localizes *which* entry was edited);
- ``chainLink``: the stored ``previous_hash`` equals the predecessor's
  content hash and no position is missing (localizes deletions,
  insertions and reordering);
- ``signature``: the HMAC verifies with an accepted key (separates
  "edited after the fact" from "never produced by this system").

``quick`` mode checks the most recent N entries; ``full`` mode checks the
chain from its start (or from a given position) in batches and can be
bounded by ``limit`` and resumed from ``next_start``.  A broken chain is
reported in the result, never raised.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Iterator, List, Literal, Optional, Tuple

from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from activitylog.chain.entry import canonical_content
from activitylog.chain.retention import anchor_payload
from activitylog.config import DEFAULT_BATCH_SIZE, DEFAULT_QUICK_LIMIT, GENESIS_HASH
from activitylog.crypto.signatures import KeyRing, compute_content_hash, default_keyring
from activitylog.errors import ChainStorageError
from activitylog.storage.models import ActivityRecord, ChainAnchor

logger = logging.getLogger(__name__)

VerifyMode = Literal["quick", "full"]


class FailedCheck(str, Enum):
    CONTENT_HASH = "contentHash"
    CHAIN_LINK = "chainLink"
    SIGNATURE = "signature"


class ChainFailure(BaseModel):
    """Where and how the chain broke."""

    entry_id: str
    position: int
    failed_check: FailedCheck
    failed_checks: List[FailedCheck]
    expected: Optional[str] = None
    actual: Optional[str] = None


class VerificationResult(BaseModel):
    mode: VerifyMode
    valid: bool
    entries_checked: int
    total_entries: int
    range_start: Optional[int] = None
    range_end: Optional[int] = None
    # first position not yet checked when ``limit`` cut a full scan short
    next_start: Optional[int] = None
    first_failure: Optional[ChainFailure] = None
    failures: List[ChainFailure] = []


class ChainVerifier:
    """Recomputes hashes, links and signatures over a range of the chain."""

    def __init__(
        self,
        session_factory: sessionmaker,
        keyring: KeyRing | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        quick_limit: int = DEFAULT_QUICK_LIMIT,
    ) -> None:
        self._session_factory = session_factory
        self.keyring = keyring or default_keyring()
        self.batch_size = max(1, batch_size)
        self.quick_limit = quick_limit

    # ---- public API ----

    def verify(
        self,
        mode: VerifyMode = "quick",
        limit: int | None = None,
        start: int | None = None,
        stop_at_first_failure: bool = True,
    ) -> VerificationResult:
        """Verify the chain; raises ``ChainStorageError`` only if storage fails."""
        if mode not in ("quick", "full"):
            raise ValueError(f"unknown verification mode: {mode!r}")
        if limit is not None and limit < 1:
            raise ValueError("limit must be positive")
        if mode == "quick" and start is not None:
            raise ValueError("start applies to full verification only")

        try:
            with self._session_factory() as session:
                result = self._verify(session, mode, limit, start, stop_at_first_failure)
        except SQLAlchemyError as exc:
            raise ChainStorageError(f"Chain verification could not read storage: {exc}") from exc

        if result.valid:
            logger.info(
                f"Activity chain verified ({mode}): {result.entries_checked} entries "
                f"[{result.range_start}..{result.range_end}]"
            )
        else:
            failure = result.first_failure
            logger.warning(
                f"Activity chain INVALID ({mode}): {failure.failed_check.value} failed "
                f"at position {failure.position} (entry {failure.entry_id})"
            )
        return result

    # ---- internals ----

    def _verify(
        self,
        session: Session,
        mode: VerifyMode,
        limit: int | None,
        start: int | None,
        stop_at_first_failure: bool,
    ) -> VerificationResult:
        total = session.scalar(select(func.count()).select_from(ActivityRecord)) or 0

        if mode == "quick":
            records: Iterator[ActivityRecord] = iter(self._recent(session, limit or self.quick_limit))
        else:
            records = self._ascending(session, start, limit)

        checked = 0
        failures: List[ChainFailure] = []
        accepted: Tuple[str, ...] = ()
        prev_sequence: int | None = None
        range_start: int | None = None
        range_end: int | None = None

        for record in records:
            if range_start is None:
                range_start = record.sequence
                link, prev_sequence = self._link_before(session, record.sequence)
                accepted = (link,)

            checked += 1
            range_end = record.sequence
            failure, recomputed = self._check(record, accepted, prev_sequence)
            if failure is not None:
                failures.append(failure)
                if stop_at_first_failure:
                    break

            # the successor may link to either the stored or the recomputed
            # hash, so one altered entry is reported once
            accepted = (record.content_hash, recomputed)
            prev_sequence = record.sequence

        next_start = None
        if mode == "full" and limit is not None and checked == limit and not (failures and stop_at_first_failure):
            more = session.scalar(
                select(func.count()).select_from(ActivityRecord).where(ActivityRecord.sequence > range_end)
            )
            if more:
                next_start = range_end + 1

        return VerificationResult(
            mode=mode,
            valid=not failures,
            entries_checked=checked,
            total_entries=total,
            range_start=range_start,
            range_end=range_end,
            next_start=next_start,
            first_failure=failures[0] if failures else None,
            failures=failures,
        )

    def _recent(self, session: Session, limit: int) -> List[ActivityRecord]:
        stmt = select(ActivityRecord).order_by(ActivityRecord.sequence.desc()).limit(limit)
        rows = list(session.scalars(stmt))
        rows.reverse()
        return rows

    def _ascending(self, session: Session, start: int | None, limit: int | None) -> Iterator[ActivityRecord]:
        """Yield entries in sequence order, one batch in memory at a time."""
        cursor = start
        remaining = limit
        while remaining is None or remaining > 0:
            size = self.batch_size if remaining is None else min(self.batch_size, remaining)
            stmt = select(ActivityRecord).order_by(ActivityRecord.sequence).limit(size)
            if cursor is not None:
                stmt = stmt.where(ActivityRecord.sequence >= cursor)
            batch = list(session.scalars(stmt))
            yield from batch
            session.expunge_all()
            if len(batch) < size:
                return
            cursor = batch[-1].sequence + 1
            if remaining is not None:
                remaining -= len(batch)

    def _link_before(self, session: Session, sequence: int) -> Tuple[str, Optional[int]]:
        """Hash (and position) the entry at *sequence* must link to."""
        prior = session.execute(
            select(ActivityRecord.content_hash, ActivityRecord.sequence)
            .where(ActivityRecord.sequence < sequence)
            .order_by(ActivityRecord.sequence.desc())
            .limit(1)
        ).first()
        if prior is not None:
            return prior.content_hash, prior.sequence

        anchor = session.scalars(select(ChainAnchor).where(ChainAnchor.sequence == sequence)).first()
        if anchor is not None:
            if self.keyring.verify(anchor_payload(anchor), anchor.signature):
                return anchor.previous_hash, None
            logger.warning(f"Ignoring chain anchor at position {sequence}: signature does not verify")
        return GENESIS_HASH, None

    def _check(
        self,
        record: ActivityRecord,
        accepted: Tuple[str, ...],
        prev_sequence: int | None,
    ) -> Tuple[Optional[ChainFailure], str]:
        failed: List[FailedCheck] = []
        expected = actual = None

        canonical = canonical_content(record.content())
        recomputed = compute_content_hash(canonical)
        if recomputed != record.content_hash:
            failed.append(FailedCheck.CONTENT_HASH)
            expected, actual = recomputed, record.content_hash

        gap = prev_sequence is not None and record.sequence != prev_sequence + 1
        if record.previous_hash not in accepted or gap:
            failed.append(FailedCheck.CHAIN_LINK)
            if expected is None:
                expected, actual = accepted[0], record.previous_hash

        if not self.keyring.verify(canonical, record.signature):
            failed.append(FailedCheck.SIGNATURE)

        if not failed:
            return None, recomputed
        failure = ChainFailure(
            entry_id=record.id,
            position=record.sequence,
            failed_check=failed[0],
            failed_checks=failed,
            expected=expected,
            actual=actual,
        )
        return failure, recomputed
