"""Activity log database models."""

from sqlalchemy import JSON, BigInteger, Column, DateTime, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import declarative_base

from activitylog.chain.entry import ActivityEntry, truncate_timestamp

Base = declarative_base()


class ActivityRecord(Base):
    """
    Append-only activity log with hash-chain integrity.

    Each row stores the SHA-256 of its canonical content (``content_hash``),
    the content hash of its predecessor (``previous_hash``) and an
    HMAC-SHA256 of its content (``signature``).  ``previous_hash`` is unique:
    two entries can never extend the same predecessor.
    """

    __tablename__ = "activities"
    __table_args__ = (
        UniqueConstraint("previous_hash", name="uq_activities_previous_hash"),
        Index("ix_activities_actor_created", "actor_id", "created_at"),
    )

    # Identity and chain position
    id = Column(String(32), primary_key=True)
    sequence = Column(BigInteger().with_variant(Integer, "sqlite"), nullable=False, unique=True, index=True)

    # Who / what
    actor_id = Column(String(255), index=True)
    actor = Column(JSON)
    action = Column(String(100), nullable=False, index=True)
    resource = Column(String(100), nullable=False, index=True)
    resource_id = Column(String(255))
    target = Column(JSON)
    changes = Column(JSON)
    # "metadata" is reserved on declarative classes
    meta = Column("metadata", JSON)

    created_at = Column(DateTime(timezone=True), nullable=False, index=True)

    # Cryptographic integrity
    previous_hash = Column(String(64), nullable=False)
    content_hash = Column(String(64), nullable=False)
    signature = Column(String(64), nullable=False)

    def content(self) -> dict:
        return {
            "id": self.id,
            "sequence": self.sequence,
            "actor_id": self.actor_id,
            "actor": self.actor,
            "action": self.action,
            "resource": self.resource,
            "resource_id": self.resource_id,
            "target": self.target,
            "changes": self.changes,
            "metadata": self.meta,
            "created_at": self.created_at,
            "previous_hash": self.previous_hash,
        }

    def to_entry(self) -> ActivityEntry:
        content = self.content()
        # SQLite hands back naive datetimes; stored values are always UTC
        content["created_at"] = truncate_timestamp(self.created_at)
        return ActivityEntry(
            content_hash=self.content_hash,
            signature=self.signature,
            **content,
        )


class ChainHead(Base):
    """Single sentinel row pointing at the chain tail; locked by every append."""

    __tablename__ = "activity_chain_head"

    id = Column(Integer, primary_key=True)
    tail_hash = Column(String(64), nullable=False)
    tail_sequence = Column(BigInteger().with_variant(Integer, "sqlite"), nullable=False)


class ChainAnchor(Base):
    """
    Re-anchoring marker written by the retention purge.

    States that the chain now starts at ``sequence`` and that the entry at
    that position legitimately links to ``previous_hash`` (the content hash
    of the last purged entry).
    """

    __tablename__ = "activity_chain_anchors"

    id = Column(Integer, primary_key=True, autoincrement=True)
    sequence = Column(BigInteger().with_variant(Integer, "sqlite"), nullable=False, unique=True)
    previous_hash = Column(String(64), nullable=False)
    purged_count = Column(Integer, nullable=False)
    cutoff = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    signature = Column(String(64), nullable=False)
