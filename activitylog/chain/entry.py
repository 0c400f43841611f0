"""Activity log entry model and its canonical serialization.

An entry's *content* is every stored field except ``content_hash`` and
``signature``.  The canonical form of the content is JSON with sorted
keys and no whitespace; every key is always present (``None`` becomes
``null``) and timestamps are UTC with whole-second precision.  The same
``canonical_content`` function is used when writing and when verifying,
so a stored entry always reproduces its hash unless it was altered.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from activitylog.config import SYSTEM_ACTOR_ID

CONTENT_FIELDS = (
    "id",
    "sequence",
    "actor_id",
    "actor",
    "action",
    "resource",
    "resource_id",
    "target",
    "changes",
    "metadata",
    "created_at",
    "previous_hash",
)

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


# ---------------------------------------------------------------------------
# Value types
# ---------------------------------------------------------------------------


class UserRef(BaseModel):
    id: str
    name: Optional[str] = None
    email: Optional[str] = None


class ActorRef(BaseModel):
    """Who performed an action.

    ``kind`` is ``user`` for a signed-in user, ``system`` for background
    jobs, and ``impersonation`` when ``impersonator`` acts as the user
    identified by ``id``.
    """

    kind: Literal["user", "system", "impersonation"] = "user"
    id: str
    name: Optional[str] = None
    email: Optional[str] = None
    impersonator: Optional[UserRef] = None

    @classmethod
    def for_user(cls, user_id: str, name: str | None = None, email: str | None = None) -> "ActorRef":
        return cls(kind="user", id=user_id, name=name, email=email)

    @classmethod
    def system(cls, name: str = "System") -> "ActorRef":
        return cls(kind="system", id=SYSTEM_ACTOR_ID, name=name)

    @classmethod
    def impersonating(cls, actor: UserRef, effective: UserRef) -> "ActorRef":
        return cls(
            kind="impersonation",
            id=effective.id,
            name=effective.name,
            email=effective.email,
            impersonator=actor,
        )


class ActivityTarget(BaseModel):
    """The object an action was applied to."""

    type: str
    id: Optional[str] = None
    name: Optional[str] = None


class ActivityChange(BaseModel):
    """One field-level change: ``from``/``to`` for scalars, ``added``/``removed`` for sets."""

    model_config = ConfigDict(populate_by_name=True)

    field: str
    from_: Any = Field(default=None, alias="from")
    to: Any = None
    added: Optional[List[str]] = None
    removed: Optional[List[str]] = None

    def is_noop(self) -> bool:
        if self.added or self.removed:
            return False
        return self.from_ == self.to


class ActivityEntry(BaseModel):
    """One immutable, chained and signed record of a privileged action."""

    id: str
    sequence: int
    actor_id: Optional[str]
    actor: Optional[Dict[str, Any]]
    action: str
    resource: str
    resource_id: Optional[str]
    target: Optional[Dict[str, Any]]
    changes: Optional[List[Dict[str, Any]]]
    metadata: Optional[Dict[str, Any]]
    created_at: datetime
    previous_hash: str
    content_hash: str
    signature: str

    def content(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in CONTENT_FIELDS}

    def canonical(self) -> str:
        return canonical_content(self.content())


# ---------------------------------------------------------------------------
# Canonical serialization
# ---------------------------------------------------------------------------


def truncate_timestamp(value: datetime) -> datetime:
    """UTC, whole seconds; naive values are taken to be UTC already."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).replace(microsecond=0)


def format_timestamp(value: datetime) -> str:
    return truncate_timestamp(value).strftime(TIMESTAMP_FORMAT)


def to_json_value(value: Any) -> Any:
    """Normalize *value* to what a JSON column hands back after a round trip."""
    if value is None:
        return None
    return json.loads(json.dumps(value, default=str))


def canonical_content(content: Dict[str, Any]) -> str:
    """Serialize entry content deterministically for hashing and signing."""
    missing = [name for name in CONTENT_FIELDS if name not in content]
    if missing:
        raise ValueError(f"entry content is missing fields: {', '.join(missing)}")
    payload = {name: content[name] for name in CONTENT_FIELDS}
    payload["created_at"] = format_timestamp(payload["created_at"])
    return json.dumps(payload, sort_keys=True, separators=(",", ":"))


def build_content(
    *,
    entry_id: str,
    sequence: int,
    actor: ActorRef | None,
    action: str,
    resource: str,
    target: ActivityTarget,
    changes: List[ActivityChange] | None,
    metadata: Dict[str, Any] | None,
    created_at: datetime,
    previous_hash: str,
) -> Dict[str, Any]:
    """Assemble the content of a new entry in its stored (JSON-normalized) form."""
    return {
        "id": entry_id,
        "sequence": sequence,
        "actor_id": actor.id if actor is not None else None,
        "actor": to_json_value(actor.model_dump(mode="json")) if actor is not None else None,
        "action": action,
        "resource": resource,
        "resource_id": target.id,
        "target": to_json_value(target.model_dump(mode="json")),
        "changes": (
            to_json_value([c.model_dump(mode="json", by_alias=True, exclude_unset=True) for c in changes])
            if changes
            else None
        ),
        "metadata": to_json_value(metadata) if metadata else None,
        "created_at": truncate_timestamp(created_at),
        "previous_hash": previous_hash,
    }
