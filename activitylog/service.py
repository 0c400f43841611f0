"""Activity service: the entry point business code calls.

``log_*`` methods are fire-and-forget.  They run *after* the business
operation has committed and never raise: a failed append is logged as a
warning and the caller carries on, so auditing degrades instead of
blocking user-facing actions.  Verification, queries and maintenance
are exposed alongside.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from activitylog.chain.append import ChainWriter
from activitylog.chain.entry import ActivityChange, ActivityEntry, ActivityTarget, ActorRef
from activitylog.chain.rekey import ResignStats, resign_entries
from activitylog.chain.retention import PurgeResult, purge_older_than
from activitylog.chain.verify import ChainVerifier, VerificationResult, VerifyMode
from activitylog.config import Settings, get_settings
from activitylog.crypto.signatures import KeyRing, default_keyring
from activitylog.ratelimit import RateLimiter
from activitylog.storage.db import Database
from activitylog.storage.query import ActivityFilters, ActivityPage, ActivityQuery

logger = logging.getLogger(__name__)


class ActivityService:
    """Writes, verifies and reads the activity chain."""

    def __init__(
        self,
        database: Database,
        settings: Settings | None = None,
        keyring: KeyRing | None = None,
        writer: ChainWriter | None = None,
    ) -> None:
        self.database = database
        self.settings = settings or get_settings()
        self.keyring = keyring or default_keyring()
        session_factory = database.SessionLocal

        self.writer = writer or ChainWriter(
            session_factory,
            keyring=self.keyring,
            max_retries=self.settings.APPEND_MAX_RETRIES,
        )
        self.verifier = ChainVerifier(
            session_factory,
            keyring=self.keyring,
            batch_size=self.settings.VERIFY_BATCH_SIZE,
            quick_limit=self.settings.VERIFY_QUICK_LIMIT,
        )
        self.query = ActivityQuery(session_factory)
        self._login_failures = RateLimiter(self.settings.LOGIN_FAILURE_MAX_PER_MINUTE)

    # ------------------------------------------------------------------
    # Logging (never raises)
    # ------------------------------------------------------------------

    def log_action(
        self,
        actor: ActorRef | None,
        action: str,
        resource: str,
        target: ActivityTarget,
        changes: List[ActivityChange] | None = None,
        metadata: Dict[str, Any] | None = None,
    ) -> Optional[ActivityEntry]:
        """Append an entry; returns it, or None if the append failed."""
        try:
            return self.writer.append(actor, action, resource, target, changes=changes, metadata=metadata)
        except Exception:
            label = f"{getattr(target, 'type', None)}:{getattr(target, 'id', None)}"
            logger.warning(
                f"Failed to write activity log entry ({resource}.{action}, target={label})",
                exc_info=True,
            )
            return None

    def log_create(
        self,
        actor: ActorRef | None,
        resource: str,
        target: ActivityTarget,
        metadata: Dict[str, Any] | None = None,
    ) -> Optional[ActivityEntry]:
        return self.log_action(actor, "create", resource, target, metadata=metadata)

    def log_update(
        self,
        actor: ActorRef | None,
        resource: str,
        target: ActivityTarget,
        changes: List[ActivityChange],
        metadata: Dict[str, Any] | None = None,
    ) -> Optional[ActivityEntry]:
        """Log field changes, ignoring ones where nothing actually changed.

        Nothing is written when every change is a no-op.
        """
        effective = [c for c in changes if not c.is_noop()]
        if not effective:
            return None
        return self.log_action(actor, "update", resource, target, changes=effective, metadata=metadata)

    def log_delete(
        self,
        actor: ActorRef | None,
        resource: str,
        target: ActivityTarget,
        metadata: Dict[str, Any] | None = None,
    ) -> Optional[ActivityEntry]:
        return self.log_action(actor, "delete", resource, target, metadata=metadata)

    def log_login_failure(self, identifier: str, reason: str, ip_address: str | None = None) -> bool:
        """Log a failed login; returns False when throttled for this IP."""
        if ip_address and not self._login_failures.allow(ip_address):
            logger.info(f"Login failure logging throttled for {ip_address}")
            return False
        metadata: Dict[str, Any] = {"identifier": identifier, "reason": reason}
        if ip_address:
            metadata["ip_address"] = ip_address
        entry = self.log_action(
            None,
            "login_failed",
            "auth",
            ActivityTarget(type="auth", name=identifier),
            metadata=metadata,
        )
        return entry is not None

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify_chain(
        self,
        mode: VerifyMode = "quick",
        limit: int | None = None,
        start: int | None = None,
        stop_at_first_failure: bool = True,
    ) -> VerificationResult:
        return self.verifier.verify(mode=mode, limit=limit, start=start, stop_at_first_failure=stop_at_first_failure)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_activities(
        self,
        filters: ActivityFilters | None = None,
        limit: int = 50,
        before: int | None = None,
    ) -> ActivityPage:
        return self.query.find_page(filters, limit=limit, before=before)

    def get_activity(self, entry_id: str) -> Optional[ActivityEntry]:
        return self.query.find_by_id(entry_id)

    def get_filters(self) -> Dict[str, List[str]]:
        return {
            "actions": self.query.distinct_actions(),
            "resources": self.query.distinct_resources(),
        }

    def get_summary(self, days: int = 7) -> List[Dict[str, object]]:
        return self.query.summary(days)

    def get_recent_by_user(self, user_id: str, limit: int = 10) -> List[ActivityEntry]:
        return self.query.recent_by_user(user_id, limit)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def purge_expired(self, days: int | None = None) -> PurgeResult:
        if days is None:
            days = self.settings.ACTIVITY_RETENTION_DAYS
        return purge_older_than(self.database.SessionLocal, days, keyring=self.keyring)

    def resign(self, dry_run: bool = False) -> ResignStats:
        return resign_entries(
            self.database.SessionLocal,
            keyring=self.keyring,
            dry_run=dry_run,
            batch_size=self.settings.VERIFY_BATCH_SIZE,
        )
