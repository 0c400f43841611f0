"""Content hashing and HMAC-SHA256 signatures with key rotation.

The content hash (plain SHA-256, no secret) links entries into a chain.
The signature is HMAC(key, content) and proves an entry was written by
this system.  New signatures always use the primary key; verification
accepts the primary key or any legacy key, so the primary can be rotated
without invalidating historical entries.

The module-level key ring is built from the environment at import time
and a missing primary key is fatal.
"""

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from typing import List, Tuple

from activitylog.config import Settings, get_settings
from activitylog.errors import ConfigurationError


def compute_content_hash(content: str) -> str:
    """Return the SHA-256 hex digest of *content*."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def _hmac_hex(key: str, content: str) -> str:
    return hmac.new(key.encode("utf-8"), content.encode("utf-8"), hashlib.sha256).hexdigest()


def _matches(key: str, content: str, signature: str) -> bool:
    if not isinstance(signature, str):
        return False
    return hmac.compare_digest(_hmac_hex(key, content).encode(), signature.lower().encode("utf-8"))


def parse_legacy_keys(raw: str) -> Tuple[str, ...]:
    """Split a comma-separated key list, trimming and dropping empty items."""
    return tuple(k.strip() for k in raw.split(",") if k.strip())


@dataclass(frozen=True)
class KeyRing:
    """One signing key plus the older keys still accepted for verification."""

    primary: str
    legacy: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not self.primary:
            raise ConfigurationError(
                "ACTIVITY_SIGNING_KEY is required to sign activity log entries. "
                "Generate one with: openssl rand -hex 32"
            )

    @classmethod
    def from_settings(cls, settings: Settings) -> "KeyRing":
        return cls(
            primary=settings.ACTIVITY_SIGNING_KEY.strip(),
            legacy=parse_legacy_keys(settings.ACTIVITY_SIGNING_KEYS_LEGACY),
        )

    @property
    def verification_keys(self) -> List[str]:
        """Keys tried by :meth:`verify`, primary first."""
        return [self.primary, *self.legacy]

    def sign(self, content: str) -> str:
        """HMAC-SHA256 hex signature of *content* with the primary key."""
        return _hmac_hex(self.primary, content)

    def verify(self, content: str, signature: str) -> bool:
        """True if any accepted key produced *signature* for *content*."""
        for key in self.verification_keys:
            if _matches(key, content, signature):
                return True
        return False

    def is_signed_with_current_key(self, content: str, signature: str) -> bool:
        """True only if the primary key produced *signature*."""
        return _matches(self.primary, content, signature)

    def rotated(self, new_primary: str) -> "KeyRing":
        """Return a ring where *new_primary* signs and the old primary is legacy."""
        legacy = (self.primary, *[k for k in self.legacy if k != new_primary])
        return KeyRing(primary=new_primary, legacy=legacy)


_keyring = KeyRing.from_settings(get_settings())


def default_keyring() -> KeyRing:
    return _keyring


def sign(content: str) -> str:
    """Produce an HMAC-SHA256 hex signature for *content* with the primary key."""
    return _keyring.sign(content)


def verify(content: str, signature: str) -> bool:
    """Verify *signature* for *content* against the primary and legacy keys."""
    return _keyring.verify(content, signature)


def is_signed_with_current_key(content: str, signature: str) -> bool:
    return _keyring.is_signed_with_current_key(content, signature)
