"""
Deterministic cache keys for map fetches.

Key layout: ``<version>:<city digest>:<criteria digest>``. The version tag
must be bumped whenever query semantics change; the city digest lets a
whole city be invalidated by prefix.
"""

import hashlib
import json
import re
from typing import Iterable, Optional

from mapsync.config import Settings, get_settings
from mapsync.sources.base import FetchCriteria

_UNSAFE = re.compile(r"[^a-zA-Z0-9:-]")

CITY_DIGEST_LEN = 8


def _sha256(raw: str) -> str:
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def sanitize_key(raw: str) -> str:
    """Strip anything outside ``[A-Za-z0-9:-]``."""
    return _UNSAFE.sub("", raw)


def canonical_json(criteria: FetchCriteria) -> str:
    """Stable serialization of normalized criteria."""
    return json.dumps(criteria.normalized().to_dict(), sort_keys=True, separators=(",", ":"))


def city_digest(city_slug: Optional[str]) -> str:
    return _sha256(city_slug or "all")[:CITY_DIGEST_LEN]


def priority_digest(ids: Iterable[str]) -> str:
    """Hash of the sorted, non-empty ids, or ``none``."""
    valid = sorted({i for i in ids if i})
    if not valid:
        return "none"
    return _sha256(",".join(valid))


class Fingerprinter:
    """Turns fetch criteria into cache keys."""

    def __init__(self, version: Optional[str] = None, settings: Optional[Settings] = None):
        settings = settings or get_settings()
        self.version = sanitize_key(version or settings.cache_key_version)

    def fingerprint(self, criteria: FetchCriteria) -> str:
        normalized = criteria.normalized()
        digest = _sha256(canonical_json(normalized))
        return sanitize_key(f"{self.version}:{city_digest(normalized.city_slug)}:{digest}")

    def city_prefix(self, city_slug: Optional[str]) -> str:
        """Prefix shared by every key for ``city_slug``."""
        return f"{self.version}:{city_digest(city_slug)}:"

    def version_prefix(self) -> str:
        return f"{self.version}:"


def fingerprint(criteria: FetchCriteria, version: Optional[str] = None) -> str:
    """Shortcut using the configured key version."""
    return Fingerprinter(version=version).fingerprint(criteria)
