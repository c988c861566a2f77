"""
Cache key templates, invalidation patterns and TTLs per logical domain.

Keys are namespaced by domain (``export:``, ``locks:``) here; the environment
and service prefix is added by KeyValueCache before keys reach the backend.
"""

from __future__ import annotations

import hashlib
import re
from typing import Dict, Final

EXPORT_ARTIFACT: Final[str] = "export:artifact:{user_id}:{project_id}:{fingerprint}"
EXPORT_RESULT: Final[str] = "export:result:{export_id}"
EXPORT_STATUS: Final[str] = "export:status:{export_id}"
EXPORT_INFLIGHT: Final[str] = "export:inflight:{fingerprint}"
OPERATION_LOCK: Final[str] = "locks:{operation}:{resource_id}"

PROJECT_ARTIFACTS_PATTERN: Final[str] = "export:artifact:{user_id}:{project_id}:*"
USER_ARTIFACTS_PATTERN: Final[str] = "export:artifact:{user_id}:*"
ALL_RESULTS_PATTERN: Final[str] = "export:result:*"

CACHE_TTL: Dict[str, int] = {
    "EXPORT_STATUS": 3600,
    "EXPORT_RESULT": 7200,
    "OPERATION_LOCK": 300,
}

DEFAULT_TTL: Final[int] = 300
MAX_KEY_LENGTH: Final[int] = 250
ID_DIGEST_LENGTH: Final[int] = 32

_VALID_KEY = re.compile(r"^[A-Za-z0-9:_\-*.]+$")


def validate_key(key: str) -> bool:
    """Return True if ``key`` is safe to send to the backend."""
    if not key or len(key) > MAX_KEY_LENGTH:
        return False
    return bool(_VALID_KEY.match(key))


def key_segment(identifier: str) -> str:
    """
    Encode a caller-supplied id for use inside a key.

    Ids may contain characters that keys reject or that act as glob
    wildcards, so they are replaced by a truncated SHA-256 digest.
    """
    return hashlib.sha256(identifier.encode("utf-8")).hexdigest()[:ID_DIGEST_LENGTH]


def artifact_key(user_id: str, project_id: str, fingerprint: str) -> str:
    return EXPORT_ARTIFACT.format(
        user_id=key_segment(user_id), project_id=key_segment(project_id), fingerprint=fingerprint
    )


def result_key(export_id: str) -> str:
    return EXPORT_RESULT.format(export_id=export_id)


def status_key(export_id: str) -> str:
    return EXPORT_STATUS.format(export_id=export_id)


def inflight_key(fingerprint: str) -> str:
    return EXPORT_INFLIGHT.format(fingerprint=fingerprint)


def lock_key(operation: str, resource_id: str) -> str:
    return OPERATION_LOCK.format(operation=operation, resource_id=resource_id)


def project_artifacts_pattern(user_id: str, project_id: str) -> str:
    return PROJECT_ARTIFACTS_PATTERN.format(user_id=key_segment(user_id), project_id=key_segment(project_id))


def user_artifacts_pattern(user_id: str) -> str:
    return USER_ARTIFACTS_PATTERN.format(user_id=key_segment(user_id))
