"""Salted hashing, HMAC signing and canonical JSON.

Hashes are one-way pseudonyms: they let compliance records point at a user
without storing the user id, email or IP address itself.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any

from compliance.config import settings


def _salted_sha256(value: str, salt: str) -> str:
    return hashlib.sha256(f"{value}{salt}".encode()).hexdigest()


def hash_user_id(user_id: object, salt: str | None = None) -> str:
    """16-hex-char pseudonym of a user id for audit and certificate rows."""
    return _salted_sha256(str(user_id), settings.security.audit_salt if salt is None else salt)[:16]


def hash_ip_address(ip_address: str | None) -> str | None:
    if not ip_address:
        return None
    return _salted_sha256(ip_address, settings.security.audit_salt)[:16]


def normalize_email(email: str) -> str:
    return email.strip().lower()


def hash_email(email: str) -> str:
    """Full-length lookup hash of a normalized email address."""
    return _salted_sha256(normalize_email(email), settings.security.audit_salt)


def anonymized_user_hash(user_id: object) -> str:
    """16-hex-char key analytics rows are stored under in the warehouse.

    Must match the hashing done by the warehouse loader, which uses the
    anonymization salt rather than the audit salt.
    """
    return _salted_sha256(str(user_id), settings.security.anonymization_salt)[:16]


def canonical_json(data: Any) -> str:
    """Deterministic JSON: sorted keys, no whitespace."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def sign(payload: str, secret: str | None = None) -> str:
    """HMAC-SHA256 hex digest of `payload`."""
    key = settings.security.certificate_signing_secret if secret is None else secret
    return hmac.new(key.encode(), payload.encode(), hashlib.sha256).hexdigest()


def signatures_match(expected: str, actual: str) -> bool:
    return hmac.compare_digest(expected.encode(), actual.encode())
