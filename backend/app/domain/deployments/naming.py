"""
Deterministic names derived from a (requester, challenge) pair.

All functions here are pure so that cluster object names and routes stay
stable across process restarts.
"""

import hashlib
import re

from app.core.exceptions import ValidationError

MAX_IDENTIFIER_LENGTH = 128
DNS_LABEL_MAX = 63
KEY_LENGTH = 20

_IDENTIFIER_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
_INVALID_LABEL_CHARS = re.compile(r"[^a-z0-9-]+")
_DASH_RUNS = re.compile(r"-{2,}")


def validate_identifier(field_name: str, value: object) -> str:
    """Return the identifier unchanged or raise ValidationError."""
    if not isinstance(value, str) or not value:
        raise ValidationError(f"{field_name} is required")
    if len(value) > MAX_IDENTIFIER_LENGTH:
        raise ValidationError(f"{field_name} must be at most {MAX_IDENTIFIER_LENGTH} characters")
    if not _IDENTIFIER_RE.match(value):
        raise ValidationError(
            f"{field_name} may only contain letters, digits, '.', '_' and '-'"
        )
    return value


def deployment_key(requester_id: str, challenge_id: str) -> str:
    """Deployment key = truncated sha256 of the (requester, challenge) pair."""
    digest = hashlib.sha256(f"{requester_id}\0{challenge_id}".encode()).hexdigest()
    return digest[:KEY_LENGTH]


def object_name(key: str) -> str:
    """Name shared by the workload, service and route of one deployment."""
    return f"chal-{key}"


def subdomain_for(requester_id: str, challenge_id: str) -> str:
    """
    Subdomain label for a deployment, e.g. ("team1", "c42") -> "c42-team1".

    Labels longer than 63 characters are truncated and suffixed with part of
    the deployment key to stay unique.
    """
    label = f"{challenge_id}-{requester_id}".lower()
    label = _INVALID_LABEL_CHARS.sub("-", label)
    label = _DASH_RUNS.sub("-", label).strip("-")
    if len(label) > DNS_LABEL_MAX or not label:
        suffix = deployment_key(requester_id, challenge_id)[:8]
        label = f"{label[:DNS_LABEL_MAX - len(suffix) - 1].rstrip('-')}-{suffix}".lstrip("-")
    return label
