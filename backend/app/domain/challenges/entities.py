"""
Challenge Deployer - Challenge Domain Entities
Challenge definitions as stored in the configuration repository
"""

import hashlib
import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from app.core.exceptions import InvalidDefinitionError

# Kubernetes resource quantity, e.g. "250m", "0.5", "128Mi", "1G"
_QUANTITY_RE = re.compile(r"^[0-9]+(\.[0-9]+)?(m|k|M|G|T|P|E|Ki|Mi|Gi|Ti|Pi|Ei)?$")
_ENV_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_.-]*$")
_RESOURCE_NAMES = ("cpu", "memory")


def split_image_tag(image: str) -> tuple[str, Optional[str]]:
    """Split "registry/name:tag" into ("registry/name", "tag")."""
    last_slash = image.rfind("/")
    last_colon = image.rfind(":")
    if last_colon > last_slash:
        return image[:last_colon], image[last_colon + 1:]
    return image, None


@dataclass(frozen=True)
class ResourceRequirements:
    """CPU/memory requests and limits as Kubernetes quantity strings."""
    requests: Dict[str, str] = field(default_factory=dict)
    limits: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Dict[str, str]]:
        return {"requests": dict(self.requests), "limits": dict(self.limits)}

    @classmethod
    def from_dict(cls, challenge_id: str, data: Optional[Mapping[str, Any]]) -> "ResourceRequirements":
        if data is None:
            return cls()
        if not isinstance(data, Mapping):
            raise InvalidDefinitionError(challenge_id, "resources must be an object")

        parsed: Dict[str, Dict[str, str]] = {}
        for section in ("requests", "limits"):
            values = data.get(section) or {}
            if not isinstance(values, Mapping):
                raise InvalidDefinitionError(challenge_id, f"resources.{section} must be an object")
            quantities = {}
            for name, quantity in values.items():
                if name not in _RESOURCE_NAMES:
                    raise InvalidDefinitionError(challenge_id, f"unsupported resource {name!r}")
                quantity = str(quantity)
                if not _QUANTITY_RE.match(quantity):
                    raise InvalidDefinitionError(
                        challenge_id, f"invalid quantity {quantity!r} for {section}.{name}"
                    )
                quantities[name] = quantity
            parsed[section] = quantities
        return cls(requests=parsed["requests"], limits=parsed["limits"])


@dataclass(frozen=True)
class ChallengeDefinition:
    """
    Deployable challenge definition.

    Owned by the configuration repository; read-only everywhere else.
    """
    challenge_id: str
    image: str
    port: int = 80
    resources: ResourceRequirements = field(default_factory=ResourceRequirements)
    environment: Dict[str, str] = field(default_factory=dict)
    image_pull_secret: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "challenge_id": self.challenge_id,
            "image": self.image,
            "port": self.port,
            "resources": self.resources.to_dict(),
            "environment": dict(self.environment),
            "image_pull_secret": self.image_pull_secret,
        }

    def fingerprint(self) -> str:
        """Stable hash of the definition, used to detect changed workloads."""
        canonical = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode()).hexdigest()[:16]

    @classmethod
    def from_dict(cls, challenge_id: str, data: Mapping[str, Any]) -> "ChallengeDefinition":
        """
        Build a definition from a stored document.

        Args:
            challenge_id: Identifier the document was stored under
            data: Decoded document

        Raises:
            InvalidDefinitionError: If the document is malformed
        """
        if not isinstance(data, Mapping):
            raise InvalidDefinitionError(challenge_id, "definition must be an object")

        image = data.get("image")
        if not isinstance(image, str) or not image.strip():
            raise InvalidDefinitionError(challenge_id, "image is required")
        image = image.strip()
        tag = data.get("tag")
        if tag:
            name, _ = split_image_tag(image)
            image = f"{name}:{tag}"

        try:
            port = int(data.get("port", 80))
        except (TypeError, ValueError):
            raise InvalidDefinitionError(challenge_id, "port must be an integer")
        if not 1 <= port <= 65535:
            raise InvalidDefinitionError(challenge_id, f"port {port} out of range")

        environment = data.get("environment") or {}
        if not isinstance(environment, Mapping):
            raise InvalidDefinitionError(challenge_id, "environment must be an object")
        for name in environment:
            if not _ENV_NAME_RE.match(str(name)):
                raise InvalidDefinitionError(challenge_id, f"invalid environment variable {name!r}")

        secret = data.get("image_pull_secret") or None

        return cls(
            challenge_id=challenge_id,
            image=image,
            port=port,
            resources=ResourceRequirements.from_dict(challenge_id, data.get("resources")),
            environment={str(k): str(v) for k, v in environment.items()},
            image_pull_secret=secret,
        )
