"""Image reference parsing and registry detection."""

from dataclasses import dataclass
from enum import Enum
from typing import Tuple


DEFAULT_REGISTRY = "registry-1.docker.io"
DEFAULT_NAMESPACE = "library"
DEFAULT_TAG = "latest"

DOCKER_HUB_HOSTS = frozenset({
    "docker.io",
    "index.docker.io",
    "registry-1.docker.io",
    "registry.hub.docker.com",
    "hub.docker.com",
})


class RegistryKind(Enum):
    DOCKERHUB = "dockerhub"
    GHCR = "ghcr"
    GCR = "gcr"
    QUAY = "quay"
    GENERIC = "generic"


@dataclass(frozen=True)
class ImageReference:
    """Registry, namespace and repository of an image (no tag)."""
    registry: str
    namespace: str
    repository: str

    @property
    def path(self) -> str:
        if self.namespace:
            return f"{self.namespace}/{self.repository}"
        return self.repository

    @property
    def kind(self) -> RegistryKind:
        return detect_registry_kind(self.registry)


def _is_host(segment: str) -> bool:
    # Registry indicators: contains '.', is localhost, or has port ':'
    return '.' in segment or ':' in segment or segment == 'localhost'


def parse_image_reference(image: str) -> ImageReference:
    """
    Parse image reference into registry, namespace, and repository.

    Args:
        image: Image reference without tag (e.g., 'redis', 'myorg/app',
               'ghcr.io/owner/app', 'registry.example.com/app')

    Returns:
        ImageReference. Never raises; a malformed reference simply fails
        later registry lookups.
    """
    parts = image.split('/')

    if len(parts) >= 3:
        return ImageReference(
            registry=parts[0],
            namespace='/'.join(parts[1:-1]),
            repository=parts[-1],
        )

    if len(parts) == 2:
        first, repo = parts
        if _is_host(first):
            return ImageReference(registry=first, namespace='', repository=repo)
        return ImageReference(registry=DEFAULT_REGISTRY, namespace=first, repository=repo)

    return ImageReference(
        registry=DEFAULT_REGISTRY,
        namespace=DEFAULT_NAMESPACE,
        repository=image,
    )


def split_image_tag(value: str) -> Tuple[str, str]:
    """Split 'name[:version][@sha256:hex]' into (name, version).

    Only a colon after the last slash is a tag separator, so
    'localhost:5000/app' has no tag. A missing tag means 'latest'.
    """
    at_pos = value.find('@')
    if at_pos != -1:
        value = value[:at_pos]

    last_slash = value.rfind('/')
    last_colon = value.rfind(':')
    if last_colon > last_slash:
        return value[:last_colon], value[last_colon + 1:]
    return value, DEFAULT_TAG


def detect_registry_kind(registry: str) -> RegistryKind:
    """Map a registry host to a known protocol; unknown hosts are GENERIC."""
    host = registry.lower()
    if host in DOCKER_HUB_HOSTS:
        return RegistryKind.DOCKERHUB
    if host == 'ghcr.io':
        return RegistryKind.GHCR
    if host == 'gcr.io' or host.endswith('.gcr.io'):
        return RegistryKind.GCR
    if host == 'quay.io':
        return RegistryKind.QUAY
    return RegistryKind.GENERIC
