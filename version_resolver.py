"""Cache-fronted latest-version and digest lookups for image references."""

import logging
from typing import Dict, Optional

from image_ref import ImageReference, RegistryKind
from registry_cache import CacheStore, cache_key
from registry_client import RegistryClient, build_clients
from settings import Settings

logger = logging.getLogger(__name__)


class VersionResolver:
    def __init__(self, settings: Settings, cache: Optional[CacheStore] = None,
                 clients: Optional[Dict[RegistryKind, RegistryClient]] = None):
        self.settings = settings
        self.cache = cache if cache is not None else CacheStore(settings)
        self.clients = clients if clients is not None else build_clients(settings)

    def _client_for(self, ref: ImageReference) -> RegistryClient:
        kind = ref.kind
        return self.clients.get(kind) or self.clients[RegistryKind.GENERIC]

    def resolve_latest(self, ref: ImageReference) -> str:
        """Newest semantic version tag for ref, or 'unknown'."""
        client = self._client_for(ref)
        if not client.cacheable:
            return client.list_versions(ref.namespace, ref.repository)

        key = cache_key(ref.kind.value, ref.namespace, ref.repository)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        latest = client.list_versions(ref.namespace, ref.repository)
        self.cache.put(key, latest)
        return latest

    def resolve_digest(self, ref: ImageReference, version: str) -> str:
        """Digest (hex, no prefix) of ref:version, or 'unknown'."""
        client = self._client_for(ref)
        if not client.cacheable:
            return client.fetch_digest(ref.namespace, ref.repository, version)

        key = cache_key(ref.kind.value, ref.namespace, ref.repository, version)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        digest = client.fetch_digest(ref.namespace, ref.repository, version)
        self.cache.put(key, digest)
        return digest
