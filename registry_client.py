"""
Registry clients for Docker Hub and GitHub Container Registry.

Each client lists the tags of a repository to find the newest version and
fetches the digest of a given tag. Network and payload problems never
escape a client: they are logged and reported as the 'unknown' sentinel.
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

import jsonschema
import requests

from image_ref import DEFAULT_NAMESPACE, DEFAULT_REGISTRY, RegistryKind
from settings import Settings
from version_utils import UNKNOWN, pick_latest

logger = logging.getLogger(__name__)


# Constants
DOCKER_HUB_API = "https://hub.docker.com/v2/repositories"
DOCKER_AUTH_URL = "https://auth.docker.io/token"
GHCR_HOST = "ghcr.io"
TAGS_PAGE_SIZE = 100
DOCKER_MANIFEST_V2 = "application/vnd.docker.distribution.manifest.v2+json"
OCI_MANIFEST_V1 = "application/vnd.oci.image.manifest.v1+json"
DIGEST_PREFIX = "sha256:"

# Payload schemas
DOCKERHUB_TAGS_SCHEMA = {
    "type": "object",
    "properties": {
        "results": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {"name": {"type": "string"}},
            }
        }
    },
    "required": ["results"]
}

DOCKERHUB_TAG_SCHEMA = {
    "type": "object",
    "properties": {
        "images": {
            "type": "array",
            "items": {"type": "object"}
        }
    }
}

GHCR_TAGS_SCHEMA = {
    "type": "object",
    "properties": {
        "tags": {
            "type": ["array", "null"],
            "items": {"type": "string"}
        }
    },
    "required": ["tags"]
}

TOKEN_SCHEMA = {
    "type": "object",
    "properties": {"token": {"type": "string", "minLength": 1}},
    "required": ["token"]
}

MANIFEST_SCHEMA = {"type": "object"}


class RegistryError(Exception):
    """Base class for failed registry lookups."""


class RegistryUnreachable(RegistryError):
    """Network failure, timeout or HTTP error status."""


class InvalidResponsePayload(RegistryError):
    """Body was not JSON or did not have the expected shape."""


def strip_digest_prefix(digest: str) -> str:
    if digest.startswith(DIGEST_PREFIX):
        return digest[len(DIGEST_PREFIX):]
    return digest


def _repo_path(namespace: str, repository: str) -> str:
    return f"{namespace}/{repository}" if namespace else repository


def _digest_from_manifest(manifest: Dict[str, Any], response: requests.Response) -> Optional[str]:
    """config.digest, then digest, then the Docker-Content-Digest header."""
    config = manifest.get('config')
    if isinstance(config, dict) and config.get('digest'):
        return config['digest']
    if manifest.get('digest'):
        return manifest['digest']
    return response.headers.get('Docker-Content-Digest')


class RegistryClient(ABC):
    """Common HTTP plumbing for registry protocols.

    Subclasses implement _list_tags and _fetch_digest and may raise
    RegistryError from them; the public methods turn that into UNKNOWN.
    """

    # Whether lookups through this client are worth caching
    cacheable = True

    def __init__(self, settings: Settings, session: Optional[requests.Session] = None):
        self.settings = settings
        self.timeout = settings.request_timeout
        self._session = session if session is not None else requests.Session()

    def _get_json(self, url: str, schema: Optional[Dict[str, Any]] = None,
                  headers: Optional[Dict[str, str]] = None) -> Tuple[Any, requests.Response]:
        """GET url and return (decoded JSON, response).

        Raises:
            RegistryUnreachable: request failed or returned an error status
            InvalidResponsePayload: body is not JSON or fails schema
        """
        try:
            response = self._session.get(url, headers=headers or {}, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise RegistryUnreachable(f"GET {url} failed: {e}") from e

        try:
            data = response.json()
        except ValueError as e:
            raise InvalidResponsePayload(f"GET {url} returned a non-JSON body") from e

        if schema is not None:
            try:
                jsonschema.validate(data, schema)
            except jsonschema.ValidationError as e:
                raise InvalidResponsePayload(f"GET {url} returned unexpected payload: {e.message}") from e

        return data, response

    @abstractmethod
    def _list_tags(self, namespace: str, repository: str) -> List[str]:
        ...

    @abstractmethod
    def _fetch_digest(self, namespace: str, repository: str, tag: str) -> Optional[str]:
        ...

    def list_versions(self, namespace: str, repository: str) -> str:
        """
        Find the newest semantic version tag of a repository.

        Args:
            namespace: Image namespace
            repository: Repository name

        Returns:
            Latest version tag, or 'unknown'
        """
        path = _repo_path(namespace, repository)
        try:
            tags = self._list_tags(namespace, repository)
        except RegistryError as e:
            logger.warning(f"Could not list tags for {path}: {e}")
            return UNKNOWN

        latest = pick_latest(tags)
        if latest == UNKNOWN:
            logger.warning(f"No version-like tags found for {path} ({len(tags)} tags checked)")
        else:
            logger.debug(f"Latest version of {path} is {latest} ({len(tags)} tags checked)")
        return latest

    def fetch_digest(self, namespace: str, repository: str, tag: str) -> str:
        """
        Get the digest for image:tag, without the 'sha256:' prefix.

        Args:
            namespace: Image namespace
            repository: Repository name
            tag: Tag name

        Returns:
            Hex digest, or 'unknown'
        """
        path = _repo_path(namespace, repository)
        try:
            digest = self._fetch_digest(namespace, repository, tag)
        except RegistryError as e:
            logger.warning(f"Could not fetch digest for {path}:{tag}: {e}")
            return UNKNOWN

        if not digest:
            logger.warning(f"No digest found for {path}:{tag}")
            return UNKNOWN
        return strip_digest_prefix(digest)


class DockerHubClient(RegistryClient):
    """Docker Hub: tag listing via the Hub API, digests via Hub or the registry."""

    def _get_docker_token(self, namespace: str, repository: str) -> str:
        """Anonymous pull token for registry-1.docker.io."""
        auth_url = (f"{DOCKER_AUTH_URL}?service=registry.docker.io"
                    f"&scope=repository:{namespace}/{repository}:pull")
        data, _ = self._get_json(auth_url, TOKEN_SCHEMA)
        return data['token']

    def _list_tags(self, namespace: str, repository: str) -> List[str]:
        namespace = namespace or DEFAULT_NAMESPACE
        url = f"{DOCKER_HUB_API}/{namespace}/{repository}/tags?page_size={TAGS_PAGE_SIZE}"
        data, _ = self._get_json(url, DOCKERHUB_TAGS_SCHEMA)
        return [result['name'] for result in data['results'] if result.get('name')]

    def _fetch_digest(self, namespace: str, repository: str, tag: str) -> Optional[str]:
        namespace = namespace or DEFAULT_NAMESPACE

        # Hub tag details carry the digest of the first image
        url = f"{DOCKER_HUB_API}/{namespace}/{repository}/tags/{tag}"
        try:
            data, _ = self._get_json(url, DOCKERHUB_TAG_SCHEMA)
            images = data.get('images') or []
            if images and images[0].get('digest'):
                return images[0]['digest']
            logger.debug(f"Hub API has no digest for {namespace}/{repository}:{tag}, asking registry")
        except RegistryError as e:
            logger.debug(f"Hub tag lookup failed for {namespace}/{repository}:{tag}: {e}")

        # Fall back to the manifest on the pull registry
        token = self._get_docker_token(namespace, repository)
        manifest_url = f"https://{DEFAULT_REGISTRY}/v2/{namespace}/{repository}/manifests/{tag}"
        headers = {
            'Accept': DOCKER_MANIFEST_V2,
            'Authorization': f'Bearer {token}',
        }
        manifest, response = self._get_json(manifest_url, MANIFEST_SCHEMA, headers)
        return _digest_from_manifest(manifest, response)


class GhcrClient(RegistryClient):
    """GitHub Container Registry over the OCI distribution API."""

    def __init__(self, settings: Settings, session: Optional[requests.Session] = None):
        super().__init__(settings, session)
        self._tokens: Dict[str, str] = {}
        self._tokens_lock = threading.Lock()

    def _get_token(self, namespace: str, repository: str) -> str:
        """Caller-supplied token, or an anonymous pull-scoped one."""
        if self.settings.ghcr_token:
            return self.settings.ghcr_token

        path = _repo_path(namespace, repository)
        with self._tokens_lock:
            token = self._tokens.get(path)
        if token:
            return token

        auth_url = f"https://{GHCR_HOST}/token?service={GHCR_HOST}&scope=repository:{path}:pull"
        data, _ = self._get_json(auth_url, TOKEN_SCHEMA)
        with self._tokens_lock:
            self._tokens[path] = data['token']
        return data['token']

    def _list_tags(self, namespace: str, repository: str) -> List[str]:
        path = _repo_path(namespace, repository)
        token = self._get_token(namespace, repository)
        url = f"https://{GHCR_HOST}/v2/{path}/tags/list"
        data, _ = self._get_json(url, GHCR_TAGS_SCHEMA, {'Authorization': f'Bearer {token}'})
        return data['tags'] or []

    def _fetch_digest(self, namespace: str, repository: str, tag: str) -> Optional[str]:
        path = _repo_path(namespace, repository)
        token = self._get_token(namespace, repository)
        url = f"https://{GHCR_HOST}/v2/{path}/manifests/{tag}"
        headers = {
            'Accept': f"{DOCKER_MANIFEST_V2}, {OCI_MANIFEST_V1}",
            'Authorization': f'Bearer {token}',
        }
        manifest, response = self._get_json(url, MANIFEST_SCHEMA, headers)
        return _digest_from_manifest(manifest, response)


class GenericRegistryClient(RegistryClient):
    """Registries without a supported protocol. Always 'unknown'."""

    cacheable = False

    def _list_tags(self, namespace: str, repository: str) -> List[str]:
        return []

    def _fetch_digest(self, namespace: str, repository: str, tag: str) -> Optional[str]:
        return None

    def list_versions(self, namespace: str, repository: str) -> str:
        logger.info(f"Registry for {_repo_path(namespace, repository)} is not supported, skipping")
        return UNKNOWN

    def fetch_digest(self, namespace: str, repository: str, tag: str) -> str:
        return UNKNOWN


def build_clients(settings: Settings,
                  session: Optional[requests.Session] = None) -> Dict[RegistryKind, RegistryClient]:
    """One client per registry kind, sharing a single HTTP session."""
    if session is None:
        session = requests.Session()
    generic = GenericRegistryClient(settings, session)
    return {
        RegistryKind.DOCKERHUB: DockerHubClient(settings, session),
        RegistryKind.GHCR: GhcrClient(settings, session),
        RegistryKind.GCR: generic,
        RegistryKind.QUAY: generic,
        RegistryKind.GENERIC: generic,
    }
