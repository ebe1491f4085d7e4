"""Tests for the Docker Hub and GHCR registry clients."""

import pytest
import requests

from image_ref import RegistryKind
from registry_client import (
    DockerHubClient,
    GenericRegistryClient,
    GhcrClient,
    build_clients,
    strip_digest_prefix,
)
from settings import Settings
from version_utils import UNKNOWN

HUB_TAGS = "https://hub.docker.com/v2/repositories/library/redis/tags?page_size=100"
HUB_TAG = "https://hub.docker.com/v2/repositories/library/redis/tags/7.0.0"
HUB_TOKEN = "https://auth.docker.io/token?service=registry.docker.io&scope=repository:library/redis:pull"
HUB_MANIFEST = "https://registry-1.docker.io/v2/library/redis/manifests/7.0.0"

GHCR_TOKEN = "https://ghcr.io/token?service=ghcr.io&scope=repository:owner/app:pull"
GHCR_TAGS = "https://ghcr.io/v2/owner/app/tags/list"
GHCR_MANIFEST = "https://ghcr.io/v2/owner/app/manifests/1.2.0"


@pytest.fixture
def settings(tmp_path):
    return Settings(cache_dir=tmp_path / 'cache', request_timeout=5)


@pytest.fixture
def hub(settings, session):
    return DockerHubClient(settings, session)


@pytest.fixture
def ghcr(settings, session):
    return GhcrClient(settings, session)


def _hub_results(*names):
    return {'count': len(names), 'results': [{'name': n} for n in names]}


class TestDockerHubListVersions:
    def test_picks_highest_semantic_tag(self, hub, session, json_response):
        session.add(HUB_TAGS, json_response(_hub_results('latest', '6.0.0', '7.0.0', 'main', '6.2.0')))
        assert hub.list_versions('library', 'redis') == '7.0.0'
        assert session.calls[0]['timeout'] == 5

    def test_empty_namespace_means_library(self, hub, session, json_response):
        session.add(HUB_TAGS, json_response(_hub_results('7.0.0')))
        assert hub.list_versions('', 'redis') == '7.0.0'

    def test_network_failure_is_unknown(self, hub, session):
        session.add(HUB_TAGS, requests.ConnectionError("boom"))
        assert hub.list_versions('library', 'redis') == UNKNOWN

    def test_timeout_is_unknown(self, hub, session):
        session.add(HUB_TAGS, requests.Timeout("slow"))
        assert hub.list_versions('library', 'redis') == UNKNOWN

    def test_http_error_is_unknown(self, hub, session, json_response):
        session.add(HUB_TAGS, json_response({'message': 'not found'}, status=404))
        assert hub.list_versions('library', 'redis') == UNKNOWN

    def test_non_json_body_is_unknown(self, hub, session, text_response):
        session.add(HUB_TAGS, text_response('<html>rate limited</html>'))
        assert hub.list_versions('library', 'redis') == UNKNOWN

    def test_unexpected_payload_is_unknown(self, hub, session, json_response):
        session.add(HUB_TAGS, json_response({'tags': ['7.0.0']}))
        assert hub.list_versions('library', 'redis') == UNKNOWN

    def test_no_semantic_tags_is_unknown(self, hub, session, json_response):
        session.add(HUB_TAGS, json_response(_hub_results('latest', 'alpine', 'bookworm')))
        assert hub.list_versions('library', 'redis') == UNKNOWN


class TestDockerHubFetchDigest:
    def test_digest_from_tag_details(self, hub, session, json_response):
        session.add(HUB_TAG, json_response({'name': '7.0.0', 'images': [{'digest': 'sha256:abc123'}]}))
        assert hub.fetch_digest('library', 'redis', '7.0.0') == 'abc123'
        assert session.urls() == [HUB_TAG]

    def test_falls_back_to_registry_manifest(self, hub, session, json_response):
        session.add(HUB_TAG, json_response({'name': '7.0.0', 'images': []}))
        session.add(HUB_TOKEN, json_response({'token': 'anon'}))
        session.add(HUB_MANIFEST, json_response({'config': {'digest': 'sha256:def456'}}))

        assert hub.fetch_digest('library', 'redis', '7.0.0') == 'def456'

        manifest_call = session.calls[-1]
        assert manifest_call['url'] == HUB_MANIFEST
        assert manifest_call['headers']['Accept'] == 'application/vnd.docker.distribution.manifest.v2+json'
        assert manifest_call['headers']['Authorization'] == 'Bearer anon'

    def test_falls_back_when_tag_details_missing(self, hub, session, json_response):
        session.add(HUB_TAG, json_response({'message': 'not found'}, status=404))
        session.add(HUB_TOKEN, json_response({'token': 'anon'}))
        session.add(HUB_MANIFEST, json_response({'digest': 'sha256:0f0f'}))
        assert hub.fetch_digest('library', 'redis', '7.0.0') == '0f0f'

    def test_unknown_when_fallback_fails(self, hub, session, json_response):
        session.add(HUB_TAG, json_response({'images': []}))
        session.add(HUB_TOKEN, json_response({'token': 'anon'}))
        session.add(HUB_MANIFEST, json_response({'errors': []}, status=401))
        assert hub.fetch_digest('library', 'redis', '7.0.0') == UNKNOWN

    def test_unknown_when_manifest_has_no_digest(self, hub, session, json_response):
        session.add(HUB_TAG, json_response({'images': []}))
        session.add(HUB_TOKEN, json_response({'token': 'anon'}))
        session.add(HUB_MANIFEST, json_response({'schemaVersion': 2}))
        assert hub.fetch_digest('library', 'redis', '7.0.0') == UNKNOWN


class TestGhcr:
    def test_list_versions_with_anonymous_token(self, ghcr, session, json_response):
        session.add(GHCR_TOKEN, json_response({'token': 'anon'}))
        session.add(GHCR_TAGS, json_response({'name': 'owner/app',
                                              'tags': ['1.0.0', '1.2.0', 'latest', 'sha256-abc']}))

        assert ghcr.list_versions('owner', 'app') == '1.2.0'
        assert session.urls() == [GHCR_TOKEN, GHCR_TAGS]
        assert session.calls[1]['headers']['Authorization'] == 'Bearer anon'

    def test_token_reused_per_repository(self, ghcr, session, json_response):
        session.add(GHCR_TOKEN, json_response({'token': 'anon'}))
        session.add(GHCR_TAGS, json_response({'tags': ['1.0.0']}))
        ghcr.list_versions('owner', 'app')
        ghcr.list_versions('owner', 'app')
        assert session.urls().count(GHCR_TOKEN) == 1

    def test_caller_token_skips_exchange(self, tmp_path, session, json_response):
        client = GhcrClient(Settings(cache_dir=tmp_path, ghcr_token='mytoken'), session)
        session.add(GHCR_TAGS, json_response({'tags': ['2.0', '10.0']}))

        assert client.list_versions('owner', 'app') == '10.0'
        assert session.urls() == [GHCR_TAGS]
        assert session.calls[0]['headers']['Authorization'] == 'Bearer mytoken'

    def test_token_failure_is_unknown(self, ghcr, session, json_response):
        session.add(GHCR_TOKEN, json_response({'errors': [{'code': 'DENIED'}]}, status=403))
        assert ghcr.list_versions('owner', 'app') == UNKNOWN

    def test_null_tag_list_is_unknown(self, ghcr, session, json_response):
        session.add(GHCR_TOKEN, json_response({'token': 'anon'}))
        session.add(GHCR_TAGS, json_response({'name': 'owner/app', 'tags': None}))
        assert ghcr.list_versions('owner', 'app') == UNKNOWN

    def test_digest_from_config(self, ghcr, session, json_response):
        session.add(GHCR_TOKEN, json_response({'token': 'anon'}))
        session.add(GHCR_MANIFEST, json_response({'config': {'digest': 'sha256:cafe'}}))

        assert ghcr.fetch_digest('owner', 'app', '1.2.0') == 'cafe'
        accept = session.calls[-1]['headers']['Accept']
        assert 'application/vnd.docker.distribution.manifest.v2+json' in accept
        assert 'application/vnd.oci.image.manifest.v1+json' in accept

    def test_digest_field_fallback(self, ghcr, session, json_response):
        session.add(GHCR_TOKEN, json_response({'token': 'anon'}))
        session.add(GHCR_MANIFEST, json_response({'digest': 'sha256:beef'}))
        assert ghcr.fetch_digest('owner', 'app', '1.2.0') == 'beef'

    def test_digest_header_fallback(self, ghcr, session, json_response):
        session.add(GHCR_TOKEN, json_response({'token': 'anon'}))
        session.add(GHCR_MANIFEST, json_response({'manifests': []},
                                                 headers={'Docker-Content-Digest': 'sha256:f00d'}))
        assert ghcr.fetch_digest('owner', 'app', '1.2.0') == 'f00d'

    def test_non_json_manifest_is_unknown(self, ghcr, session, json_response, text_response):
        session.add(GHCR_TOKEN, json_response({'token': 'anon'}))
        session.add(GHCR_MANIFEST, text_response('oops'))
        assert ghcr.fetch_digest('owner', 'app', '1.2.0') == UNKNOWN


class TestGenericAndFactory:
    def test_generic_is_always_unknown_without_requests(self, settings, session):
        client = GenericRegistryClient(settings, session)
        assert client.list_versions('', 'app') == UNKNOWN
        assert client.fetch_digest('', 'app', '1.0') == UNKNOWN
        assert session.calls == []
        assert client.cacheable is False

    def test_build_clients_covers_every_kind(self, settings, session):
        clients = build_clients(settings, session)
        assert set(clients) == set(RegistryKind)
        assert isinstance(clients[RegistryKind.DOCKERHUB], DockerHubClient)
        assert isinstance(clients[RegistryKind.GHCR], GhcrClient)
        for kind in (RegistryKind.GCR, RegistryKind.QUAY, RegistryKind.GENERIC):
            assert isinstance(clients[kind], GenericRegistryClient)

    def test_strip_digest_prefix(self):
        assert strip_digest_prefix('sha256:abc') == 'abc'
        assert strip_digest_prefix('abc') == 'abc'
