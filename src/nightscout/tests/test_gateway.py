"""Tests for the Nightscout HTTP gateway — URLs, auth headers, response classification."""

from __future__ import annotations

import hashlib

import httpx
import pytest

from src.nightscout.config_loader import SyncConfig
from src.nightscout.gateway import (
    AUTH_TEST_PATH,
    DEVICE_STATUS_PATH,
    ENTRIES_PATH,
    TREATMENTS_PATH,
    AuthError,
    DecodeError,
    GatewayResponse,
    NightscoutGateway,
    NotConfiguredError,
    ServerError,
    TransportError,
)
from src.nightscout.settings import NightscoutSettings, SettingsStore
from src.nightscout.tests.conftest import API_SECRET, SITE_URL, FakeNightscout

DUPLICATE_BODY = {"status": 500, "message": "E11000 duplicate key", "description": {"code": 66}}


def _gateway(settings: NightscoutSettings, site: FakeNightscout, config: SyncConfig) -> NightscoutGateway:
    client = httpx.AsyncClient(transport=httpx.MockTransport(site))
    return NightscoutGateway(SettingsStore(settings=settings), client, config)


class TestBuildUrl:
    def test_path_appended_to_site(self, gateway: NightscoutGateway) -> None:
        assert str(gateway.build_url(ENTRIES_PATH)) == f"{SITE_URL}/api/v1/entries"

    def test_site_sub_path_kept(self, site: FakeNightscout, sync_config: SyncConfig) -> None:
        gw = _gateway(
            NightscoutSettings(url="https://example.com/ns/", api_secret="s"), site, sync_config
        )
        assert gw.build_url(TREATMENTS_PATH).path == "/ns/api/v1/treatments"

    def test_port_override(self, site: FakeNightscout, sync_config: SyncConfig) -> None:
        gw = _gateway(
            NightscoutSettings(url="http://192.168.1.20:1337", port=8080, api_secret="s"),
            site,
            sync_config,
        )
        assert gw.build_url(ENTRIES_PATH).port == 8080

    def test_token_and_params_in_query(self, site: FakeNightscout, sync_config: SyncConfig) -> None:
        gw = _gateway(NightscoutSettings(url=SITE_URL, token="ro-abc123"), site, sync_config)
        url = gw.build_url(TREATMENTS_PATH, {"count": 50})
        assert url.params["count"] == "50"
        assert url.params["token"] == "ro-abc123"

    def test_missing_url_raises(self, site: FakeNightscout, sync_config: SyncConfig) -> None:
        gw = _gateway(NightscoutSettings(api_secret="s"), site, sync_config)
        with pytest.raises(NotConfiguredError):
            gw.build_url(ENTRIES_PATH)


class TestUpload:
    @pytest.mark.asyncio
    async def test_post_sends_json_and_hashed_secret(
        self, gateway: NightscoutGateway, site: FakeNightscout
    ) -> None:
        response = await gateway.upload(DEVICE_STATUS_PATH, {"uploader": {"battery": 80}})

        assert response.status_code == 200
        assert not response.duplicate
        request = site.sent("POST", DEVICE_STATUS_PATH)[0]
        assert request.headers["api-secret"] == hashlib.sha1(API_SECRET.encode()).hexdigest()
        assert request.headers["content-type"] == "application/json"
        assert request.headers["accept"] == "application/json"
        assert site.bodies("POST", DEVICE_STATUS_PATH) == [{"uploader": {"battery": 80}}]

    @pytest.mark.asyncio
    async def test_duplicate_is_success_when_allowed(
        self, gateway: NightscoutGateway, site: FakeNightscout
    ) -> None:
        site.respond("POST", ENTRIES_PATH, httpx.Response(500, json=DUPLICATE_BODY))
        response = await gateway.upload(ENTRIES_PATH, [{}], duplicate_is_success=True)
        assert response.duplicate is True

    @pytest.mark.asyncio
    async def test_duplicate_is_error_when_not_allowed(
        self, gateway: NightscoutGateway, site: FakeNightscout
    ) -> None:
        site.respond("PUT", TREATMENTS_PATH, httpx.Response(500, json=DUPLICATE_BODY))
        with pytest.raises(ServerError) as exc_info:
            await gateway.upload(TREATMENTS_PATH, {"_id": "x"}, method="PUT")
        assert exc_info.value.status_code == 500

    @pytest.mark.asyncio
    async def test_other_500_is_server_error(
        self, gateway: NightscoutGateway, site: FakeNightscout
    ) -> None:
        site.respond(
            "POST", ENTRIES_PATH, httpx.Response(500, json={"description": {"code": 11}})
        )
        with pytest.raises(ServerError):
            await gateway.upload(ENTRIES_PATH, [{}], duplicate_is_success=True)

    @pytest.mark.asyncio
    async def test_connect_error_is_transport_error(
        self, gateway: NightscoutGateway, site: FakeNightscout
    ) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        site.respond("POST", ENTRIES_PATH, refuse)
        with pytest.raises(TransportError):
            await gateway.upload(ENTRIES_PATH, [{}])

    @pytest.mark.asyncio
    async def test_no_credentials_raises(
        self, site: FakeNightscout, sync_config: SyncConfig
    ) -> None:
        gw = _gateway(NightscoutSettings(url=SITE_URL), site, sync_config)
        with pytest.raises(NotConfiguredError):
            await gw.upload(ENTRIES_PATH, [])
        assert site.requests == []


class TestFetch:
    @pytest.mark.asyncio
    async def test_fetch_returns_json(self, gateway: NightscoutGateway, site: FakeNightscout) -> None:
        site.add_treatment(eventType="Carbs", created_at="2026-02-23T11:00:00.000Z", carbs=20)
        response = await gateway.fetch(TREATMENTS_PATH, {"count": 50})
        assert len(response.json()) == 1
        assert site.sent("GET", TREATMENTS_PATH)[0].url.params["count"] == "50"

    @pytest.mark.asyncio
    async def test_fetch_non_2xx_raises(self, gateway: NightscoutGateway, site: FakeNightscout) -> None:
        site.respond("GET", TREATMENTS_PATH, httpx.Response(503, text="maintenance"))
        with pytest.raises(ServerError) as exc_info:
            await gateway.fetch(TREATMENTS_PATH)
        assert exc_info.value.body == "maintenance"

    def test_malformed_json_raises_decode_error(self) -> None:
        with pytest.raises(DecodeError):
            GatewayResponse(200, b"<html>").json()


class TestVerifyCredentials:
    @pytest.mark.asyncio
    async def test_valid_secret(self, gateway: NightscoutGateway, site: FakeNightscout) -> None:
        await gateway.verify_credentials()
        assert len(site.sent("GET", AUTH_TEST_PATH)) == 1

    @pytest.mark.asyncio
    async def test_rejected_secret_raises_auth_error(
        self, site: FakeNightscout, sync_config: SyncConfig
    ) -> None:
        gw = _gateway(NightscoutSettings(url=SITE_URL, api_secret="wrong"), site, sync_config)
        with pytest.raises(AuthError, match="Unauthorized"):
            await gw.verify_credentials()

    @pytest.mark.asyncio
    async def test_token_sent_as_api_secret_without_secret(
        self, site: FakeNightscout, sync_config: SyncConfig
    ) -> None:
        site.respond("GET", AUTH_TEST_PATH, httpx.Response(200, json={}))
        gw = _gateway(NightscoutSettings(url=SITE_URL, token="ro-abc123"), site, sync_config)
        await gw.verify_credentials()
        request = site.sent("GET", AUTH_TEST_PATH)[0]
        assert request.headers["api-secret"] == "ro-abc123"
        assert "token" not in request.url.params

    @pytest.mark.asyncio
    async def test_token_not_sent_as_header_on_uploads(
        self, site: FakeNightscout, sync_config: SyncConfig
    ) -> None:
        gw = _gateway(NightscoutSettings(url=SITE_URL, token="ro-abc123"), site, sync_config)
        await gw.upload(ENTRIES_PATH, [])
        request = site.sent("POST", ENTRIES_PATH)[0]
        assert "api-secret" not in request.headers
        assert request.url.params["token"] == "ro-abc123"
