"""Tests for the Dexcom API client and payload normalisation."""

from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import pytest

from cgm_sync.dexcom.client import envelope_format, normalize_egvs_payload, parse_data_range
from cgm_sync.errors import ErrorKind, VendorAPIError, classify_vendor_status
from cgm_sync.sync.synchronizer import to_readings

from conftest import NOW, egv


class TestEnvelope:
    def test_records_and_egvs_normalise_identically(self):
        items = [egv(NOW), egv(NOW + timedelta(minutes=5), value=140, trend="singleUp")]
        assert normalize_egvs_payload({"records": items}) == normalize_egvs_payload({"egvs": items})

    def test_format_detection(self):
        assert envelope_format({"records": []}) == "records"
        assert envelope_format({"egvs": []}) == "egvs"
        assert envelope_format({}) == "unknown"

    def test_missing_envelope_is_empty(self):
        assert normalize_egvs_payload({"recordType": "egv"}) == []

    def test_malformed_entries_are_skipped(self):
        parsed = normalize_egvs_payload({"records": [egv(NOW), {"value": 100}]})
        assert len(parsed) == 1

    def test_null_trend_keeps_the_reading(self):
        item = {**egv(NOW), "trend": None}
        missing = {k: v for k, v in egv(NOW).items() if k != "trend"}
        parsed = normalize_egvs_payload({"records": [item, missing]})
        assert [rec.trend for rec in parsed] == [None, None]

        readings = to_readings("u1", parsed)
        assert [r.trend for r in readings] == ["notComputable", "notComputable"]

    def test_parse_data_range(self):
        data_range = parse_data_range(
            {"egvs": {"start": {"systemTime": "2024-01-01T00:00:00"}, "end": {"systemTime": "2024-01-10T00:00:00"}}}
        )
        assert data_range.end - data_range.start == timedelta(days=9)

    def test_parse_data_range_without_egvs(self):
        assert parse_data_range({"calibrations": {}}) is None


class TestStatusTable:
    def test_known_status(self):
        info = classify_vendor_status(401)
        assert info.user_message == "Authentication expired. Please reconnect."
        assert info.is_retryable is False

    @pytest.mark.parametrize("status", [429, 500, 502, 503, 504])
    def test_retryable(self, status):
        assert classify_vendor_status(status).is_retryable

    def test_unknown_status(self):
        info = classify_vendor_status(418)
        assert info.message == "HTTP 418 - Unknown error"
        assert info.user_message == "An unexpected error occurred"
        assert info.is_retryable is False


class TestDexcomClient:
    def test_authorization_url(self, dexcom_client):
        url = urlparse(dexcom_client.authorization_url("state-token"))
        query = parse_qs(url.query)
        assert url.path == "/v2/oauth2/login"
        assert query["client_id"] == ["client-id"]
        assert query["redirect_uri"] == ["http://test/dexcom/oauth/callback"]
        assert query["response_type"] == ["code"]
        assert query["scope"] == ["offline_access"]
        assert query["state"] == ["state-token"]

    @pytest.mark.asyncio
    async def test_exchange_code_posts_form(self, dexcom_client, fake_dexcom):
        grant = await dexcom_client.exchange_code("the-code")
        assert grant.access_token == "new-access"
        form = fake_dexcom.token_forms[-1]
        assert form["grant_type"] == "authorization_code"
        assert form["code"] == "the-code"
        assert form["client_secret"] == "client-secret"

    @pytest.mark.asyncio
    async def test_token_failure_is_classified(self, dexcom_client, fake_dexcom):
        fake_dexcom.token_status = 400
        with pytest.raises(VendorAPIError) as excinfo:
            await dexcom_client.refresh("old-refresh")
        assert excinfo.value.status == 400
        assert excinfo.value.kind is ErrorKind.FAILED_PRECONDITION
        assert excinfo.value.user_message == "Invalid request parameters"

    @pytest.mark.asyncio
    async def test_get_egvs_sends_local_wall_clock(self, dexcom_client, fake_dexcom):
        fake_dexcom.egvs_payload = {"egvs": [egv(NOW)]}
        records = await dexcom_client.get_egvs("tok", NOW - timedelta(hours=1), NOW)
        assert len(records) == 1
        assert fake_dexcom.egvs_params[-1] == {
            "startDate": "2024-06-01T11:00:00",
            "endDate": "2024-06-01T12:00:00",
        }

    @pytest.mark.asyncio
    async def test_data_range_failure_returns_none(self, dexcom_client, fake_dexcom):
        assert await dexcom_client.get_data_range("tok") is None

    @pytest.mark.asyncio
    async def test_retryable_status_is_internal(self, dexcom_client, fake_dexcom):
        fake_dexcom.egvs_status = 503
        with pytest.raises(VendorAPIError) as excinfo:
            await dexcom_client.get_egvs("tok", NOW - timedelta(hours=1), NOW)
        assert excinfo.value.kind is ErrorKind.INTERNAL
        assert excinfo.value.is_retryable
