"""Tests for the document retrieval API client and status codes."""

import json
from datetime import date

import httpx
import pytest

from scheduler_platform.adr.api_client import AdrApiClient, AdrApiResult, parse_response
from scheduler_platform.adr.status import AdrStatus, parse_status
from scheduler_platform.config import AdrConfig, Settings
from scheduler_platform.core.retry import RetryConfig
from scheduler_platform.models.adr_job import AdrRequestType


def _client(adr_config, handler, max_attempts: int = 1) -> AdrApiClient:
    return AdrApiClient(
        adr_config,
        transport=httpx.MockTransport(handler),
        retry=RetryConfig(
            max_attempts=max_attempts,
            backoff_base=0,
            jitter=False,
            retryable_exceptions=(httpx.TransportError,),
        ),
    )


class TestAdrStatus:
    """Tests for status code classification."""

    def test_parse_known_and_unknown(self):
        """Should map known ids and return None otherwise."""
        assert parse_status(11) is AdrStatus.COMPLETE
        assert parse_status(99) is None
        assert parse_status(None) is None

    def test_error_and_final_sets(self):
        """Should classify error and final statuses."""
        assert AdrStatus.INVALID_CREDENTIAL_ID.is_error is True
        assert AdrStatus.COMPLETE.is_final is True
        assert AdrStatus.COMPLETE.is_error is False
        assert AdrStatus.NEEDS_HUMAN_REVIEW.is_error and AdrStatus.NEEDS_HUMAN_REVIEW.is_final
        # Retried while the window is open
        assert AdrStatus.NO_DOCUMENTS_FOUND.is_final is False


class TestParseResponse:
    """Tests for parse_response."""

    def test_object_body(self):
        """Should read status fields case-insensitively."""
        result = parse_response(
            AdrApiResult(success=True),
            '{"statusId": 9, "statusDescription": "Needs Human Review", "indexId": 77}',
        )

        assert result.status_id == 9
        assert result.index_id == 77
        assert result.is_error is True
        assert result.is_final is True

    def test_list_body(self):
        """Should take the first element of a list body."""
        result = parse_response(AdrApiResult(success=True), '[{"StatusId": 1, "IndexId": 5}]')

        assert result.status is AdrStatus.INSERTED
        assert result.index_id == 5
        assert result.is_error is False

    def test_bare_index_id(self):
        """Should accept a bare integer as the IndexId."""
        result = parse_response(AdrApiResult(success=True), "123")

        assert result.success is True
        assert result.index_id == 123

    def test_empty_body(self):
        """Should treat an empty body as a successful submission."""
        result = parse_response(AdrApiResult(success=True), "   ")

        assert result.success is True
        assert result.status_description == "ADR API returned no content."

    @pytest.mark.parametrize("body", ["<html>oops</html>", "[]", '"text"'])
    def test_unusable_bodies(self, body):
        """Should mark unusable bodies as errors."""
        result = parse_response(AdrApiResult(success=True), body)

        assert result.success is False
        assert result.is_error is True
        assert result.error_message


class TestAdrApiClient:
    """Tests for AdrApiClient."""

    async def test_send_request_payload(self, adr_config):
        """Should post the ingest payload with the API key header."""
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"StatusId": 1, "StatusDescription": "Inserted", "IndexId": 501})

        client = _client(adr_config, handler)
        result = await client.send_request(
            AdrRequestType.DOWNLOAD_INVOICE,
            credential_id=77,
            job_id=5,
            account_id=1001,
            interface_account_id="IF-1",
            start_date=date(2026, 1, 31),
            end_date=date(2026, 2, 4),
            is_last_attempt=True,
        )

        assert result.success is True
        assert result.index_id == 501
        assert result.http_status_code == 200

        [request] = seen
        assert str(request.url) == "http://adr.test/api/IngestAdrRequest"
        assert request.headers["X-API-Key"] == "test-key"
        payload = json.loads(request.content)
        assert payload["ADRRequestTypeId"] == 2
        assert payload["CredentialId"] == 77
        assert payload["StartDate"] == "2026-01-31"
        assert payload["EndDate"] == "2026-02-04"
        assert payload["IsLastAttempt"] is True
        assert json.loads(result.request_payload) == payload

    async def test_check_status(self, adr_config):
        """Should post IndexId and JobId to the status endpoint."""
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"StatusId": 11, "IsFinal": True})

        result = await _client(adr_config, handler).check_status(job_id=5, index_id=501)

        assert result.status is AdrStatus.COMPLETE
        assert result.is_final is True
        assert seen[0].url.path == "/api/GetRequestStatus"
        assert json.loads(seen[0].content) == {"IndexId": 501, "JobId": 5}

    async def test_http_error_keeps_index_id(self, adr_config):
        """Should return an unsuccessful result and keep a reported IndexId."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(409, json={"IndexId": 42, "Message": "duplicate"})

        result = await _client(adr_config, handler).check_status(job_id=5, index_id=None)

        assert result.success is False
        assert result.is_error is True
        assert result.http_status_code == 409
        assert result.index_id == 42
        assert "HTTP 409" in result.error_message

    async def test_transport_errors_retried(self, adr_config):
        """Should retry transport errors before giving up."""
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(1)
            if len(attempts) < 3:
                raise httpx.ConnectError("refused")
            return httpx.Response(200, json={"StatusId": 12})

        result = await _client(adr_config, handler, max_attempts=3).check_status(job_id=5, index_id=1)

        assert len(attempts) == 3
        assert result.success is True
        assert result.status is AdrStatus.LOGIN_ATTEMPT_SUCCEEDED

    async def test_transport_errors_exhausted(self, adr_config):
        """Should return an error result once retries run out."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused")

        result = await _client(adr_config, handler, max_attempts=2).check_status(job_id=5, index_id=1)

        assert result.success is False
        assert "ConnectError" in result.error_message

    async def test_missing_base_url(self):
        """Should fail without sending when no base URL is configured."""
        config = AdrConfig({}, Settings(adr_api_base_url=""))

        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        result = await _client(config, handler).check_status(job_id=5, index_id=1)

        assert result.success is False
        assert result.error_message == "ADR API base URL is not configured"
