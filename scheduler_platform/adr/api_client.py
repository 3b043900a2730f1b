"""
Client for the document retrieval (ADR) API.

Every call returns an ``AdrApiResult`` carrying the raw request and
response payloads so the caller can persist them as an AdrJobExecution.
Transport errors are retried with backoff; HTTP errors are returned as
unsuccessful results.
"""

import json
from dataclasses import dataclass
from datetime import date
from typing import Any

import httpx

from scheduler_platform.adr.status import AdrStatus, parse_status
from scheduler_platform.config import AdrConfig
from scheduler_platform.core.logging import get_logger
from scheduler_platform.core.retry import RetryConfig, retry_with_backoff
from scheduler_platform.models.adr_job import AdrRequestType

logger = get_logger(__name__)

INGEST_ENDPOINT = "IngestAdrRequest"
STATUS_ENDPOINT = "GetRequestStatus"
MAX_ERROR_BODY_CHARS = 500


@dataclass
class AdrApiResult:
    """Outcome of one API round-trip."""

    success: bool
    status_id: int | None = None
    status_description: str | None = None
    index_id: int | None = None
    is_error: bool = False
    is_final: bool = False
    http_status_code: int | None = None
    request_payload: str | None = None
    response_payload: str | None = None
    error_message: str | None = None

    @property
    def status(self) -> AdrStatus | None:
        return parse_status(self.status_id)


def _truncate(text: str | None, limit: int = MAX_ERROR_BODY_CHARS) -> str:
    if not text:
        return ""
    return text if len(text) <= limit else text[:limit] + "..."


def _get_field(data: dict[str, Any], name: str) -> Any:
    """Case-insensitive field lookup."""
    if name in data:
        return data[name]
    lowered = name.lower()
    for key, value in data.items():
        if key.lower() == lowered:
            return value
    return None


def parse_response(result: AdrApiResult, body: str) -> AdrApiResult:
    """
    Fill a result from a 2xx response body.

    The API answers with an object, a list whose first element is the
    object, or occasionally a bare IndexId.
    """
    text = body.strip()
    if not text:
        result.status_description = "ADR API returned no content."
        return result

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        result.success = False
        result.is_error = True
        result.error_message = f"Unparseable ADR API response: {e.msg}. Raw: {_truncate(text)}"
        return result

    if isinstance(data, list):
        if not data or not isinstance(data[0], dict):
            result.success = False
            result.is_error = True
            result.error_message = "ADR API returned an empty JSON array."
            return result
        data = data[0]

    if isinstance(data, int) and not isinstance(data, bool):
        result.index_id = data
        result.status_description = "Request submitted successfully"
        return result

    if not isinstance(data, dict):
        result.success = False
        result.is_error = True
        result.error_message = f"ADR API returned unexpected content: {_truncate(text)}"
        return result

    result.status_id = _get_field(data, "StatusId")
    result.status_description = _get_field(data, "StatusDescription") or _get_field(data, "Status")
    result.index_id = _get_field(data, "IndexId")
    status = result.status
    result.is_error = bool(_get_field(data, "IsError")) or (status is not None and status.is_error)
    result.is_final = bool(_get_field(data, "IsFinal")) or (status is not None and status.is_final)
    return result


class AdrApiClient:
    """httpx client for ingest and status-check requests."""

    def __init__(
        self,
        config: AdrConfig,
        transport: httpx.AsyncBaseTransport | None = None,
        retry: RetryConfig | None = None,
    ) -> None:
        self.config = config
        self.transport = transport
        self.retry = retry or RetryConfig(
            max_attempts=3,
            backoff_base=2.0,
            backoff_max=30.0,
            retryable_exceptions=(httpx.TransportError,),
        )

    def _url(self, endpoint: str) -> str:
        base = self.config.api_base_url
        if base and not base.endswith("/"):
            base += "/"
        return f"{base}{endpoint}"

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.config.api_key:
            headers["X-API-Key"] = self.config.api_key
        return headers

    async def _post(self, endpoint: str, payload: dict[str, Any], job_id: int | None) -> AdrApiResult:
        result = AdrApiResult(success=True, request_payload=json.dumps(payload))

        if not self.config.api_base_url:
            result.success = False
            result.is_error = True
            result.error_message = "ADR API base URL is not configured"
            return result

        async def send() -> httpx.Response:
            async with httpx.AsyncClient(
                timeout=float(self.config.request_timeout_seconds),
                transport=self.transport,
            ) as client:
                return await client.post(self._url(endpoint), json=payload, headers=self._headers())

        try:
            response = await retry_with_backoff(send, self.retry, operation_name=f"adr_{endpoint}")
        except httpx.HTTPError as e:
            logger.bind(job_id=job_id, endpoint=endpoint, error=str(e)).error("adr_api_request_failed")
            result.success = False
            result.is_error = True
            result.error_message = f"{type(e).__name__}: {e}"
            return result

        result.http_status_code = response.status_code
        result.response_payload = response.text

        if not response.is_success:
            result.success = False
            result.is_error = True
            result.error_message = (
                f"ADR API returned HTTP {response.status_code}: {_truncate(response.text)}"
            )
            # 4xx bodies may still carry the IndexId of a created request
            try:
                body = response.json()
            except ValueError:
                body = None
            if isinstance(body, dict):
                result.index_id = _get_field(body, "IndexId")
            logger.bind(
                job_id=job_id,
                endpoint=endpoint,
                status_code=response.status_code,
            ).warning("adr_api_http_error")
            return result

        return parse_response(result, response.text)

    async def send_request(
        self,
        request_type: AdrRequestType,
        credential_id: int,
        job_id: int,
        account_id: int,
        interface_account_id: str | None = None,
        start_date: date | None = None,
        end_date: date | None = None,
        is_last_attempt: bool = False,
    ) -> AdrApiResult:
        """POST an ingest request (login attempt or invoice download)."""
        payload = {
            "ADRRequestTypeId": int(request_type),
            "CredentialId": credential_id,
            "StartDate": start_date.strftime("%Y-%m-%d") if start_date else "",
            "EndDate": end_date.strftime("%Y-%m-%d") if end_date else "",
            "SourceApplicationName": self.config.source_application_name,
            "RecipientEmail": self.config.recipient_email,
            "JobId": job_id,
            "AccountId": account_id,
            "InterfaceAccountId": interface_account_id,
            "IsLastAttempt": is_last_attempt,
        }
        result = await self._post(INGEST_ENDPOINT, payload, job_id)
        logger.bind(
            job_id=job_id,
            request_type=request_type.name,
            status_id=result.status_id,
            success=result.success,
        ).debug("adr_request_sent")
        return result

    async def check_status(self, job_id: int, index_id: int | None) -> AdrApiResult:
        """POST a status check for a previously ingested request."""
        payload = {"IndexId": index_id, "JobId": job_id}
        return await self._post(STATUS_ENDPOINT, payload, job_id)
