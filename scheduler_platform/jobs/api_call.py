"""API call executor."""

import json
import time
from typing import Any

import httpx

from scheduler_platform.core.errors import TimeoutExceeded
from scheduler_platform.core.logging import get_logger
from scheduler_platform.jobs.base import ExecutionOutcome, parse_config, truncate
from scheduler_platform.jobs.parameters import substitute_placeholders
from scheduler_platform.schemas.jobs import ApiCallJobConfig, AuthType

logger = get_logger(__name__)

# Response body kept in the error message of a failed call
MAX_ERROR_BODY_CHARS = 4000


def build_request_kwargs(job: ApiCallJobConfig) -> dict[str, Any]:
    """Translate a job configuration into ``httpx.AsyncClient.request`` kwargs."""
    headers = dict(job.headers)
    kwargs: dict[str, Any] = {"method": job.method.upper(), "url": job.url}

    match job.auth_type:
        case AuthType.BEARER:
            headers["Authorization"] = f"Bearer {job.auth_token or ''}"
        case AuthType.BASIC:
            kwargs["auth"] = httpx.BasicAuth(job.username or "", job.password or "")
        case AuthType.API_KEY:
            headers[job.api_key_header] = job.api_key or ""
        case AuthType.NONE:
            pass

    if job.request_body is not None and kwargs["method"] not in ("GET", "HEAD"):
        body = job.request_body
        if isinstance(body, str):
            kwargs["content"] = body.encode()
        else:
            kwargs["content"] = json.dumps(body).encode()
        headers.setdefault("Content-Type", job.content_type)

    kwargs["headers"] = headers
    return kwargs


async def execute_api_call(
    config: dict[str, Any],
    parameters: dict[str, str],
    timeout: float,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ExecutionOutcome:
    """Send the configured request. Success is any 2xx status."""
    job = parse_config(ApiCallJobConfig, substitute_placeholders(config, parameters))
    kwargs = build_request_kwargs(job)
    started = time.monotonic()

    try:
        async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
            response = await client.request(**kwargs)
    except httpx.TimeoutException:
        raise TimeoutExceeded(timeout) from None
    except httpx.HTTPError as e:
        logger.bind(url=job.url, error=str(e)).warning("api_call_transport_error")
        return ExecutionOutcome(
            success=False,
            error_message=f"{type(e).__name__}: {e}",
            duration_seconds=time.monotonic() - started,
        )

    duration = time.monotonic() - started
    body = response.text

    if response.is_success:
        return ExecutionOutcome(
            success=True,
            output=truncate(f"HTTP {response.status_code}\n{body}"),
            duration_seconds=duration,
        )

    return ExecutionOutcome(
        success=False,
        output=truncate(body),
        error_message=truncate(
            f"HTTP {response.status_code} {response.reason_phrase}: {body}",
            MAX_ERROR_BODY_CHARS,
        ),
        duration_seconds=duration,
    )
