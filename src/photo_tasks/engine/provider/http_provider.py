"""HTTP generation provider adapter built on httpx."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from photo_tasks.engine.errors import ProviderError, ProviderErrorKind
from photo_tasks.engine.provider.base import ProviderOutput, ProviderRequest

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT_SECONDS = 10.0
DEFAULT_USER_AGENT = "photo-tasks/0.1"

# Provider error codes returned in `{"error": {"code": ..., "message": ...}}` bodies.
_ERROR_CODE_KINDS: dict[str, ProviderErrorKind] = {
    "content_safety": ProviderErrorKind.CONTENT_SAFETY,
    "safety_block": ProviderErrorKind.CONTENT_SAFETY,
    "copyright": ProviderErrorKind.COPYRIGHT,
    "recitation": ProviderErrorKind.COPYRIGHT,
    "invalid_argument": ProviderErrorKind.MALFORMED_INPUT,
    "malformed_input": ProviderErrorKind.MALFORMED_INPUT,
    "agreement_required": ProviderErrorKind.AGREEMENT_MISSING,
    "unavailable": ProviderErrorKind.UNAVAILABLE,
    "rate_limited": ProviderErrorKind.RATE_LIMITED,
    "resource_exhausted": ProviderErrorKind.QUOTA_EXCEEDED,
    "quota_exceeded": ProviderErrorKind.QUOTA_EXCEEDED,
}
_DNS_FAILURE_PATTERNS: tuple[str, ...] = (
    "name or service not known",
    "nodename nor servname",
    "getaddrinfo failed",
    "temporary failure in name resolution",
    "no address associated with hostname",
)


class HttpGenerationProvider:
    """Calls a JSON HTTP generation API: `POST {base_url}/v1/generate/{kind}`."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str = "",
        transport: httpx.BaseTransport | None = None,
        user_agent: str = DEFAULT_USER_AGENT,
    ) -> None:
        headers = {"User-Agent": user_agent}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.Client(
            base_url=base_url,
            headers=headers,
            transport=transport,
        )

    def invoke(self, request: ProviderRequest) -> ProviderOutput:
        timeout = httpx.Timeout(
            request.timeout_seconds,
            connect=min(DEFAULT_CONNECT_TIMEOUT_SECONDS, request.timeout_seconds),
        )
        try:
            response = self._client.post(
                f"/v1/generate/{request.kind.value}",
                json={"task_id": request.task_id, "input": request.payload},
                timeout=timeout,
            )
        except httpx.TimeoutException as exc:
            raise ProviderError(
                f"Provider timeout: {exc}",
                kind=ProviderErrorKind.TIMEOUT,
            ) from exc
        except httpx.ConnectError as exc:
            raise ProviderError(
                f"Provider connection failed: {exc}",
                kind=_connect_error_kind(exc),
            ) from exc
        except httpx.TransportError as exc:
            raise ProviderError(
                f"Provider transport error: {exc}",
                kind=ProviderErrorKind.CONNECTION,
            ) from exc

        if response.is_success:
            return _parse_output(response)
        raise _response_error(response)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> HttpGenerationProvider:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def _connect_error_kind(exc: httpx.ConnectError) -> ProviderErrorKind:
    message = str(exc).lower()
    if any(pattern in message for pattern in _DNS_FAILURE_PATTERNS):
        return ProviderErrorKind.DNS
    return ProviderErrorKind.CONNECTION


def _parse_output(response: httpx.Response) -> ProviderOutput:
    try:
        body = response.json()
    except ValueError as exc:
        raise ProviderError(
            "Provider returned a non-JSON success response",
            kind=ProviderErrorKind.UNKNOWN,
            status_code=response.status_code,
        ) from exc
    if not isinstance(body, dict) or not isinstance(body.get("result_ref"), str):
        raise ProviderError(
            "Provider response is missing result_ref",
            kind=ProviderErrorKind.UNKNOWN,
            status_code=response.status_code,
        )
    data = {key: value for key, value in body.items() if key != "result_ref"}
    return ProviderOutput(result_ref=body["result_ref"], data=data)


def _response_error(response: httpx.Response) -> ProviderError:
    code, message = _error_body(response)
    kind = _ERROR_CODE_KINDS.get(code or "")
    if kind is None:
        kind = ProviderErrorKind.HTTP_STATUS
    summary = message or f"HTTP {response.status_code}"
    logger.warning(
        "Provider error status=%s code=%s: %s",
        response.status_code,
        code or "-",
        summary,
    )
    return ProviderError(summary, kind=kind, status_code=response.status_code)


def _error_body(response: httpx.Response) -> tuple[str | None, str | None]:
    try:
        body: Any = response.json()
    except ValueError:
        return None, response.text.strip() or None
    if not isinstance(body, dict):
        return None, None
    error = body.get("error")
    if isinstance(error, dict):
        code = error.get("code")
        message = error.get("message")
        return (
            str(code).strip().lower() if code is not None else None,
            str(message) if message is not None else None,
        )
    if isinstance(error, str):
        return None, error
    return None, None
