# app/core/calendar/http.py
"""
httpx helpers shared by the HTTP-based adapters.

Все сетевые ошибки приводятся к таксономии из ``errors.py`` здесь, чтобы
адаптеры не дублировали разбор статусов.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from .errors import CredentialError, ProviderError, RemoteEventNotFoundError, TransientProviderError

log = logging.getLogger(__name__)


def raise_for_provider_status(provider: str, operation: str, response: httpx.Response) -> None:
    """Map a non-2xx provider response onto the error taxonomy."""
    if response.is_success:
        return
    status = response.status_code
    detail = _error_detail(response)
    log.warning("[%s] %s failed: HTTP %s %s", provider, operation, status, detail)
    if status in (401, 403) or detail == "invalid_grant":
        raise CredentialError(provider, operation, detail or "unauthorized", status_code=status)
    if status in (404, 410):
        raise RemoteEventNotFoundError(provider, operation, detail or "not found", status_code=status)
    if status == 429 or status >= 500:
        raise TransientProviderError(provider, operation, detail or f"HTTP {status}", status_code=status)
    raise ProviderError(provider, operation, detail or f"HTTP {status}", status_code=status)


def _error_detail(response: httpx.Response) -> str:
    try:
        data: Any = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict):  # Graph / Google REST: {"error": {"code":..., "message":...}}
            return str(error.get("code") or error.get("message") or "")
        if error:  # OAuth token endpoints: {"error": "invalid_grant", ...}
            return str(error)
    return response.text[:200]


async def send(
    client: httpx.AsyncClient,
    provider: str,
    operation: str,
    method: str,
    url: str,
    **kwargs: Any,
) -> httpx.Response:
    """Send a request; transport failures and timeouts become ``TransientProviderError``."""
    try:
        response = await client.request(method, url, **kwargs)
    except httpx.TimeoutException as exc:
        raise TransientProviderError(provider, operation, "timed out") from exc
    except httpx.TransportError as exc:
        raise TransientProviderError(provider, operation, f"transport error: {exc}") from exc
    raise_for_provider_status(provider, operation, response)
    return response


__all__ = ["raise_for_provider_status", "send"]
