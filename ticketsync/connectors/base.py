"""
Base connector class and the result types shared by all HubSpot calls.

Network-calling methods return an :data:`ApiResult` instead of raising so
each caller decides whether a failure is fatal (the ticket fetch) or only
degrades the output (label lookups).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar, Union

import httpx

from ticketsync.config import settings


logger = logging.getLogger(__name__)

T = TypeVar("T")


class HubSpotApiError(RuntimeError):
    """A HubSpot request failed: non-2xx status or transport error.

    ``status_code`` is ``None`` when no response was received.
    """

    def __init__(self, message: str, status_code: Optional[int] = None, endpoint: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.endpoint = endpoint

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Err:
    error: HubSpotApiError


ApiResult = Union[Ok[T], Err]


def unwrap(result: ApiResult[T]) -> T:
    """Return the value of an ``Ok`` or raise the error carried by an ``Err``."""
    if isinstance(result, Err):
        raise result.error
    return result.value


class BaseConnector:
    """HTTP plumbing for connectors talking to a bearer-token JSON API.

    Args:
        access_token: Private app token; falls back to ``HUBSPOT_ACCESS_TOKEN``.
        api_base: API root URL; falls back to ``HUBSPOT_API_BASE``.
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport, used by tests to fake the API.
    """

    # Override in subclasses
    source_system: str = "unknown"

    def __init__(
        self,
        access_token: Optional[str] = None,
        *,
        api_base: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._token: Optional[str] = access_token if access_token is not None else settings.HUBSPOT_ACCESS_TOKEN
        self.api_base: str = (api_base or settings.HUBSPOT_API_BASE).rstrip("/")
        self.timeout: float = timeout if timeout is not None else settings.HUBSPOT_REQUEST_TIMEOUT
        self._transport = transport

    def _get_headers(self) -> dict[str, str]:
        """Get authorization headers."""
        return {
            "Authorization": f"Bearer {self._token}",
            "Content-Type": "application/json",
        }

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        params: Optional[dict[str, Any]] = None,
        json_data: Optional[dict[str, Any]] = None,
    ) -> ApiResult[dict[str, Any]]:
        """Make one authenticated request. Never raises for HTTP failures."""
        if not self._token:
            return Err(HubSpotApiError(
                f"{self.source_system} access token is not configured",
                endpoint=endpoint,
            ))

        url: str = f"{self.api_base}{endpoint}"
        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                response: httpx.Response = await client.request(
                    method=method,
                    url=url,
                    headers=self._get_headers(),
                    params=params,
                    json=json_data,
                    timeout=self.timeout,
                )
        except httpx.HTTPError as exc:
            logger.warning("[HubSpot] %s %s failed: %s", method, endpoint, exc)
            return Err(HubSpotApiError(f"Request to {endpoint} failed: {exc}", endpoint=endpoint))

        if response.status_code >= 400:
            error_detail: str = ""
            try:
                # HubSpot error format: {"message": "...", "errors": [...]}
                error_body: dict[str, Any] = response.json()
                error_detail = error_body.get("message", "")
                if error_body.get("errors"):
                    error_details: list[str] = [e.get("message", str(e)) for e in error_body["errors"]]
                    error_detail = f"{error_detail}: {'; '.join(error_details)}"
            except (ValueError, AttributeError):
                error_detail = response.text[:500] if response.text else ""

            return Err(HubSpotApiError(
                f"HubSpot API error ({response.status_code}): {error_detail}",
                status_code=response.status_code,
                endpoint=endpoint,
            ))

        try:
            return Ok(response.json())
        except ValueError:
            return Err(HubSpotApiError(
                f"HubSpot returned a non-JSON body for {endpoint}",
                status_code=response.status_code,
                endpoint=endpoint,
            ))
