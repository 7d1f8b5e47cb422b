"""HTTP client for the upstream content API.

All network I/O against the content source goes through a single
ContentApiClient. The client receives an httpx.AsyncClient via constructor
injection; the caller owns the client lifecycle. No retry or backoff is applied
here or in the cache: failures surface as ContentMirrorError.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import httpx
import structlog

from contentmirror.errors import ContentMirrorError, ErrorCode

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from contentmirror.config import ApiSettings

log = structlog.get_logger()


def build_http_client(settings: ApiSettings) -> httpx.AsyncClient:
    """Create the shared httpx client. Called once at startup."""
    if not settings.token:
        raise ContentMirrorError(
            code=ErrorCode.MISSING_CONFIGURATION,
            message="No API token configured",
            suggestion="Set CONTENTMIRROR__API__TOKEN or api.token in contentmirror.yaml.",
        )
    return httpx.AsyncClient(
        base_url=settings.base_url,
        timeout=httpx.Timeout(settings.timeout_seconds),
        headers={
            "Authorization": f"Bearer {settings.token}",
            "Notion-Version": settings.version,
            "User-Agent": "contentmirror/1.0",
        },
        limits=httpx.Limits(
            max_connections=10,
            max_keepalive_connections=5,
        ),
    )


async def collect_all(
    fetch: Callable[[str | None], Awaitable[dict[str, Any]]],
) -> list[dict[str, Any]]:
    """Drain a paginated endpoint, following ``next_cursor`` one page at a time."""
    results: list[dict[str, Any]] = []
    cursor: str | None = None
    while True:
        response = await fetch(cursor)
        results.extend(response.get("results", []))
        cursor = response.get("next_cursor")
        if not response.get("has_more") or not cursor:
            return results


class ContentApiClient:
    """Upstream client implementing ContentApiProtocol over REST."""

    def __init__(self, client: httpx.AsyncClient, page_size: int = 100) -> None:
        self._client = client
        self._page_size = page_size

    async def retrieve_collection(self, collection_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/v1/databases/{collection_id}")

    async def query_collection(
        self,
        collection_id: str,
        cursor: str | None = None,
        **params: Any,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"page_size": self._page_size, **params}
        if cursor:
            body["start_cursor"] = cursor
        return await self._request("POST", f"/v1/databases/{collection_id}/query", json=body)

    async def list_children(self, node_id: str, cursor: str | None = None) -> dict[str, Any]:
        query: dict[str, Any] = {"page_size": self._page_size}
        if cursor:
            query["start_cursor"] = cursor
        return await self._request("GET", f"/v1/blocks/{node_id}/children", params=query)

    async def retrieve_node(self, node_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/v1/pages/{node_id}")

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        """Send one request and return the decoded JSON object.

        Raises ContentMirrorError on network errors, non-2xx responses and
        bodies that are not JSON objects.
        """
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise ContentMirrorError(
                code=ErrorCode.UPSTREAM_FETCH_FAILED,
                message=f"Network error calling {method} {path}: {exc}",
                suggestion="The content API may be temporarily unavailable.",
                recoverable=True,
            ) from exc

        if not response.is_success:
            raise _error_for_status(method, path, response.status_code)

        try:
            data = response.json()
        except ValueError as exc:
            raise ContentMirrorError(
                code=ErrorCode.INVALID_RESPONSE,
                message=f"Non-JSON response from {method} {path}",
                suggestion="Check api.base_url points at the content API.",
            ) from exc
        if not isinstance(data, dict):
            raise ContentMirrorError(
                code=ErrorCode.INVALID_RESPONSE,
                message=f"Unexpected response shape from {method} {path}",
                suggestion="Check api.base_url points at the content API.",
            )

        log.debug("api_request_complete", method=method, path=path, status_code=response.status_code)
        return data


def _error_for_status(method: str, path: str, status_code: int) -> ContentMirrorError:
    if status_code == 404:
        return ContentMirrorError(
            code=ErrorCode.NODE_NOT_FOUND,
            message=f"HTTP 404 calling {method} {path}",
            suggestion="The node does not exist or is not shared with the integration.",
        )
    if status_code in (401, 403):
        return ContentMirrorError(
            code=ErrorCode.UNAUTHORIZED,
            message=f"HTTP {status_code} calling {method} {path}",
            suggestion="Check the API token and that the integration can access this content.",
        )
    if status_code == 429:
        return ContentMirrorError(
            code=ErrorCode.RATE_LIMITED,
            message=f"HTTP 429 calling {method} {path}",
            suggestion="The content API rate limit was hit; try again later.",
            recoverable=True,
        )
    return ContentMirrorError(
        code=ErrorCode.UPSTREAM_FETCH_FAILED,
        message=f"HTTP {status_code} calling {method} {path}",
        suggestion="The content API may be temporarily unavailable.",
        recoverable=status_code >= 500,
    )
