"""Azure DevOps REST client: async httpx with bounded retry."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from urllib.parse import quote, urlparse

import anyio
import httpx

from . import __version__
from .config import TrackerConfig
from .errors import (
    AuthError,
    NotFoundError,
    TrackerError,
    TrackerRequestError,
    TransientNetworkError,
)
from .retry import retry_async

logger = logging.getLogger(__name__)

_TRACKER_HOST_SUFFIXES = ("dev.azure.com", "visualstudio.com")


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, TransientNetworkError)


def classify_response(resp: httpx.Response, url: str) -> TrackerError | None:
    """Map a non-2xx response to the error kind that decides retry eligibility."""
    status = resp.status_code
    if resp.is_success:
        return None
    reason = resp.reason_phrase or "error"
    message = f"HTTP {status} {reason} (URL: {url})"
    if status in (401, 403):
        return AuthError(
            f"{message}. Check that the PAT is valid and has Work Items (Read) scope.",
            status, url,
        )
    if status == 404:
        return NotFoundError(message, status, url)
    if status == 429 or status >= 500:
        return TransientNetworkError(message, status, url)
    return TrackerRequestError(message, status, url)


class TrackerClient:
    """Authenticated calls to the work item tracking API.

    Use as an async context manager; one ``httpx.AsyncClient`` lives for
    the duration of a single invocation and nothing is cached.
    """

    def __init__(
        self,
        config: TrackerConfig,
        sleep: Callable[[float], Awaitable[object]] = anyio.sleep,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config = config
        self._sleep = sleep
        self.last_error: BaseException | None = None

        headers = {"User-Agent": f"bakery/{__version__}"}
        auth = None
        if config.auth_scheme == "bearer":
            headers["Authorization"] = f"Bearer {config.pat_token}"
        else:
            auth = httpx.BasicAuth("", config.pat_token)
        self._client = httpx.AsyncClient(
            headers=headers,
            auth=auth,
            timeout=config.timeout_sec,
            follow_redirects=True,
            transport=transport,
        )

    async def __aenter__(self) -> TrackerClient:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    # -- URLs ---------------------------------------------------------------

    def _api_root(self) -> str:
        c = self.config
        return f"{c.base_url}/{quote(c.organization)}/{quote(c.project)}/_apis/wit"

    def work_item_url(self, work_item_id: int) -> str:
        return f"{self._api_root()}/workitems/{work_item_id}"

    def comments_url(self, work_item_id: int) -> str:
        return f"{self._api_root()}/workItems/{work_item_id}/comments"

    def is_tracker_url(self, url: str) -> bool:
        """True if *url* is served by the tracker (and so needs our credentials)."""
        host = (urlparse(url).hostname or "").lower()
        if not host:
            return False
        own = (urlparse(self.config.base_url).hostname or "").lower()
        return host == own or any(
            host == s or host.endswith("." + s) for s in _TRACKER_HOST_SUFFIXES
        )

    # -- transport ----------------------------------------------------------

    def _record_error(self, exc: BaseException | None) -> None:
        self.last_error = exc

    async def _get(self, url: str, params: dict | None = None, accept: str = "application/json") -> httpx.Response:
        async def attempt() -> httpx.Response:
            logger.debug("GET %s params=%s", url, params)
            try:
                resp = await self._client.get(url, params=params, headers={"Accept": accept})
            except httpx.TransportError as exc:
                raise TransientNetworkError(
                    f"Network error talking to {url}: {exc.__class__.__name__}: {exc}",
                    url=url,
                ) from exc
            error = classify_response(resp, url)
            if error is not None:
                await resp.aclose()
                raise error
            return resp

        return await retry_async(
            attempt,
            should_retry=_is_transient,
            max_attempts=self.config.max_attempts,
            base_delay=self.config.base_delay_sec,
            sleep=self._sleep,
            on_error=self._record_error,
            description=f"GET {url}",
        )

    async def _get_json(self, url: str, params: dict | None = None) -> dict:
        resp = await self._get(url, params=params)
        try:
            data = resp.json()
        except ValueError as exc:
            raise TrackerRequestError(
                f"Tracker returned a non-JSON body (URL: {url})", resp.status_code, url,
            ) from exc
        if not isinstance(data, dict):
            raise TrackerRequestError(
                f"Unexpected response shape from {url}: {type(data).__name__}",
                resp.status_code, url,
            )
        return data

    # -- API ----------------------------------------------------------------

    async def fetch_work_item(self, work_item_id: int) -> dict:
        """Raw work item JSON including relations."""
        logger.info("Fetching work item %d", work_item_id)
        return await self._get_json(
            self.work_item_url(work_item_id),
            params={"api-version": self.config.api_version, "$expand": "relations"},
        )

    async def fetch_comments(self, work_item_id: int) -> list[dict]:
        """Raw comment objects, following continuation tokens."""
        comments: list[dict] = []
        params = {"api-version": self.config.comments_api_version}
        while True:
            data = await self._get_json(self.comments_url(work_item_id), params=dict(params))
            page = data.get("comments")
            if page is None:
                page = data.get("value", [])
            comments.extend(page)
            token = data.get("continuationToken")
            if not token:
                break
            params["continuationToken"] = token
        logger.debug("Fetched %d comments for work item %d", len(comments), work_item_id)
        return comments

    async def fetch_bytes(self, url: str) -> tuple[bytes, str]:
        """Download an attachment or embedded image → (content, media type)."""
        resp = await self._get(url, accept="*/*")
        media_type = resp.headers.get("content-type", "application/octet-stream")
        media_type = media_type.split(";", 1)[0].strip() or "application/octet-stream"
        return resp.content, media_type
