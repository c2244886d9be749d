"""HTTP client for the Hypothesis annotation API.

Only the calls the mirror needs: paged search, tag updates, deletes and a
profile check for credentials. Failures raise HypothesisError and are not
retried here; re-running the command is the retry.
"""

from __future__ import annotations

import logging
from datetime import timedelta

import httpx

from .config import Scope
from .errors import HypothesisError
from .models import Annotation, MIN_DATE, parse_datetime, format_datetime

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.hypothes.is/api"
DEFAULT_TIMEOUT = 30.0

# Hypothesis refuses larger pages
MAX_PAGE_SIZE = 200


def search_after_for(since: str) -> str:
    """Turn an inclusive lower bound into Hypothesis' exclusive search_after.

    search_after returns rows strictly after the value, so step back one
    microsecond to include rows updated exactly at ``since``.
    """
    dt = parse_datetime(since)
    if dt is None:
        raise ValueError(f"Not a timestamp: {since!r}")
    if since == MIN_DATE:
        return since
    return format_datetime(dt - timedelta(microseconds=1))


class HypothesisClient:
    """HTTP client for the Hypothesis API."""

    def __init__(
        self,
        username: str,
        api_key: str,
        *,
        api_url: str = DEFAULT_API_URL,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.BaseTransport | None = None,
    ):
        self.username = username
        self._api_url = api_url.rstrip("/")
        self._client = httpx.Client(
            base_url=self._api_url,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Accept": "application/vnd.hypothesis.v1+json",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    @property
    def user(self) -> str:
        """Account ID of the authenticated user."""
        return f"acct:{self.username}@hypothes.is"

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            resp = self._client.request(method, path, **kwargs)
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            detail = e.response.text[:200] if e.response.text else ""
            if status in (401, 403):
                raise HypothesisError(
                    f"Hypothesis refused the credentials for {self.username!r} "
                    f"(HTTP {status}). Check the developer API key.",
                    status_code=status,
                ) from e
            raise HypothesisError(
                f"Hypothesis {method} {path} failed: HTTP {status}. {detail}",
                status_code=status,
            ) from e
        except httpx.HTTPError as e:
            raise HypothesisError(f"Couldn't reach Hypothesis at {self._api_url}: {e}") from e
        return resp

    def search(
        self,
        scope: Scope,
        since: str = MIN_DATE,
        *,
        order: str = "asc",
        page_size: int = MAX_PAGE_SIZE,
        sort: str = "updated",
        uri: str = "",
        any_text: str = "",
        tags: tuple[str, ...] | list[str] = (),
    ) -> list[Annotation]:
        """GET /search -> one page of annotations with ``sort >= since``.

        With order="desc", ``since`` is an exclusive upper bound instead.
        """
        if order not in ("asc", "desc"):
            raise ValueError(f"order must be 'asc' or 'desc', got {order!r}")
        params: list[tuple[str, str]] = [
            ("limit", str(min(page_size, MAX_PAGE_SIZE))),
            ("sort", sort),
            ("order", order),
            ("search_after", search_after_for(since) if order == "asc" else since),
        ]
        params.extend(("group", group) for group in scope.groups)
        params.extend(("user", user) for user in scope.users)
        if uri:
            params.append(("uri.parts", uri))
        if any_text:
            params.append(("any", any_text))
        params.extend(("tags", tag) for tag in tags)

        data = self._request("GET", "/search", params=params).json()
        rows = data.get("rows") or []
        logger.debug("search since=%s returned %d rows", since, len(rows))
        try:
            return [Annotation.from_api(row) for row in rows]
        except ValueError as e:
            raise HypothesisError(f"Hypothesis returned a malformed annotation: {e}") from e

    def update_tags(self, annotation_id: str, tags: list[str]) -> Annotation:
        """PATCH /annotations/{id} with a new tag list; returns the updated annotation."""
        resp = self._request("PATCH", f"/annotations/{annotation_id}", json={"tags": list(tags)})
        return Annotation.from_api(resp.json())

    def delete(self, annotation_id: str) -> None:
        """DELETE /annotations/{id}."""
        self._request("DELETE", f"/annotations/{annotation_id}")

    def authorize(self) -> bool:
        """True if the credentials resolve to a Hypothesis user."""
        profile = self._request("GET", "/profile").json()
        return bool(profile.get("userid"))

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()
