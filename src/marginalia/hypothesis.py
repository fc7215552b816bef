"""Hypothesis API client.

Thin async wrapper over the annotation endpoints the bridge needs:
point fetch, search ordered by update time, and reply creation. One client
is bound to one subscription's token and group.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import httpx
from pydantic import ValidationError

from marginalia import __version__
from marginalia.logging import get_logger
from marginalia.models import Annotation

if TYPE_CHECKING:
    from marginalia.config import HypothesisConfig

log = get_logger("hypothesis")

USER_AGENT = f"marginalia/{__version__}"

# Hypothesis expects search_after as an ISO timestamp with microseconds,
# e.g. "2022-09-01T00:00:00.000000+00:00"
SEARCH_AFTER_FORMAT = "%Y-%m-%dT%H:%M:%S.%f+00:00"


class AnnotationServiceError(Exception):
    """A Hypothesis API call failed (network error or unexpected status)."""


class AnnotationNotFoundError(AnnotationServiceError):
    """The requested annotation does not exist or is not visible."""


def format_search_after(ts: datetime) -> str:
    """Render a watermark the way the search API expects it."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).strftime(SEARCH_AFTER_FORMAT)


def new_reply_body(text: str, group: str, references: list[str], uri: str) -> dict[str, Any]:
    """The fields required to create a reply annotation."""
    return {
        "uri": uri,
        "text": text,
        "group": group,
        "permissions": {"read": [f"group:{group}"]},
        "references": list(references),
    }


class AnnotationClient:
    """Hypothesis client scoped to one token and group.

    Attributes:
        token: Hypothesis developer token.
        group: Group id searched and posted to.
    """

    def __init__(
        self,
        token: str,
        group: str,
        api_url: str = "https://api.hypothes.is/api",
        timeout: float = 30.0,
        page_size: int = 200,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.token = token
        self.group = group
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.page_size = page_size
        self._transport = transport

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.api_url,
            timeout=self.timeout,
            transport=self._transport,
            headers={
                "Authorization": f"Bearer {self.token}",
                "Accept": "application/vnd.hypothesis.v1+json",
                "User-Agent": USER_AGENT,
            },
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        """Perform a request and return the decoded JSON body."""
        try:
            async with self._http() as client:
                response = await client.request(method, path, **kwargs)
                response.raise_for_status()
                return response.json()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status == 404:
                raise AnnotationNotFoundError(f"{method} {path}: not found") from e
            raise AnnotationServiceError(f"{method} {path}: status={status}") from e
        except httpx.HTTPError as e:
            raise AnnotationServiceError(f"{method} {path}: {e}") from e
        except ValueError as e:
            raise AnnotationServiceError(f"{method} {path}: invalid JSON response") from e

    async def fetch(self, annotation_id: str) -> Annotation:
        """Fetch a single annotation by id.

        Raises:
            AnnotationNotFoundError: If the annotation does not exist.
            AnnotationServiceError: On any other failure.
        """
        data = await self._request("GET", f"/annotations/{annotation_id}")
        try:
            return Annotation.model_validate(data)
        except ValidationError as e:
            raise AnnotationServiceError(f"malformed annotation {annotation_id}: {e}") from e

    async def fetch_updated_after(self, after: datetime) -> list[Annotation]:
        """Fetch one page of the group's annotations updated strictly after a timestamp.

        Results are sorted ascending by update time. Callers page by
        advancing ``after`` to the last row's ``updated`` value.
        """
        params = {
            "sort": "updated",
            "order": "asc",
            "group": self.group,
            "search_after": format_search_after(after),
            "limit": self.page_size,
        }
        log.debug("search_annotations", group=self.group, search_after=params["search_after"])
        data = await self._request("GET", "/search", params=params)

        try:
            rows = data.get("rows", [])
            return [Annotation.model_validate(row) for row in rows]
        except (AttributeError, ValidationError) as e:
            raise AnnotationServiceError(f"malformed search response: {e}") from e

    async def post_reply(self, text: str, references: list[str], uri: str) -> str:
        """Create a reply annotation and return its id.

        Args:
            text: Body of the new annotation.
            references: Ancestor ids, root first, immediate parent last.
            uri: Document the thread is attached to.

        Raises:
            ValueError: If references is empty (a reply needs a parent).
            AnnotationServiceError: If creation fails.
        """
        if not references:
            raise ValueError("a reply needs at least one reference")

        body = new_reply_body(text, self.group, references, uri)
        data = await self._request("POST", "/annotations", json=body)

        annotation_id = data.get("id") if isinstance(data, dict) else None
        if not annotation_id:
            raise AnnotationServiceError("create response carried no annotation id")
        log.info("annotation_created", annotation_id=annotation_id, group=self.group)
        return annotation_id


class AnnotationClientFactory:
    """Builds per-subscription clients sharing one API configuration."""

    def __init__(
        self,
        config: HypothesisConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self._transport = transport

    def new_client(self, token: str, group: str) -> AnnotationClient:
        return AnnotationClient(
            token,
            group,
            api_url=self.config.api_url,
            timeout=self.config.timeout_seconds,
            page_size=self.config.page_size,
            transport=self._transport,
        )
