"""Async repository REST API client using httpx.

Covers only the collaborator calls the submission engine needs: form
configuration, workspace items (drafts), file attach/detach, license grant
and the review workflow queue. Every method returns the decoded JSON body
(or ``{}`` for empty responses) and raises RepositoryError on any transport
or HTTP failure. Parsing into engine types happens in docvault_submit.engine.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from docvault_submit.client.config import Settings
from docvault_submit.client.session import Session

logger = logging.getLogger("docvault_submit.client")

_MUTATING = frozenset({"POST", "PUT", "PATCH", "DELETE"})
_CSRF_RESPONSE_HEADER = "dspace-xsrf-token"
_DRAFT_EMBEDS = ["item", "collection", "submissionDefinition/sections"]


class RepositoryError(Exception):
    """Raised when a repository request fails.

    status_code: HTTP status of the response, or None when the request never
                 produced one (connection refused, timeout, ...).
    detail:      Response body text or the underlying exception message.
    """

    def __init__(
        self,
        method: str,
        path: str,
        status_code: int | None = None,
        detail: str = "",
    ) -> None:
        where = f"{method} {path}"
        if status_code is not None:
            msg = f"{where} -> HTTP {status_code}"
        else:
            msg = f"{where} failed"
        if detail:
            msg += f": {detail[:300]}"
        super().__init__(msg)
        self.method = method
        self.path = path
        self.status_code = status_code
        self.detail = detail

    @property
    def not_found(self) -> bool:
        return self.status_code == 404


class RepositoryClient:
    """Thin async wrapper around the repository's submission REST API."""

    def __init__(
        self,
        settings: Settings,
        session: Session | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._session = session or Session()
        self._client = httpx.AsyncClient(
            base_url=settings.base_url,
            headers=settings.headers,
            timeout=httpx.Timeout(settings.timeout, connect=10.0),
            transport=transport,
        )

    @property
    def session(self) -> Session:
        return self._session

    async def close(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _refresh_csrf(self) -> str | None:
        """Fetch a fresh CSRF token, falling back to the last one seen."""
        try:
            r = await self._client.get("/security/csrf", headers=self._session.auth_headers())
            token = r.headers.get(_CSRF_RESPONSE_HEADER)
            if token:
                self._session.csrf_token = token
        except httpx.HTTPError as e:
            logger.warning("CSRF refresh failed, using cached token: %s", e)
        return self._session.csrf_token

    async def _headers_for(self, method: str, extra: dict[str, str] | None) -> dict[str, str]:
        headers = self._session.auth_headers()
        if method in _MUTATING:
            token = await self._refresh_csrf()
            if token:
                headers[self._settings.csrf_header] = token
        if extra:
            headers.update(extra)
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Any = None,
        json: Any = None,
        content: str | bytes | None = None,
        files: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        hdrs = await self._headers_for(method, headers)
        try:
            r = await self._client.request(
                method,
                path,
                params=params,
                json=json,
                content=content,
                files=files,
                headers=hdrs,
            )
            r.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error("%s %s -> %s", method, path, e.response.status_code)
            raise RepositoryError(method, path, e.response.status_code, e.response.text) from e
        except httpx.HTTPError as e:
            logger.error("%s %s failed: %s", method, path, e)
            raise RepositoryError(method, path, None, str(e)) from e

        token = r.headers.get(_CSRF_RESPONSE_HEADER)
        if token:
            self._session.csrf_token = token
        if not r.content or not r.text.strip():
            return {}
        try:
            return r.json()
        except ValueError as e:
            raise RepositoryError(method, path, r.status_code, "response is not JSON") from e

    async def _get(self, path: str, params: Any = None) -> Any:
        return await self._request("GET", path, params=params)

    async def _post(self, path: str, payload: Any = None, params: Any = None) -> Any:
        return await self._request("POST", path, json=payload if payload is not None else {}, params=params)

    async def _patch(self, path: str, payload: Any, params: Any = None) -> Any:
        return await self._request("PATCH", path, json=payload, params=params)

    async def _delete(self, path: str) -> Any:
        return await self._request("DELETE", path)

    def draft_uri(self, draft_id: str) -> str:
        """Absolute URI of a workspace item, as expected in text/uri-list bodies."""
        return f"{self._settings.base_url}/submission/workspaceitems/{draft_id}"

    # ==================================================================
    # SCHEMA
    # ==================================================================

    async def find_submission_definition(self, collection_id: str) -> Any:
        return await self._get(
            "/config/submissiondefinitions/search/findByCollection",
            params={"uuid": collection_id, "embed": "sections"},
        )

    async def get_form_config(self, config_ref: str) -> Any:
        """Fetch one submission form configuration.

        config_ref may be the absolute ``_links.config.href`` from a section
        or just the form's name (e.g. "traditionalpageone").
        """
        if config_ref.startswith(("http://", "https://")):
            return await self._get(config_ref)
        return await self._get(f"/config/submissionforms/{config_ref}")

    # ==================================================================
    # DRAFTS (workspace items)
    # ==================================================================

    async def create_draft(self, collection_id: str) -> Any:
        return await self._post(
            "/submission/workspaceitems",
            {},
            params={"owningCollection": collection_id, "embed": _DRAFT_EMBEDS},
        )

    async def get_draft(self, draft_id: str) -> Any:
        return await self._get(
            f"/submission/workspaceitems/{draft_id}",
            params={"embed": _DRAFT_EMBEDS},
        )

    async def apply_operations(self, draft_id: str, operations: list[dict[str, Any]]) -> Any:
        return await self._patch(
            f"/submission/workspaceitems/{draft_id}",
            operations,
            params={"embed": "item"},
        )

    async def delete_draft(self, draft_id: str) -> Any:
        return await self._delete(f"/submission/workspaceitems/{draft_id}")

    # ==================================================================
    # FILES
    # ==================================================================

    async def attach_file(
        self,
        draft_id: str,
        name: str,
        content: bytes,
        mime_type: str = "application/octet-stream",
    ) -> Any:
        return await self._request(
            "POST",
            f"/submission/workspaceitems/{draft_id}",
            files={"file": (name, content, mime_type)},
        )

    async def detach_file(self, file_id: str) -> Any:
        return await self._delete(f"/core/bitstreams/{file_id}")

    # ==================================================================
    # LICENSE / WORKFLOW
    # ==================================================================

    async def grant_license(self, draft_id: str) -> Any:
        return await self._patch(
            f"/submission/workspaceitems/{draft_id}",
            [{"op": "add", "path": "/sections/license/granted", "value": "true"}],
            params={"embed": "item"},
        )

    async def submit_for_review(self, draft_id: str) -> Any:
        return await self._request(
            "POST",
            "/workflow/workflowitems",
            content=self.draft_uri(draft_id),
            headers={"Content-Type": "text/uri-list"},
            params={"embed": "item"},
        )
