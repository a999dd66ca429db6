from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import httpx

from lemmyfed_harness.errors import classify_api_error
from lemmyfed_harness.security import redact_sensitive_text

if TYPE_CHECKING:
    from lemmyfed_harness.registry import Instance, Session

logger = logging.getLogger(__name__)


def _error_code(response: httpx.Response) -> tuple[str | None, str | None]:
    try:
        body = response.json()
    except ValueError:
        return None, redact_sensitive_text(response.text[:200]) or None
    if isinstance(body, dict):
        code = body.get("error")
        if isinstance(code, str):
            message = body.get("message")
            return code, message if isinstance(message, str) else None
        detail = body.get("detail")
        if detail is not None:
            return None, redact_sensitive_text(str(detail))
    return None, None


class ApiClient:
    """JSON calls against one instance, authenticated as one actor.

    Transport errors from httpx are left untouched; error responses become
    harness errors tagged with the instance's error code.
    """

    def __init__(self, instance: Instance, credential: str | None = None, *, api_prefix: str) -> None:
        self._instance = instance
        self._credential = credential
        self._api_prefix = api_prefix.rstrip("/")

    @classmethod
    def for_session(cls, session: Session) -> "ApiClient":
        return cls(session.instance, session.credential, api_prefix=session.api_prefix)

    @property
    def instance(self) -> Instance:
        return self._instance

    async def get(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        return await self._request("GET", path, params=params)

    async def post(self, path: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        return await self._request("POST", path, payload=payload)

    async def put(self, path: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        return await self._request("PUT", path, payload=payload)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        payload: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        url = f"{self._api_prefix}{path}"
        headers: dict[str, str] = {}
        if self._credential:
            headers["Authorization"] = f"Bearer {self._credential}"
        query = None
        if params is not None:
            query = {key: _query_value(value) for key, value in params.items() if value is not None}

        response = await self._instance.http.request(method, url, json=payload, params=query, headers=headers)
        operation = f"{method} {self._instance.name}{url}"
        logger.debug("%s -> HTTP %s", operation, response.status_code)

        if response.status_code >= 400:
            code, detail = _error_code(response)
            raise classify_api_error(response.status_code, code, operation=operation, detail=detail)
        if not response.content:
            return {}
        body = response.json()
        if not isinstance(body, dict):
            return {"value": body}
        return body


def _query_value(value: Any) -> Any:
    if isinstance(value, bool):
        return "true" if value else "false"
    if hasattr(value, "value"):
        return value.value
    return value
