"""HTTP record store client for a running gradesync service."""

from __future__ import annotations

from typing import Any, Mapping

import httpx

from gradesync.adapters.store.base import AbstractRecordStore, Record
from gradesync.core.errors import RecordNotFoundError, RemoteWriteError


class HttpRecordStore(AbstractRecordStore):
    """Client for the ``/v1/tables`` API.

    The service identifies the actor from the API key, so ``actor_id`` is
    not sent over the wire.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the async HTTP client.

        Args:
            base_url: Service root, e.g. ``http://localhost:8000``.
            api_key: Value for the X-API-Key header.
            timeout_seconds: Timeout for requests in seconds.
            transport: Optional transport override (tests use ASGI/mock transports).
        """
        headers = {"X-API-Key": api_key} if api_key else {}
        self.client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=timeout_seconds,
            transport=transport,
        )

    async def read(self, table: str, filters: Mapping[str, Any] | None = None) -> list[Record]:
        response = await self._request("GET", f"/v1/tables/{table}/records", params=dict(filters or {}))
        return response.json()["records"]

    async def write(
        self,
        table: str,
        target_id: Any,
        changes: Mapping[str, Any],
        *,
        actor_id: str | None = None,
    ) -> Record:
        response = await self._request(
            "PATCH",
            f"/v1/tables/{table}/records/{target_id}",
            json={"changes": dict(changes)},
        )
        return response.json()["record"]

    async def insert(self, table: str, record: Mapping[str, Any], *, actor_id: str | None = None) -> Record:
        response = await self._request(
            "POST",
            f"/v1/tables/{table}/records",
            json={"record": dict(record)},
        )
        return response.json()["record"]

    async def delete(self, table: str, target_id: Any, *, actor_id: str | None = None) -> Record:
        response = await self._request("DELETE", f"/v1/tables/{table}/records/{target_id}")
        return response.json()["record"]

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self.client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise RemoteWriteError(
                code="store_unreachable",
                message=f"Record store request failed: {exc}",
            ) from exc

        if response.status_code == 404:
            raise RecordNotFoundError(
                code="record_not_found",
                message=self._error_message(response),
            )
        if response.is_error:
            details: dict[str, Any] = {"http_status": response.status_code}
            retry_after = response.headers.get("Retry-After")
            if retry_after is not None:
                details["retry_after"] = float(retry_after)
            raise RemoteWriteError(
                code="store_request_failed",
                message=self._error_message(response),
                details=details,  # type: ignore[arg-type]
            )
        return response

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            return response.json()["error"]["message"]
        except (ValueError, KeyError, TypeError):
            return f"Record store answered HTTP {response.status_code}"
