"""Client for the remote inventory (log sources, hosts, agents).

Every call is a single attempt; failures surface as
:class:`~sourcesweep.errors.RemoteOperationError` and the caller decides
whether to continue.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Iterable, Optional

import httpx
from pydantic import ValidationError as ModelValidationError

from sourcesweep.config import InventorySettings
from sourcesweep.errors import RemoteOperationError
from sourcesweep.log import get_logger
from sourcesweep.models import HostIdentifier, LogSource

logger = get_logger("store")

API_PREFIX = "/lr-admin-api/"


class EntityKind(str, Enum):
    LOG_SOURCE = "logsources"
    HOST = "hosts"
    AGENT = "agents"


class EntityStore:
    def __init__(
        self,
        settings: InventorySettings,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.settings = settings
        if not settings.verify_tls:
            logger.warning("TLS verification disabled for %s. Set verify_tls = true "
                           "in [inventory] when the server has a trusted certificate.",
                           settings.hostname)
        self._client = httpx.Client(
            base_url=f"https://{settings.hostname}:{settings.port}{API_PREFIX}",
            headers={
                "Authorization": f"Bearer {settings.api_key}",
                "Content-Type": "application/json",
            },
            verify=settings.verify_tls,
            timeout=settings.timeout,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "EntityStore":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        ok: Iterable[int] = (200,),
    ) -> httpx.Response:
        try:
            response = self._client.request(method, path, params=params, json=json)
        except httpx.HTTPError as e:
            raise RemoteOperationError(f"{method} {path} failed: {e}") from e
        if response.status_code not in ok:
            raise RemoteOperationError(
                f"{method} {path} returned {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        return response

    @staticmethod
    def _items(response: httpx.Response) -> list[Dict[str, Any]]:
        # The inventory answers with a bare array; some versions wrap it.
        try:
            data = response.json()
        except ValueError as e:
            raise RemoteOperationError(f"invalid JSON from inventory: {e}") from e
        if isinstance(data, list):
            return data
        if isinstance(data, dict) and isinstance(data.get("items"), list):
            return data["items"]
        raise RemoteOperationError("unexpected log source page format")

    @staticmethod
    def _parse_sources(items: list[Dict[str, Any]], strict: bool = False) -> list[LogSource]:
        sources = []
        for item in items:
            try:
                sources.append(LogSource.model_validate(item))
            except ModelValidationError as e:
                source_id = item.get("id", "?") if isinstance(item, dict) else "?"
                if strict:
                    raise RemoteOperationError(
                        f"malformed log source {source_id}: {e.error_count()} errors"
                    ) from e
                logger.warning("Skipping malformed log source %s: %s", source_id, e.error_count())
        return sources

    def _paginate(
        self,
        params: Dict[str, Any],
        page_size: Optional[int],
        strict: bool = False,
    ) -> list[LogSource]:
        count = page_size or self.settings.page_size
        offset = 0
        sources: list[LogSource] = []
        while True:
            page = self._items(self._request(
                "GET", "logsources", params={**params, "count": count, "offset": offset}
            ))
            sources.extend(self._parse_sources(page, strict))
            if len(page) < count:
                break
            offset += count
        return sources

    def list_log_sources(self, page_size: Optional[int] = None) -> list[LogSource]:
        """Fetch every log source, paging until a short page comes back."""
        sources = self._paginate({}, page_size)
        logger.info("Retrieved %d log sources", len(sources))
        return sources

    def query_log_sources(
        self,
        host_id: Optional[str] = None,
        system_monitor_id: Optional[str] = None,
        record_status: Optional[str] = "active",
        strict: bool = False,
    ) -> list[LogSource]:
        """Query log sources by owner. With ``strict`` a record that fails to
        parse raises :class:`RemoteOperationError` instead of being skipped.
        """
        params: Dict[str, Any] = {}
        if host_id is not None:
            params["hostId"] = host_id
        if system_monitor_id is not None:
            params["systemMonitorId"] = system_monitor_id
        if record_status:
            params["recordStatus"] = record_status
        return self._paginate(params, None, strict)

    def get_entity(self, kind: EntityKind, entity_id: str) -> Dict[str, Any]:
        response = self._request("GET", f"{kind.value}/{entity_id}")
        try:
            data = response.json()
        except ValueError as e:
            raise RemoteOperationError(f"invalid JSON for {kind.value}/{entity_id}: {e}") from e
        if not isinstance(data, dict):
            raise RemoteOperationError(f"unexpected payload for {kind.value}/{entity_id}")
        return data

    def put_entity(self, kind: EntityKind, entity_id: str, body: Dict[str, Any]) -> None:
        self._request("PUT", f"{kind.value}/{entity_id}", json=body)

    def remove_identifiers(self, host_id: str, identifiers: list[HostIdentifier]) -> None:
        payload = {"hostIdentifiers": [i.model_dump() for i in identifiers]}
        self._request("DELETE", f"hosts/{host_id}/identifiers", json=payload, ok=(200, 204))

    def add_identifiers(self, host_id: str, identifiers: list[HostIdentifier]) -> None:
        payload = {"hostIdentifiers": [i.model_dump() for i in identifiers]}
        self._request("POST", f"hosts/{host_id}/identifiers", json=payload, ok=(200, 201))

    def check_connection(self) -> None:
        self._request("GET", "logsources", params={"count": 1, "offset": 0})
