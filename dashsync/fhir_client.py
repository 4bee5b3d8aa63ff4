"""Source clients.

SourceClient is the async surface the coordinator talks to. The remote
client wraps blocking `requests` calls in asyncio.to_thread and never raises
to callers: failures are logged and come back as [] / None.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import requests

from .config import SyncSettings
from .errors import SourceUnavailableError

logger = logging.getLogger(__name__)

FHIR_JSON = "application/fhir+json"

DEFAULT_COUNT = 10
DEFAULT_SORT = "-_lastUpdated"


class SourceClient(ABC):
    """Where clinical resources come from. Search results are bundle entries."""

    name = "source"

    @abstractmethod
    async def test_connection(self) -> bool:
        ...

    @abstractmethod
    async def search(self, resource_type: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def get_resource(self, resource_type: str, resource_id: str) -> Optional[Dict[str, Any]]:
        ...


class RemoteSourceClient(SourceClient):
    """FHIR R4 REST server over HTTP."""

    name = "remote"

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None,
                 session: Optional[requests.Session] = None):
        self.base_url = (base_url or SyncSettings.base_url).rstrip("/")
        self.timeout = timeout if timeout is not None else SyncSettings.timeout_seconds
        self.session = session or requests.Session()
        self.headers = {"Accept": FHIR_JSON}

    @classmethod
    def from_settings(cls, settings: SyncSettings) -> "RemoteSourceClient":
        return cls(base_url=settings.base_url, timeout=settings.timeout_seconds)

    # ---------- blocking helpers (run in a worker thread) ----------

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> requests.Response:
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            return self.session.get(url, params=params, headers=self.headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise SourceUnavailableError(f"GET {url} failed: {e}", detail={"url": url}) from e

    def _search_blocking(self, resource_type: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        resp = self._get(resource_type, params)
        if resp.status_code in (400, 422) and "_sort" in params:
            # Some servers reject _sort on certain resource types.
            logger.info("%s search rejected _sort (HTTP %s); retrying without it", resource_type, resp.status_code)
            params = {k: v for k, v in params.items() if k != "_sort"}
            resp = self._get(resource_type, params)
        if not resp.ok:
            raise SourceUnavailableError(
                f"{resource_type} search returned HTTP {resp.status_code}",
                detail={"status": resp.status_code, "params": params},
            )
        try:
            bundle = resp.json()
        except ValueError as e:
            raise SourceUnavailableError(f"{resource_type} search returned a non-JSON body") from e
        if not isinstance(bundle, dict):
            raise SourceUnavailableError(f"{resource_type} search returned a non-bundle body")
        entries = bundle.get("entry") or []
        return [e for e in entries if isinstance(e, dict)]

    def _read_blocking(self, resource_type: str, resource_id: str) -> Optional[Dict[str, Any]]:
        resp = self._get(f"{resource_type}/{resource_id}")
        if resp.status_code == 404:
            return None
        if not resp.ok:
            raise SourceUnavailableError(
                f"{resource_type}/{resource_id} returned HTTP {resp.status_code}",
                detail={"status": resp.status_code},
            )
        try:
            data = resp.json()
        except ValueError as e:
            raise SourceUnavailableError(f"{resource_type}/{resource_id} returned a non-JSON body") from e
        return data if isinstance(data, dict) else None

    def _probe_blocking(self) -> bool:
        resp = self._get("metadata")
        return resp.ok

    # ---------- async surface ----------

    async def test_connection(self) -> bool:
        try:
            ok = await asyncio.to_thread(self._probe_blocking)
        except SourceUnavailableError as e:
            logger.warning("FHIR probe failed: %s", e)
            return False
        if not ok:
            logger.warning("FHIR probe at %s/metadata was not successful", self.base_url)
        return ok

    async def search(self, resource_type: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {"_count": DEFAULT_COUNT, "_sort": DEFAULT_SORT}
        query.update(params or {})
        try:
            entries = await asyncio.to_thread(self._search_blocking, resource_type, query)
        except SourceUnavailableError as e:
            logger.warning("FHIR search failed: %s", e)
            return []
        logger.debug("%s search returned %d entries", resource_type, len(entries))
        return entries

    async def get_resource(self, resource_type: str, resource_id: str) -> Optional[Dict[str, Any]]:
        try:
            return await asyncio.to_thread(self._read_blocking, resource_type, resource_id)
        except SourceUnavailableError as e:
            logger.warning("FHIR read failed: %s", e)
            return None
