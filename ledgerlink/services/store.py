"""
Candidate store collaborators.

The engine only needs two operations from storage: a paginated query and an
additive update. ``InMemoryCandidateStore`` backs tests and local runs;
``HttpCandidateStore`` talks to a REST records service.
"""
from __future__ import annotations

import copy
import logging
import os
from abc import ABC, abstractmethod
from datetime import date
from typing import Any, Dict, List, Optional, Sequence

import httpx

from ledgerlink.models.candidates import ReconciliationState, SourceKind
from ledgerlink.models.reconciliation import ReconciliationPatch
from ledgerlink.services.errors import FetchError, WriteConflictError, WriteError
from ledgerlink.services.normalizer import FIELD_MAPS, LINK_FIELD, STATE_FIELD, parse_date, record_state

logger = logging.getLogger(__name__)


class CandidateStore(ABC):
    """Storage collaborator interface."""

    @abstractmethod
    async def fetch_page(
        self,
        source: SourceKind,
        date_from: Optional[date],
        date_to: Optional[date],
        states: Optional[Sequence[ReconciliationState]],
        offset: int,
        limit: int,
    ) -> List[Dict[str, Any]]:
        """
        Return one page of raw records for ``source``.

        An empty list means the query is exhausted; short pages do not.
        """
        pass

    @abstractmethod
    async def update(
        self,
        record_id: str,
        source: SourceKind,
        patch: ReconciliationPatch,
        expected_state: Optional[ReconciliationState] = None,
    ) -> None:
        """
        Merge a reconciliation patch into the record.

        When ``expected_state`` is given the write only succeeds if the record
        is still in that state.
        """
        pass

    async def aclose(self) -> None:
        """Release connections held by the store."""
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()


def patch_fields(patch: ReconciliationPatch) -> Dict[str, Any]:
    """Record fields written for a patch."""
    fields: Dict[str, Any] = {
        STATE_FIELD: patch.state.value,
        "reconciliation_updated_at": patch.updated_at.isoformat(),
    }
    if patch.link is not None:
        fields[LINK_FIELD] = patch.link.model_dump(mode="json")
        fields["reconciled"] = patch.state == ReconciliationState.RECONCILED
    if patch.confidence is not None:
        fields["reconciliation_confidence"] = patch.confidence
    if patch.reason:
        fields["reconciliation_reason"] = patch.reason
    return fields


class InMemoryCandidateStore(CandidateStore):
    """Dict-backed store keyed by source then record id."""

    def __init__(self, records: Optional[Dict[SourceKind, List[Dict[str, Any]]]] = None):
        self.records: Dict[SourceKind, List[Dict[str, Any]]] = {
            SourceKind(source): [copy.deepcopy(record) for record in rows]
            for source, rows in (records or {}).items()
        }
        self.updates: List[Dict[str, Any]] = []
        self.fetch_calls = 0

    def add(self, source: SourceKind, record: Dict[str, Any]) -> None:
        self.records.setdefault(source, []).append(copy.deepcopy(record))

    def get(self, source: SourceKind, record_id: str) -> Optional[Dict[str, Any]]:
        for record in self.records.get(source, []):
            if self._record_id(source, record) == record_id:
                return record
        return None

    def _record_id(self, source: SourceKind, record: Dict[str, Any]) -> Optional[str]:
        for name in FIELD_MAPS[source].id_fields:
            if record.get(name) not in (None, ""):
                return str(record[name]).strip()
        return None

    def _in_range(self, source: SourceKind, record: Dict[str, Any], date_from, date_to) -> bool:
        if date_from is None and date_to is None:
            return True
        record_date = None
        for name in FIELD_MAPS[source].date_fields:
            record_date = parse_date(record.get(name))
            if record_date:
                break
        if record_date is None:
            # Let the normalizer reject it
            return True
        if date_from and record_date < date_from:
            return False
        if date_to and record_date > date_to:
            return False
        return True

    async def fetch_page(self, source, date_from, date_to, states, offset, limit):
        self.fetch_calls += 1
        rows = [
            record for record in self.records.get(source, [])
            if self._in_range(source, record, date_from, date_to)
            and (not states or record_state(record) in states)
        ]
        return [copy.deepcopy(record) for record in rows[offset:offset + limit]]

    async def update(self, record_id, source, patch, expected_state=None):
        record = self.get(source, record_id)
        if record is None:
            raise WriteError(record_id, f"No {source.value} record with this id")
        current = record_state(record)
        if expected_state is not None and current != expected_state:
            raise WriteConflictError(record_id, expected_state.value, current.value)
        fields = patch_fields(patch)
        record.update(fields)
        self.updates.append({"record_id": record_id, "source": source.value, **fields})


class HttpCandidateStore(CandidateStore):
    """
    REST records service client.

    GET  {base_url}/records?source=&date_from=&date_to=&state=&offset=&limit=
         -> {"data": [...]}
    PATCH {base_url}/records/{source}/{record_id}
         -> 409 when expected_state no longer holds
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_token: Optional[str] = None,
        timeout: float = 30,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or os.getenv("LEDGERLINK_STORE_URL", "")).rstrip("/")
        self.api_token = api_token or os.getenv("LEDGERLINK_STORE_TOKEN")
        self.timeout = timeout
        self.transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        return headers

    def _get_client(self) -> httpx.AsyncClient:
        """One client per store so pages and writes share connections."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._get_headers(),
                timeout=self.timeout,
                transport=self.transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def fetch_page(self, source, date_from, date_to, states, offset, limit):
        params: List[tuple] = [("source", source.value), ("offset", offset), ("limit", limit)]
        if date_from:
            params.append(("date_from", date_from.isoformat()))
        if date_to:
            params.append(("date_to", date_to.isoformat()))
        for state in states or []:
            params.append(("state", state.value))

        try:
            response = await self._get_client().get("/records", params=params)
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise FetchError(source.value, str(exc), offset=offset) from exc

        rows = payload.get("data", []) if isinstance(payload, dict) else payload
        if not isinstance(rows, list):
            raise FetchError(source.value, "Response has no record list", offset=offset)
        return rows

    async def update(self, record_id, source, patch, expected_state=None):
        body: Dict[str, Any] = {"fields": patch_fields(patch)}
        if expected_state is not None:
            body["expected_state"] = expected_state.value

        try:
            response = await self._get_client().patch(f"/records/{source.value}/{record_id}", json=body)
            if response.status_code == 409:
                try:
                    actual = response.json().get("state", "unknown")
                except ValueError:
                    actual = "unknown"
                raise WriteConflictError(
                    record_id,
                    expected_state.value if expected_state else "any",
                    actual,
                )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise WriteError(record_id, str(exc)) from exc
