from __future__ import annotations

import copy
import itertools
import threading
from collections import defaultdict
from datetime import date, timedelta
from typing import Any, Mapping, Sequence

from crmseed.connectors.base import RemoteCreationError

# Salesforce-style three character key prefixes.
_KEY_PREFIXES = {
    "Account": "001",
    "Contact": "003",
    "Opportunity": "006",
    "Task": "00T",
    "Event": "00U",
    "EmailMessage": "02s",
}

SYSTEM_FIELDS = frozenset(
    {
        "Id",
        "CreatedDate",
        "CreatedById",
        "LastModifiedDate",
        "LastModifiedById",
        "SystemModstamp",
        "IsDeleted",
        "attributes",
    }
)


class InMemoryConnector:
    """Thread-safe stand-in for a CRM org.

    Failures are scripted per object type and per field value through
    ``fail_when`` so tests can drive retryable and permanent rejections.
    """

    def __init__(self, environment_id: str | None = None):
        self.environment_id = environment_id
        self._lock = threading.Lock()
        self._counter = itertools.count(1)
        self._objects: dict[str, dict[str, dict[str, Any]]] = defaultdict(dict)
        self._failures: list[tuple[str, str | None, Any, RemoteCreationError, int | None]] = []
        self.create_calls: list[tuple[str, dict[str, Any]]] = []
        self.deleted: list[tuple[str, str]] = []

    def fail_when(
        self,
        object_type: str,
        *,
        field: str | None = None,
        value: Any = None,
        message: str = "Remote rejected record",
        retryable: bool = False,
        times: int | None = None,
    ) -> None:
        self._failures.append(
            (object_type, field, value, RemoteCreationError(message, retryable=retryable), times)
        )

    def _scripted_failure(self, object_type: str, fields: Mapping[str, Any]) -> RemoteCreationError | None:
        for index, (failed_type, field, value, error, times) in enumerate(self._failures):
            if failed_type != object_type:
                continue
            if field is not None and fields.get(field) != value:
                continue
            if times is not None:
                if times <= 0:
                    continue
                self._failures[index] = (failed_type, field, value, error, times - 1)
            return error
        return None

    def create(self, object_type: str, fields: Mapping[str, Any]) -> str:
        payload = dict(fields)
        with self._lock:
            self.create_calls.append((object_type, payload))
            error = self._scripted_failure(object_type, payload)
            if error is not None:
                raise RemoteCreationError(error.message, retryable=error.retryable)
            prefix = _KEY_PREFIXES.get(object_type, "a00")
            external_id = f"{prefix}{next(self._counter):015d}"
            stored = {key: value for key, value in payload.items() if key not in SYSTEM_FIELDS}
            stored["Id"] = external_id
            stored["CreatedDate"] = date.today().isoformat()
            self._objects[object_type][external_id] = stored
            return external_id

    def query(self, object_type: str, external_ids: Sequence[str]) -> list[dict[str, Any]]:
        with self._lock:
            bucket = self._objects.get(object_type, {})
            return [copy.deepcopy(bucket[external_id]) for external_id in external_ids if external_id in bucket]

    def describe(self, object_type: str) -> dict[str, Any]:
        with self._lock:
            sample = next(iter(self._objects.get(object_type, {}).values()), {})
        return {
            "name": object_type,
            "createable": object_type in _KEY_PREFIXES,
            "fields": sorted(sample),
        }

    def delete(self, object_type: str, external_id: str) -> None:
        with self._lock:
            bucket = self._objects.get(object_type, {})
            if external_id not in bucket:
                raise RemoteCreationError(f"{object_type} {external_id} not found", retryable=False)
            del bucket[external_id]
            self.deleted.append((object_type, external_id))

    def records(self, object_type: str) -> dict[str, dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(self._objects.get(object_type, {}))

    def count(self, object_type: str | None = None) -> int:
        with self._lock:
            if object_type is not None:
                return len(self._objects.get(object_type, {}))
            return sum(len(bucket) for bucket in self._objects.values())


class InMemoryConnectorRegistry:
    """Connector factory that hands out one in-memory org per environment."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._connectors: dict[str | None, InMemoryConnector] = {}

    def __call__(self, environment_id: str | None) -> InMemoryConnector:
        with self._lock:
            connector = self._connectors.get(environment_id)
            if connector is None:
                connector = InMemoryConnector(environment_id)
                self._connectors[environment_id] = connector
            return connector


class SequentialContentGenerator:
    """Deterministic placeholder field values for each supported object type."""

    _STAGES = (
        "Prospecting",
        "Qualification",
        "Needs Analysis",
        "Value Proposition",
        "Proposal/Price Quote",
        "Negotiation/Review",
        "Closed Won",
    )

    def __init__(self, today: date | None = None):
        self._today = today or date.today()
        self._counter = itertools.count(1)

    def generate(self, object_type: str, context: Mapping[str, Any]) -> dict[str, Any]:
        n = next(self._counter)
        industry = str(context.get("industry") or "Technology")
        if object_type == "Account":
            return {"Name": f"{industry} Account {n}", "Industry": industry, "Type": "Customer"}
        if object_type == "Contact":
            return {"FirstName": "Contact", "LastName": f"Number {n}", "Email": f"contact{n}@example.com"}
        if object_type == "Opportunity":
            stage = self._STAGES[n % len(self._STAGES)]
            close_date = self._today + timedelta(days=15 * (n % 6))
            return {
                "Name": f"Opportunity {n}",
                "StageName": stage,
                "CloseDate": close_date.isoformat(),
                "Amount": 10000 * (n % 9 + 1),
            }
        if object_type == "Task":
            return {"Subject": f"Follow up {n}", "Status": "Completed", "Priority": "Normal"}
        if object_type == "Event":
            return {"Subject": f"Meeting {n}"}
        if object_type == "EmailMessage":
            return {
                "Subject": f"Re: proposal {n}",
                "TextBody": f"Message body {n}",
                "FromAddress": f"rep{n}@example.com",
                "ToAddress": f"buyer{n}@example.com",
            }
        return {"Name": f"{object_type} {n}"}
