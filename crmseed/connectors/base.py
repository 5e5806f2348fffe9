from __future__ import annotations

from typing import Any, Callable, Mapping, Protocol, Sequence


class RemoteCreationError(RuntimeError):
    """Raised by a connector when the remote system rejects an operation."""

    def __init__(self, message: str, *, retryable: bool = False):
        super().__init__(message)
        self.message = message
        self.retryable = retryable


class RemoteConnector(Protocol):
    def create(self, object_type: str, fields: Mapping[str, Any]) -> str: ...

    def query(self, object_type: str, external_ids: Sequence[str]) -> list[dict[str, Any]]: ...

    def describe(self, object_type: str) -> dict[str, Any]: ...

    def delete(self, object_type: str, external_id: str) -> None: ...


ConnectorFactory = Callable[[str | None], RemoteConnector]


class ContentGenerator(Protocol):
    def generate(self, object_type: str, context: Mapping[str, Any]) -> dict[str, Any]: ...
