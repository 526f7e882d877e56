"""PersistenceAdapter Protocol: the storage the trigger service wraps."""

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class PersistenceAdapter(Protocol):
    """Interface all persistence adapters must implement.

    Objects are plain dicts keyed by class name and objectId. Adapters
    never run triggers; the trigger service wraps these calls.
    """

    def connect(self) -> None: ...

    def close(self) -> None: ...

    def create(self, class_name: str, data: dict[str, Any]) -> dict[str, Any]: ...

    def get(self, class_name: str, object_id: str) -> dict[str, Any] | None: ...

    def update(
        self, class_name: str, object_id: str, data: dict[str, Any]
    ) -> dict[str, Any] | None: ...

    def delete(self, class_name: str, object_id: str) -> bool: ...

    def find(
        self,
        class_name: str,
        where: dict[str, Any] | None = None,
        order: str | None = None,
        limit: int | None = None,
        skip: int = 0,
        keys: list[str] | None = None,
    ) -> list[dict[str, Any]]: ...


SYSTEM_FIELDS = ("objectId", "createdAt", "updatedAt")


def project(obj: dict[str, Any], keys: list[str]) -> dict[str, Any]:
    """Copy of obj holding only keys plus the system fields."""
    wanted = set(keys).union(SYSTEM_FIELDS)
    return {k: v for k, v in obj.items() if k in wanted}
