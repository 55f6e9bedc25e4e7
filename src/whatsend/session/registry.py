"""
Session Registry

Live session handles by tenant. Owned by whoever builds the session manager
and passed in, so tests and processes never share one by accident.
"""

from collections.abc import Iterator

from whatsend.providers.base import SessionHandle


class SessionRegistry:
    """Map of tenant_id to its single live session handle."""

    def __init__(self):
        self._handles: dict[str, SessionHandle] = {}

    def get(self, tenant_id: str) -> SessionHandle | None:
        return self._handles.get(tenant_id)

    def set(self, tenant_id: str, handle: SessionHandle) -> None:
        self._handles[tenant_id] = handle

    def remove(self, tenant_id: str) -> SessionHandle | None:
        return self._handles.pop(tenant_id, None)

    def tenants(self) -> Iterator[str]:
        return iter(list(self._handles))

    def __contains__(self, tenant_id: str) -> bool:
        return tenant_id in self._handles

    def __len__(self) -> int:
        return len(self._handles)
