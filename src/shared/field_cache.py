from __future__ import annotations

from typing import Any, Callable, Optional


class FieldCache:
    """Process-lifetime cache of Jira field metadata.

    The cache is filled on first lookup and only reloaded when a caller asks
    for ``refresh`` or calls :meth:`invalidate`.
    """

    def __init__(self, loader: Callable[[], list[dict[str, Any]]]) -> None:
        self._loader = loader
        self._fields: Optional[list[dict[str, Any]]] = None

    @property
    def is_loaded(self) -> bool:
        return self._fields is not None

    def get(self, refresh: bool = False) -> list[dict[str, Any]]:
        if self._fields is None or refresh:
            loaded = self._loader()
            self._fields = loaded if isinstance(loaded, list) else []
        return self._fields

    def invalidate(self) -> None:
        self._fields = None
