"""Per-dispatch request context."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

STOP_KEY = "_stop"


class Request(dict[str, Any]):
    """Mutable request context handed to middleware and the handler.

    Built fresh for every dispatch from the ambient request fields (query and
    body, as parsed by the host) with `params`, `method` and `path` layered on
    top. A `_stop` field arriving from the host is dropped. Middleware may add
    keys; `stop()` halts the chain even when the middleware also calls `next()`.
    """

    __slots__ = ()

    @classmethod
    def build(
        cls,
        method: str,
        path: str,
        params: Mapping[str, str] | None = None,
        ambient: Mapping[str, Any] | None = None,
        **extra: Any,
    ) -> Request:
        request = cls(ambient or {})
        request.update(extra)
        request.pop(STOP_KEY, None)
        request["params"] = dict(params or {})
        request["method"] = method
        request["path"] = path
        return request

    @property
    def params(self) -> dict[str, str]:
        return self["params"]

    @property
    def method(self) -> str:
        return self["method"]

    @property
    def path(self) -> str:
        return self["path"]

    @property
    def stopped(self) -> bool:
        return bool(self.get(STOP_KEY, False))

    def stop(self) -> None:
        self[STOP_KEY] = True
