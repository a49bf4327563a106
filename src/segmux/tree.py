"""Per-method segment trie with `:name` path param support.

Trees are immutable: registering a route rebuilds the nodes along its path and
returns a new table, so a table handed to a reader never changes underneath it.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from contextvars import ContextVar
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
from typing import TYPE_CHECKING, Any, Generic, Never, TypeAlias, TypeVar

if TYPE_CHECKING:
    from segmux.chain import Middleware
    from segmux.request import Request

path_params: ContextVar[Mapping[str, str]] = ContextVar("path_params")
http_route: ContextVar[str] = ContextVar("http_route")

Handler: TypeAlias = "Callable[[Request], Any]"

PARAM_SIGIL = ":"


class Param(Enum):
    """Sentinel key for the single parametric child of a node."""

    PARAM = ":param"

    def __repr__(self) -> str:
        return str(self.value)


K = TypeVar("K")
V = TypeVar("V")


class FrozenDict(dict[K, V], Generic[K, V]):
    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._hash: int | None = None

    def __hash__(self) -> int:
        if self._hash is None:
            self._hash = hash(frozenset(self.items()))
        return self._hash

    def _immutable(self, *args, **kwargs) -> Never:
        msg = "FrozenDict is immutable"
        raise TypeError(msg)

    __setitem__ = __delitem__ = clear = pop = popitem = setdefault = update = _immutable


RouteTable: TypeAlias = "FrozenDict[str, Node]"


@dataclass(slots=True, frozen=True)
class Node:
    """Segment-based trie node"""

    handler: Handler | None = field(default=None)
    middleware: tuple[Middleware, ...] = field(default=())
    children: FrozenDict[str | Param, Node] = field(default_factory=FrozenDict)
    param_name: str | None = field(default=None)

    @property
    def is_param(self) -> bool:
        return self.param_name is not None

    def update(
        self,
        handler: Handler | None = None,
        middleware: tuple[Middleware, ...] | None = None,
        children: FrozenDict[str | Param, Node] | None = None,
        param_name: str | None = None,
    ) -> Node:
        return Node(
            handler=handler if handler is not None else self.handler,
            middleware=middleware if middleware is not None else self.middleware,
            children=children if children is not None else self.children,
            param_name=param_name if param_name is not None else self.param_name,
        )


@dataclass(slots=True, frozen=True)
class Match:
    """Result of a successful lookup."""

    handler: Handler
    middleware: tuple[Middleware, ...]
    params: Mapping[str, str]
    route: str  # registered pattern, e.g. "/users/:id"


def parse_path(path: str) -> tuple[str, ...]:
    """Split a path into segments, ignoring leading and trailing slashes.

    "/", "" and "//" all parse to () which is the root route. Empty segments
    inside the path are kept: "/a//b" is ("a", "", "b").
    """
    stripped = path.strip("/")
    return tuple(stripped.split("/")) if stripped else ()


def add_route(
    table: RouteTable,
    method: str,
    path: str,
    handler: Handler,
    middleware: tuple[Middleware, ...] = (),
) -> RouteTable:
    """Return a new table with handler registered on method/path.

    A previous registration at the same method/path is replaced. Parametric
    segments share one slot per node whatever their name, the newest name wins.
    """
    method = method.upper()
    root = table.get(method, Node())
    new_root = _insert(root, parse_path(path), handler, middleware)
    return FrozenDict({**table, method: new_root})


def _insert(
    node: Node,
    segments: tuple[str, ...],
    handler: Handler,
    middleware: tuple[Middleware, ...],
) -> Node:
    if not segments:
        # replace wholesale so an empty middleware tuple clears the old chain
        return Node(
            handler=handler,
            middleware=middleware,
            children=node.children,
            param_name=node.param_name,
        )

    seg, rest = segments[0], segments[1:]
    if seg.startswith(PARAM_SIGIL):
        key: str | Param = Param.PARAM
        existing = node.children.get(key, Node())
        existing = existing.update(param_name=seg[len(PARAM_SIGIL) :])
    else:
        key = seg
        existing = node.children.get(key, Node())

    child = _insert(existing, rest, handler, middleware)
    return node.update(children=FrozenDict({**node.children, key: child}))


@lru_cache(maxsize=1024)
def find_route(table: RouteTable, method: str, path: str) -> Match | None:
    """Traverses the tree for method to find the matching route.

    Each path segment priority is: exact match > param match. Once an exact
    match is taken at a level the param sibling is never retried, even if the
    rest of the path then fails to match.

    Returns None when there is no tree for method, a segment has no matching
    child, or the final node carries no handler.
    """
    current = table.get(method.upper())
    if current is None:
        return None

    params: dict[str, str] = {}
    route_parts: list[str] = []
    for seg in parse_path(path):
        child = current.children.get(seg)
        if child is not None:  # exact match
            route_parts.append(seg)
            current = child
            continue
        child = current.children.get(Param.PARAM)
        if child is not None:  # fallback to param match
            params[child.param_name] = seg  # ty: ignore[invalid-assignment]  - param children always have a name
            route_parts.append(PARAM_SIGIL + str(child.param_name))
            current = child
            continue
        return None

    if current.handler is None:
        return None

    return Match(
        handler=current.handler,
        middleware=current.middleware,
        params=FrozenDict(params),
        route="/" + "/".join(route_parts),
    )


def iter_routes(
    table: RouteTable,
) -> list[tuple[str, str, Handler, tuple[Middleware, ...]]]:
    """All registered routes as (method, pattern, handler, middleware)."""
    routes: list[tuple[str, str, Handler, tuple[Middleware, ...]]] = []
    for method, root in table.items():
        _collect_routes(method, root, [], routes)
    routes.sort(key=lambda r: (r[1], r[0]))
    return routes


def _collect_routes(
    method: str,
    node: Node,
    parts: list[str],
    routes: list[tuple[str, str, Handler, tuple[Middleware, ...]]],
) -> None:
    if node.handler is not None:
        routes.append((method, "/" + "/".join(parts), node.handler, node.middleware))
    for key, child in node.children.items():
        label = key if isinstance(key, str) else PARAM_SIGIL + str(child.param_name)
        _collect_routes(method, child, [*parts, label], routes)


def format_routes(table: RouteTable, *, tree: bool = False) -> str:
    """Format registered routes as a human-readable string.

    By default produces a column-aligned flat route list:

        GET      /                  home
        GET      /admin/dashboard   dashboard     [require_user]
        DELETE   /users/:id         delete_user   [require_user > audit]
        GET      /users/:id         show_user

    With `tree=True`, produces one visual tree per method instead:

        GET /
        ├── [home]
        ├── admin
        │   └── dashboard
        │       └── [dashboard] [require_user]
        └── users
            └── :id
                └── [show_user]
    """
    if tree:
        return "\n\n".join(
            _format_tree(method, table[method]) for method in sorted(table)
        )
    return _format_route_list(table)


def _format_route_list(table: RouteTable) -> str:
    routes = [
        (method, path, _qualname(handler), [_qualname(m) for m in mw])
        for method, path, handler, mw in iter_routes(table)
    ]
    if not routes:
        return ""

    method_w = max(len(r[0]) for r in routes)
    path_w = max(len(r[1]) for r in routes)
    handler_w = max(len(r[2]) for r in routes)

    lines: list[str] = []
    for method, path, handler, mw in routes:
        if mw:
            lines.append(
                f"{method:<{method_w}}   {path:<{path_w}}   "
                f"{handler:<{handler_w}}   [{' > '.join(mw)}]"
            )
        else:
            lines.append(f"{method:<{method_w}}   {path:<{path_w}}   {handler}")
    return "\n".join(lines)


def _format_tree(method: str, root: Node) -> str:
    lines: list[str] = [f"{method} /"]
    _render_tree(root, "", lines)
    return "\n".join(lines)


def _render_tree(node: Node, prefix: str, lines: list[str]) -> None:
    items: list[tuple[str, Node | None]] = []
    if node.handler is not None:
        items.append((_handler_label(node), None))

    literals = sorted(
        ((k, v) for k, v in node.children.items() if isinstance(k, str)),
        key=lambda x: x[0],
    )
    items.extend(literals)

    param_child = node.children.get(Param.PARAM)
    if param_child is not None:
        items.append((PARAM_SIGIL + str(param_child.param_name), param_child))

    for i, (label, child) in enumerate(items):
        is_last = i == len(items) - 1
        connector = "└── " if is_last else "├── "
        lines.append(f"{prefix}{connector}{label}")
        if child is not None:
            extension = "    " if is_last else "│   "
            _render_tree(child, prefix + extension, lines)


def _handler_label(node: Node) -> str:
    label = f"[{_qualname(node.handler)}]"
    if node.middleware:
        label += f" [{' > '.join(_qualname(m) for m in node.middleware)}]"
    return label


def _qualname(obj: object) -> str:
    """Extract __qualname__ from a callable, falling back to repr."""
    return str(obj.__qualname__) if hasattr(obj, "__qualname__") else repr(obj)
