"""HTTP request router/dispatcher.

Routes are registered Express-style, `router.get(path, *middleware, handler)`,
into immutable per-method trees. Each dispatch takes one snapshot of the route
table and the global middleware, so registering while requests are in flight
never exposes a half-built tree.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from enum import Enum
from typing import Any

from segmux.chain import Middleware, run_chain
from segmux.config import RouterConfig, normalize_mount_path
from segmux.request import Request
from segmux.tree import (
    FrozenDict,
    Handler,
    Match,
    RouteTable,
    add_route,
    find_route,
    format_routes,
    http_route,
    iter_routes,
    path_params,
)

logger = logging.getLogger(__name__)


class RouteError(TypeError):
    """Route registration is malformed: missing or non-callable handler/middleware."""


class Outcome(Enum):
    """How a dispatch ended."""

    NOT_FOUND = "not_found"  # no route for method + path
    HALTED = "halted"  # a middleware declined to continue
    COMPLETED = "completed"  # handler was invoked

    def __repr__(self) -> str:
        return str(self.value)


class Router:
    __slots__ = ("_finalized", "_middleware", "_mount_path", "_not_found", "_table")
    _table: RouteTable
    _middleware: tuple[Middleware, ...]
    _mount_path: str
    _not_found: Handler | None
    _finalized: bool

    def __init__(
        self,
        *,
        mount_path: str = "",
        not_found: Handler | None = None,
    ) -> None:
        self._table = FrozenDict()
        self._middleware = ()
        self._mount_path = normalize_mount_path(mount_path)
        self._not_found = not_found
        self._finalized = False

    @classmethod
    def from_config(
        cls, config: RouterConfig, *, not_found: Handler | None = None
    ) -> Router:
        return cls(mount_path=config.mount_path, not_found=not_found)

    @property
    def mount_path(self) -> str:
        return self._mount_path

    @property
    def not_found_handler(self) -> Handler | None:
        return self._not_found

    @property
    def routes(self) -> list[tuple[str, str, Handler, tuple[Middleware, ...]]]:
        """Registered routes as (method, pattern, handler, middleware)."""
        return iter_routes(self._table)

    def format(self, *, tree: bool = False) -> str:
        """Human-readable route listing, see `segmux.tree.format_routes`."""
        return format_routes(self._table, tree=tree)

    # --- registration ---------------------------------------------------------
    def register(self, method: str, path: str, *args: Any) -> None:
        """Registers a route: the last argument is the handler, the rest middleware.

        Middleware may be passed individually or as lists/tuples, which are
        flattened one level in order:

            router.register("GET", "/admin", auth, [audit, rate_limit], handler)
        """
        if not args:
            msg = f"no handler provided for [{method.upper()}] {path}"
            raise RouteError(msg)
        *middleware, handler = args
        self.route(method, path, handler, _flatten(middleware))

    def route(
        self,
        method: str,
        path: str,
        handler: Handler,
        middleware: Iterable[Middleware] = (),
    ) -> None:
        """Registers handler on method/path with route-scoped middleware.

        Registering the same method/path again replaces the previous route.
        """
        if self._finalized:
            msg = "cannot register routes on a finalized router"
            raise RuntimeError(msg)
        if not callable(handler):
            msg = f"handler for [{method.upper()}] {path} is not callable: {handler!r}"
            raise RouteError(msg)
        middleware = tuple(middleware)
        for mw in middleware:
            if not callable(mw):
                msg = f"middleware for [{method.upper()}] {path} is not callable: {mw!r}"
                raise RouteError(msg)
        # lookups are memoised on the table, which hashes every node
        for fn in (handler, *middleware):
            try:
                hash(fn)
            except TypeError as e:
                msg = f"[{method.upper()}] {path} needs hashable callables: {fn!r}"
                raise RouteError(msg) from e
        self._table = add_route(self._table, method, path, handler, middleware)
        logger.debug("Route added: [%s] %s", method.upper(), path)

    def get(self, path: str, *args: Any) -> None:
        """Registers GET route, `router.get(path, *middleware, handler)`."""
        self.register("GET", path, *args)

    def post(self, path: str, *args: Any) -> None:
        """Registers POST route, `router.post(path, *middleware, handler)`."""
        self.register("POST", path, *args)

    def put(self, path: str, *args: Any) -> None:
        """Registers PUT route, `router.put(path, *middleware, handler)`."""
        self.register("PUT", path, *args)

    def delete(self, path: str, *args: Any) -> None:
        """Registers DELETE route, `router.delete(path, *middleware, handler)`."""
        self.register("DELETE", path, *args)

    def patch(self, path: str, *args: Any) -> None:
        """Registers PATCH route, `router.patch(path, *middleware, handler)`."""
        self.register("PATCH", path, *args)

    def use(self, middleware: Middleware) -> None:
        """Appends middleware to the global chain. Non-callables are ignored."""
        if self._finalized:
            msg = "cannot add middleware to a finalized router"
            raise RuntimeError(msg)
        if not callable(middleware):
            logger.debug("ignoring non-callable middleware %r", middleware)
            return
        self._middleware = (*self._middleware, middleware)

    def finalize(self) -> None:
        """Freezes the router. Idempotent.

        Called by the RSGI app when a worker starts; call it yourself before
        serving from threads so a stray registration fails loudly.
        """
        if self._finalized:
            return
        self._finalized = True
        logger.info(
            "router finalized: %d routes, %d global middleware",
            len(self.routes),
            len(self._middleware),
        )

    # --- dispatch -------------------------------------------------------------
    def strip_mount(self, path: str) -> str:
        """Removes the mount path prefix, if path starts with it."""
        if self._mount_path and path.startswith(self._mount_path):
            return path[len(self._mount_path) :]
        return path

    def lookup(self, method: str, path: str) -> Match | None:
        """Returns the route matching method/path, None when there is none."""
        return find_route(self._table, method.upper(), path)

    def dispatch(
        self,
        method: str,
        path: str,
        ambient: Mapping[str, Any] | None = None,
        **extra: Any,
    ) -> Outcome:
        """Routes one request through global middleware, route middleware and handler.

        ambient holds the parsed query/body fields; extra is merged into the
        request as-is (the RSGI app passes scope and proto this way). Exceptions
        raised by middleware or the handler propagate to the caller.
        """
        method = method.upper()
        path = self.strip_mount(path.partition("?")[0])
        table, global_middleware = self._table, self._middleware

        match = find_route(table, method, path)
        if match is None:
            logger.debug("no route for [%s] %s", method, path)
            if self._not_found is not None:
                self._not_found(Request.build(method, path, ambient=ambient, **extra))
            return Outcome.NOT_FOUND

        request = Request.build(method, path, match.params, ambient, **extra)
        params_token = path_params.set(request.params)
        route_token = http_route.set(match.route)
        try:
            if not run_chain(global_middleware, request):
                logger.debug("[%s] %s halted by global middleware", method, path)
                return Outcome.HALTED
            if not run_chain(match.middleware, request):
                logger.debug("[%s] %s halted by route middleware", method, path)
                return Outcome.HALTED
            match.handler(request)
            return Outcome.COMPLETED
        finally:
            http_route.reset(route_token)
            path_params.reset(params_token)


def _flatten(args: Iterable[Any]) -> tuple[Middleware, ...]:
    """Flattens loose middleware and middleware lists one level, keeping order."""
    flat: list[Middleware] = []
    for arg in args:
        if isinstance(arg, (list, tuple)):
            flat.extend(arg)
        else:
            flat.append(arg)
    return tuple(flat)

