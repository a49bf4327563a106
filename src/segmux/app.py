"""RSGI application serving a Router, e.g. with granian.

    app = RSGIApp(router)
    app.use(otel())
    Server(app, interface="rsgi").serve()

The router's middleware and handlers are synchronous and run on the event
loop. They get the RSGI `scope`, `proto` and raw `body` in the request and
write the response themselves with `proto.response_*`.
"""

from __future__ import annotations

import json
import logging
from functools import reduce
from typing import TYPE_CHECKING, Any
from urllib.parse import parse_qsl

from segmux.router import Outcome
from segmux.tree import http_route, path_params

if TYPE_CHECKING:
    from segmux.router import Router
    from segmux.rsgi import HTTPProtocol, HTTPScope, RSGIHTTPHandler, Wrapper

logger = logging.getLogger(__name__)

_BODY_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
_FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"
_JSON_CONTENT_TYPE = "application/json"


class RSGIApp:
    __slots__ = ("_handler", "_router", "_wrappers")
    _router: Router
    _wrappers: tuple[Wrapper, ...]
    _handler: RSGIHTTPHandler

    def __init__(self, router: Router) -> None:
        self._router = router
        self._wrappers = ()
        self._handler = self._serve

    @property
    def router(self) -> Router:
        return self._router

    def use(self, *wrappers: Wrapper) -> None:
        """Wraps request handling with RSGI-level middleware (first added = outermost).

        Wrappers run after routing, so `path_params` and `http_route` are set,
        but before the router's own middleware chain.
        """
        self._wrappers = (*self._wrappers, *wrappers)
        self._handler = reduce(lambda h, w: w(h), reversed(self._wrappers), self._serve)

    def __rsgi_init__(self, loop: object) -> None:
        self._router.finalize()

    def __rsgi_del__(self, loop: object) -> None:
        pass

    async def __rsgi__(self, scope: HTTPScope, proto: HTTPProtocol) -> None:
        if scope.proto != "http":
            msg = f"unsupported RSGI protocol {scope.proto!r}, only http is served"
            raise ValueError(msg)
        path = self._router.strip_mount(scope.path)
        match = self._router.lookup(scope.method, path)
        params_token = path_params.set(match.params if match is not None else {})
        route_token = http_route.set(match.route if match is not None else "")
        try:
            await self._handler(scope, proto)
        finally:
            http_route.reset(route_token)
            path_params.reset(params_token)

    async def _serve(self, scope: HTTPScope, proto: HTTPProtocol) -> None:
        ambient: dict[str, Any] = dict(
            parse_qsl(scope.query_string, keep_blank_values=True)
        )
        body = b""
        if scope.method.upper() in _BODY_METHODS:
            body = await proto()
            ambient.update(_body_fields(scope, body))

        outcome = self._router.dispatch(
            scope.method, scope.path, ambient, scope=scope, proto=proto, body=body
        )
        if outcome is Outcome.NOT_FOUND and self._router.not_found_handler is None:
            proto.response_str(404, [("content-type", "text/plain")], "404 Not Found")


def _body_fields(scope: HTTPScope, body: bytes) -> dict[str, Any]:
    """Fields of a form-encoded or JSON object body, {} for anything else."""
    if not body:
        return {}
    content_type = scope.headers.get("content-type", "").split(";")[0].strip().lower()
    if content_type == _FORM_CONTENT_TYPE:
        text = body.decode("utf-8", errors="replace")
        return dict(parse_qsl(text, keep_blank_values=True))
    if content_type == _JSON_CONTENT_TYPE:
        try:
            payload = json.loads(body)
        except ValueError:
            logger.debug("request body is not valid json, not merging fields")
            return {}
        if isinstance(payload, dict):
            return payload
    return {}
