from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass, field
from typing import Literal

from segmux.rsgi import HTTPScope


@dataclass
class MockHTTPScope:
    proto: Literal["http"] = "http"
    http_version: Literal["1", "1.1", "2"] = "1.1"
    rsgi_version: str = "1.0"
    server: str = "localhost"
    client: str = "127.0.0.1"
    scheme: str = "http"
    method: str = "GET"
    path: str = "/"
    query_string: str = ""
    headers: Mapping[str, str] = field(default_factory=dict)
    authority: str | None = None


class MockHTTPProtocol:
    """Serves a fixed request body and captures the `response_str` reply."""

    def __init__(self, body: bytes = b"") -> None:
        self.body = body
        self.reads = 0
        self.response_status: int | None = None
        self.response_headers: list[tuple[str, str]] | None = None
        self.response_body: bytes | None = None

    async def __call__(self) -> bytes:
        self.reads += 1
        return self.body

    async def __aiter__(self) -> AsyncIterator[bytes]:
        self.reads += 1
        if self.body:
            yield self.body

    def response_str(
        self, status: int, headers: list[tuple[str, str]], body: str
    ) -> None:
        self.response_status = status
        self.response_headers = headers
        self.response_body = body.encode("utf-8")


def mock_scope(
    path: str = "/",
    method: str = "GET",
    headers: dict[str, str] | None = None,
    query_string: str = "",
) -> HTTPScope:
    return MockHTTPScope(
        path=path, method=method, headers=headers or {}, query_string=query_string
    )
