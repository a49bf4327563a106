"""Sequential middleware chain with explicit continue/stop semantics."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from enum import Enum
from typing import TYPE_CHECKING, TypeAlias

if TYPE_CHECKING:
    from segmux.request import Request


class Flow(Enum):
    """Explicit middleware result. Overrides whether `next()` was called."""

    PROCEED = "proceed"
    HALT = "halt"

    def __repr__(self) -> str:
        return str(self.value)


class Next:
    """Continuation passed to each middleware call.

    Only records that it was called; calling it again changes nothing.
    """

    __slots__ = ("called",)

    def __init__(self) -> None:
        self.called = False

    def __call__(self) -> None:
        self.called = True


Middleware: TypeAlias = "Callable[[Request, Next], Flow | None]"


def run_chain(middleware: Iterable[Middleware], request: Request) -> bool:
    """Run middleware in order, returning False as soon as one halts.

    A middleware proceeds when it returns `Flow.PROCEED`, or returns None after
    calling `next()`. It halts when it returns `Flow.HALT`, returns None without
    calling `next()`, or stops the request, whatever else it did.
    """
    for mw in middleware:
        nxt = Next()
        flow = mw(request, nxt)
        if request.stopped:
            return False
        if flow is Flow.HALT:
            return False
        if flow is None and not nxt.called:
            return False
    return True
