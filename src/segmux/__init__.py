from importlib.metadata import version

from .app import RSGIApp
from .chain import Flow, Next
from .config import RouterConfig
from .request import Request
from .router import Outcome, RouteError, Router
from .tree import http_route, path_params

__all__ = [
    "Flow",
    "Next",
    "Outcome",
    "RSGIApp",
    "Request",
    "RouteError",
    "Router",
    "RouterConfig",
    "__version__",
    "http_route",
    "path_params",
]

__version__ = version("segmux")
