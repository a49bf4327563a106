# /// script
# requires-python = ">=3.12"
# dependencies = [
#     "segmux[otel] @ file:///${PROJECT_ROOT}/..",
#     "granian[uvloop]>=2.6.0,<3.0.0",
# ]
# ///
"""RSGI server demo.

Fully functional web server using Granian + segmux Router. Serve it under a
prefix with SEGMUX_MOUNT_PATH=/pexpress.

    curl localhost:8000/users/42
    curl localhost:8000/admin/dashboard                 # 401
    curl 'localhost:8000/admin/dashboard?user=ada'      # 200
    curl -X POST -d name=ada localhost:8000/users
"""

import asyncio
import json
import logging

from granian.server.embed import Server

from segmux import Next, Request, RouterConfig, RSGIApp, Router
from segmux.middleware.otel import otel

ADDRESS = "127.0.0.1"
PORT = 8000

logger = logging.getLogger("segmux.examples.server")

_users: dict[str, dict[str, str]] = {"1": {"id": "1", "name": "grace"}}


async def main() -> None:
    logging.basicConfig(level=logging.INFO)

    router = Router.from_config(RouterConfig.from_env(), not_found=not_found)
    router.use(log_request)
    router.get("/", home)
    router.get("/users/:id", get_user)
    router.post("/users", create_user)
    router.get("/admin/dashboard", require_user, dashboard)
    print(router.format())

    app = RSGIApp(router)
    app.use(otel())

    server = Server(app, address=ADDRESS, port=PORT, log_access=True)
    try:
        await server.serve()
    except asyncio.CancelledError:
        pass


def text(request: Request, status: int, body: str) -> None:
    request["proto"].response_str(status, [("Content-Type", "text/plain")], body)


def send_json(request: Request, status: int, payload: object) -> None:
    request["proto"].response_str(
        status, [("Content-Type", "application/json")], json.dumps(payload)
    )


# middleware
def log_request(request: Request, nxt: Next) -> None:
    logger.info("Request: %s %s", request.method, request.path)
    nxt()


def require_user(request: Request, nxt: Next) -> None:
    if "user" not in request:
        text(request, 401, "Unauthorized")
        request.stop()
        return
    nxt()


# handlers
def not_found(request: Request) -> None:
    text(request, 404, "404 Not Found")


def home(request: Request) -> None:
    text(request, 200, "Welcome home")


def get_user(request: Request) -> None:
    user = _users.get(request.params["id"])
    if user is None:
        text(request, 404, "Not found")
        return
    send_json(request, 200, user)


def create_user(request: Request) -> None:
    name = request.get("name")
    if not name:
        text(request, 422, "Missing name")
        return
    user_id = str(len(_users) + 1)
    _users[user_id] = {"id": user_id, "name": name}
    send_json(request, 201, _users[user_id])


def dashboard(request: Request) -> None:
    text(request, 200, f"Admin Dashboard for {request['user']}")


if __name__ == "__main__":
    asyncio.run(main())
