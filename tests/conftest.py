"""Shared test fixtures for the loadscript test suite."""

from __future__ import annotations

import asyncio
import socket
import threading
from typing import TYPE_CHECKING

import pytest
from aiohttp import web

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterator
    from pathlib import Path


# =============================================================================
# Pytest configuration
# =============================================================================


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Auto-apply markers based on test directory structure."""
    for item in items:
        test_path = str(item.fspath)
        if "/unit/" in test_path:
            item.add_marker(pytest.mark.unit)
        elif "/integration/" in test_path:
            item.add_marker(pytest.mark.integration)
        elif "/e2e/" in test_path:
            item.add_marker(pytest.mark.e2e)


# =============================================================================
# Network utilities
# =============================================================================


def _get_free_port() -> int:
    """Find an available port on localhost."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("", 0))
        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        return s.getsockname()[1]


# =============================================================================
# Test HTTP server handlers
# =============================================================================


async def _home_handler(request: web.Request) -> web.Response:
    """Home page."""
    return web.Response(text="<html><body>QuickPizza</body></html>", content_type="text/html")


async def _status_handler(request: web.Request) -> web.Response:
    """Return the status code given in the path, e.g. /status/404."""
    status = int(request.match_info["code"])
    return web.json_response({"status": status}, status=status)


async def _echo_handler(request: web.Request) -> web.Response:
    """Echo back request details as JSON."""
    body = await request.read()
    return web.json_response(
        {
            "method": request.method,
            "path": str(request.path),
            "query": dict(request.query),
            "headers": dict(request.headers),
            "cookies": dict(request.cookies),
            "body": body.decode("utf-8", errors="replace"),
        },
        status=200,
    )


async def _delay_handler(request: web.Request) -> web.Response:
    """Respond after a configurable delay (query param: ?delay=0.5)."""
    delay = float(request.query.get("delay", "0.1"))
    await asyncio.sleep(delay)
    return web.json_response({"delayed_by": delay})


async def _set_cookie_handler(request: web.Request) -> web.Response:
    """Set every query parameter as a cookie."""
    response = web.json_response({"set": dict(request.query)})
    for name, value in request.query.items():
        response.set_cookie(name, value)
    return response


async def _pizza_handler(request: web.Request) -> web.Response:
    """Recommend a pizza, but only with a token."""
    if not request.headers.get("Authorization", "").startswith("Token "):
        return web.json_response({"error": "unauthorized"}, status=401)
    await request.read()
    return web.json_response({"pizza": {"id": 24596, "name": "Margherita"}})


async def _ratings_handler(request: web.Request) -> web.Response:
    """Ratings always need a logged-in user, which tests never have."""
    await request.read()
    return web.json_response({"error": "unauthorized"}, status=401)


def _create_app() -> web.Application:
    """Build the test server app with all routes."""
    app = web.Application()
    app.router.add_get("/", _home_handler)
    app.router.add_route("*", "/status/{code:\\d+}", _status_handler)
    app.router.add_route("*", "/echo{path:.*}", _echo_handler)
    app.router.add_get("/delay", _delay_handler)
    app.router.add_get("/cookies/set", _set_cookie_handler)
    app.router.add_post("/api/pizza", _pizza_handler)
    app.router.add_post("/api/ratings", _ratings_handler)
    return app


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
async def echo_server() -> AsyncIterator[str]:
    """Aiohttp test server fixture.

    Returns the base URL (e.g., 'http://127.0.0.1:54321').
    """
    app = _create_app()
    port = _get_free_port()
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, "127.0.0.1", port)
    await site.start()
    yield f"http://127.0.0.1:{port}"
    await runner.cleanup()


@pytest.fixture
def closed_port_url() -> str:
    """Base URL of a port nothing listens on."""
    return f"http://127.0.0.1:{_get_free_port()}"


@pytest.fixture
def sync_echo_server() -> Iterator[str]:
    """Test server running in a background thread for sync tests.

    Useful for runner and CLI tests, where the code under test starts
    its own event loop and blocks the main thread.
    """
    port = _get_free_port()
    started = threading.Event()
    loop_holder: list[asyncio.AbstractEventLoop] = []

    def _thread_target() -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        runner = web.AppRunner(_create_app())
        loop.run_until_complete(runner.setup())
        site = web.TCPSite(runner, "127.0.0.1", port)
        loop.run_until_complete(site.start())
        loop_holder.append(loop)
        started.set()
        loop.run_forever()
        loop.run_until_complete(runner.cleanup())
        loop.close()

    thread = threading.Thread(target=_thread_target, daemon=True)
    thread.start()
    started.wait(timeout=5.0)

    yield f"http://127.0.0.1:{port}"

    if loop_holder:
        loop_holder[0].call_soon_threadsafe(loop_holder[0].stop)
    thread.join(timeout=5.0)


PIZZA_SCENARIO = '''\
from __future__ import annotations

from loadscript import group, request, scenario, sleep, status_equals

pizza = scenario(
    name="Pizza Test Scenario",
    base_url="{base_url}",
    steps=[
        group("Default group", [
            request("GET", "/", name="Home", checks={{
                "status equals 200": status_equals(200),
            }}),
            request(
                "POST",
                "/api/pizza",
                name="Create pizza",
                json={{"maxCaloriesPerSlice": 1000}},
                headers={{"authorization": "Token abcdef0123456789"}},
                checks={{"status equals 200": status_equals(200)}},
            ),
            request(
                "POST",
                "/api/ratings",
                name="Rate pizza",
                json={{"pizza_id": 24596, "stars": 5}},
                checks={{"status equals 401": status_equals(401)}},
            ),
        ]),
        sleep({pause}),
    ],
)
'''


@pytest.fixture
def scenario_file(tmp_path: Path, sync_echo_server: str) -> Path:
    """Three-request scenario file pointing at the sync test server."""
    path = tmp_path / "pizza_scenario.py"
    path.write_text(PIZZA_SCENARIO.format(base_url=sync_echo_server, pause=0.01))
    return path
