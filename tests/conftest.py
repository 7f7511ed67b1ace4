import asyncio
import socket
from pathlib import Path

import pytest
from aiohttp import WSMsgType, web
from aiohttp.test_utils import TestClient, TestServer

from wsl_proxy.config import ProxyTarget
from wsl_proxy.services.forwarding import create_app, create_proxy

DATA_DIR = Path(__file__).parent / "data"

RECEIVED_FRAMES = web.AppKey("received_frames", list)
REQUEST_COUNT = web.AppKey("request_count", list)
WS_CLOSED = web.AppKey("ws_closed", asyncio.Queue)
STREAM_EVENTS = web.AppKey("stream_events", asyncio.Queue)


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


async def echo(request: web.Request) -> web.Response:
    request.app[REQUEST_COUNT].append(request.raw_path)
    body = await request.read()
    return web.json_response({
        "method": request.method,
        "raw_path": request.raw_path,
        "host": request.headers.get("Host"),
        "headers": {k.lower(): v for k, v in request.headers.items()},
        "body_length": len(body),
        "body_head": body[:16].decode("latin-1"),
    })


async def stream(request: web.Request) -> web.StreamResponse:
    response = web.StreamResponse(status=201, reason="Made It", headers={"X-Upstream": "guest"})
    response.content_type = "text/plain"
    await response.prepare(request)
    for part in (b"first,", b"second,", b"third"):
        await response.write(part)
    await response.write_eof()
    return response


async def websocket_echo(request: web.Request) -> web.WebSocketResponse:
    ws = web.WebSocketResponse(protocols=("chat",))
    await ws.prepare(request)
    await ws.send_str("welcome")
    while True:
        msg = await ws.receive()
        if msg.type == WSMsgType.TEXT:
            request.app[RECEIVED_FRAMES].append(msg.data)
            if msg.data == "bye":
                await ws.close(code=4000, message=b"guest says bye")
                break
            await ws.send_str(msg.data)
        elif msg.type == WSMsgType.BINARY:
            request.app[RECEIVED_FRAMES].append(msg.data)
            await ws.send_bytes(msg.data)
        else:
            break
    reason = msg.extra if msg.type == WSMsgType.CLOSE else None
    request.app[WS_CLOSED].put_nowait((ws.close_code, reason))
    return ws


async def idle_stream(request: web.Request) -> web.StreamResponse:
    response = web.StreamResponse()
    response.content_type = "text/event-stream"
    await response.prepare(request)
    await response.write(b"started")
    try:
        await asyncio.sleep(3600)
    finally:
        request.app[STREAM_EVENTS].put_nowait("disconnected")
    return response


async def forbidden(request: web.Request) -> web.Response:
    return web.Response(status=403, text="no sockets here")


def make_upstream_app() -> web.Application:
    app = web.Application()
    app[RECEIVED_FRAMES] = []
    app[REQUEST_COUNT] = []
    app[WS_CLOSED] = asyncio.Queue()
    app[STREAM_EVENTS] = asyncio.Queue()
    app.router.add_get("/ws", websocket_echo)
    app.router.add_get("/forbidden-ws", forbidden)
    app.router.add_get("/stream", stream)
    app.router.add_get("/idle-stream", idle_stream)
    app.router.add_route("*", "/{tail:.*}", echo)
    return app


@pytest.fixture
async def upstream():
    server = TestServer(make_upstream_app())
    await server.start_server()
    yield server
    await server.close()


@pytest.fixture
def upstream_target(upstream) -> ProxyTarget:
    return ProxyTarget(host="127.0.0.1", port=upstream.port)


@pytest.fixture
async def make_proxy_client(upstream_target):
    clients = []

    async def factory(options=None, cors=True, target=None):
        engine = create_proxy(target or upstream_target, options)
        client = TestClient(TestServer(create_app(engine, cors=cors)))
        await client.start_server()
        clients.append(client)
        return client

    yield factory
    for client in clients:
        await client.close()


@pytest.fixture
async def proxy_client(make_proxy_client):
    return await make_proxy_client()
