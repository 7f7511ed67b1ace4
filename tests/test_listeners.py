import asyncio
import socket

import aiohttp
import httpx
import pytest

from tests.conftest import DATA_DIR, STREAM_EVENTS, WS_CLOSED, free_port
from wsl_proxy.config import ListenSpec, TLSMaterial, load_tls_material
from wsl_proxy.services.forwarding import create_app, create_proxy
from wsl_proxy.services.listeners import ListenerBindError, ListenerSupervisor


def make_supervisor(spec, target, tls_material=None):
    return ListenerSupervisor(
        spec,
        create_app(create_proxy(target)),
        tls_material=tls_material,
        target=target,
        external_address=lambda: "192.168.1.20",
    )


async def test_plaintext_only_when_tls_material_missing(upstream_target):
    spec = ListenSpec(port=free_port(), tls_port=free_port())
    supervisor = make_supervisor(spec, upstream_target)
    await supervisor.start()
    try:
        assert supervisor.urls == [f"http://192.168.1.20:{spec.port}"]
        async with httpx.AsyncClient(trust_env=False) as client:
            resp = await client.get(f"http://127.0.0.1:{spec.port}/echo/plain?x=1")
            assert resp.status_code == 200
            assert resp.json()["raw_path"] == "/echo/plain?x=1"
            with pytest.raises(httpx.ConnectError):
                await client.get(f"http://127.0.0.1:{spec.tls_port}/")
    finally:
        await supervisor.stop()


async def test_tls_listener_terminates_and_forwards(upstream_target):
    tls = load_tls_material(DATA_DIR)
    assert tls is not None
    spec = ListenSpec(port=free_port(), tls_port=free_port())
    supervisor = make_supervisor(spec, upstream_target, tls)
    await supervisor.start()
    try:
        assert supervisor.urls == [
            f"http://192.168.1.20:{spec.port}",
            f"https://192.168.1.20:{spec.tls_port}",
        ]
        async with httpx.AsyncClient(verify=False, trust_env=False) as client:
            secure = await client.get(f"https://127.0.0.1:{spec.tls_port}/echo/secure?token=abc")
            plain = await client.get(f"http://127.0.0.1:{spec.port}/echo/plain")
        assert secure.status_code == 200
        assert secure.json()["raw_path"] == "/echo/secure?token=abc"
        assert plain.status_code == 200
    finally:
        await supervisor.stop()


async def test_port_in_use_is_fatal(upstream_target):
    blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    blocker.bind(("0.0.0.0", 0))
    blocker.listen(1)
    port = blocker.getsockname()[1]
    try:
        supervisor = make_supervisor(ListenSpec(port=port, tls_port=None), upstream_target)
        with pytest.raises(ListenerBindError):
            await supervisor.start()
        assert supervisor.urls == []
    finally:
        blocker.close()


async def test_invalid_tls_material_is_fatal(tmp_path, upstream_target):
    key = tmp_path / "key.pem"
    cert = tmp_path / "cert.pem"
    key.write_text("not a key")
    cert.write_text("not a certificate")
    tls = TLSMaterial(key_path=key, cert_path=cert)
    supervisor = make_supervisor(ListenSpec(port=free_port(), tls_port=free_port()), upstream_target, tls)
    with pytest.raises(ListenerBindError):
        await supervisor.start()


async def test_client_disconnect_closes_upstream_stream(upstream, upstream_target):
    spec = ListenSpec(port=free_port(), tls_port=None)
    supervisor = make_supervisor(spec, upstream_target)
    await supervisor.start()
    try:
        async with httpx.AsyncClient(trust_env=False) as client:
            async with client.stream("GET", f"http://127.0.0.1:{spec.port}/idle-stream") as resp:
                assert resp.status_code == 200
                async for chunk in resp.aiter_raw():
                    assert chunk == b"started"
                    break
        event = await asyncio.wait_for(upstream.app[STREAM_EVENTS].get(), timeout=5)
        assert event == "disconnected"
    finally:
        await supervisor.stop()


async def test_client_websocket_close_closes_upstream(upstream, upstream_target):
    spec = ListenSpec(port=free_port(), tls_port=None)
    supervisor = make_supervisor(spec, upstream_target)
    await supervisor.start()
    try:
        async with aiohttp.ClientSession() as session:
            ws = await session.ws_connect(f"http://127.0.0.1:{spec.port}/ws")
            assert (await ws.receive()).data == "welcome"
            await ws.close(code=4001, message=b"tab closed")
        closed = await asyncio.wait_for(upstream.app[WS_CLOSED].get(), timeout=5)
        assert closed == (4001, "tab closed")
    finally:
        await supervisor.stop()
