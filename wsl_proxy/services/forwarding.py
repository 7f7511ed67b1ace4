"""
WSL Proxy - Forwarding Engine
Relays every request that reaches a listener to the WSL guest.
Plain HTTP goes through httpx with request and response bodies streamed;
WebSocket upgrades are relayed frame by frame through an aiohttp client session.
"""
import asyncio
from typing import Optional

import aiohttp
import httpx
import structlog
from aiohttp import WSMsgType, hdrs, web
from multidict import CIMultiDict
from pydantic import BaseModel, Field

from wsl_proxy.config import ProxyTarget, is_ip_literal
from wsl_proxy.services.cors import setup_cors

logger = structlog.get_logger(__name__)

HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
})

# aiohttp's ws_connect negotiates these itself
WEBSOCKET_HANDSHAKE_HEADERS = frozenset({
    "sec-websocket-key",
    "sec-websocket-version",
    "sec-websocket-extensions",
    "sec-websocket-protocol",
    "sec-websocket-accept",
})

UPSTREAM_KEEPALIVE = 20


class ProxyOptions(BaseModel):
    """Per-engine forwarding behaviour."""
    change_origin: bool = Field(False, description="Rewrite Host to the target instead of preserving it")
    connect_timeout: float = Field(10.0, gt=0)
    verify_tls: Optional[bool] = Field(None, description="None: verify only when the target is a hostname")
    chunk_size: int = Field(64 * 1024, gt=0)

    class Config:
        frozen = True


def is_websocket_upgrade(request: web.Request) -> bool:
    return (
        request.method == hdrs.METH_GET
        and request.headers.get(hdrs.UPGRADE, "").lower() == "websocket"
    )


class ForwardingEngine:
    """aiohttp handler forwarding to a single ProxyTarget."""

    def __init__(self, target: ProxyTarget, options: Optional[ProxyOptions] = None):
        self.target = target
        self.options = options or ProxyOptions()
        if self.options.verify_tls is None:
            # guest targets addressed by IP have self-signed or no certificates
            self.verify_tls = not is_ip_literal(target.host)
        else:
            self.verify_tls = self.options.verify_tls
        self._client: Optional[httpx.AsyncClient] = None
        self._session: Optional[aiohttp.ClientSession] = None

    async def client_context(self, app: web.Application):
        """cleanup_ctx hook owning the upstream connection pools."""
        await self.open()
        yield
        await self.close()

    async def open(self):
        if self._client is None:
            # no connection cap: relays pin their upstream connection until closed
            transport = httpx.AsyncHTTPTransport(
                http2=False,
                retries=0,
                verify=self.verify_tls,
                limits=httpx.Limits(max_connections=None, max_keepalive_connections=UPSTREAM_KEEPALIVE),
            )
            self._client = httpx.AsyncClient(transport=transport, follow_redirects=False, trust_env=False)
        if self._session is None:
            self._session = aiohttp.ClientSession(
                connector=aiohttp.TCPConnector(limit=0),
                timeout=aiohttp.ClientTimeout(total=None, sock_connect=self.options.connect_timeout),
                auto_decompress=False,
                trust_env=False,
            )
        logger.debug("forwarding_engine_ready", target=self.target.url, verify_tls=self.verify_tls)

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def handle(self, request: web.Request) -> web.StreamResponse:
        if self._client is None or self._session is None:
            await self.open()
        if is_websocket_upgrade(request):
            return await self._relay_websocket(request)
        return await self._forward_http(request)

    def upstream_headers(self, request: web.Request, drop: frozenset = frozenset()) -> CIMultiDict:
        headers = CIMultiDict()
        for name, value in request.headers.items():
            lowered = name.lower()
            if lowered in HOP_BY_HOP_HEADERS or lowered in drop:
                continue
            if lowered == "host" and self.options.change_origin:
                continue
            headers.add(name, value)
        return headers

    @staticmethod
    def downstream_headers(upstream: httpx.Headers) -> CIMultiDict:
        headers = CIMultiDict()
        for name, value in upstream.multi_items():
            if name.lower() not in HOP_BY_HOP_HEADERS:
                headers.add(name, value)
        return headers

    def _bad_gateway(self, request: web.Request, error: BaseException) -> web.Response:
        logger.warning("upstream_unreachable", method=request.method, path=request.raw_path,
                       target=self.target.url, error=repr(error))
        return web.Response(status=502, text=f"Bad Gateway: {self.target.authority} is unreachable ({error!r})\n")

    async def _forward_http(self, request: web.Request) -> web.StreamResponse:
        url = self.target.url + request.raw_path
        headers = self.upstream_headers(request)
        content = request.content.iter_chunked(self.options.chunk_size) if request.body_exists else None

        # Built directly rather than via client.build_request so no default
        # client headers (User-Agent, Accept-Encoding...) get injected.
        upstream_request = httpx.Request(
            request.method,
            url,
            headers=list(headers.items()),
            content=content,
            extensions={"timeout": httpx.Timeout(None, connect=self.options.connect_timeout).as_dict()},
        )
        try:
            upstream = await self._client.send(upstream_request, stream=True)
        except httpx.TransportError as e:
            return self._bad_gateway(request, e)

        try:
            response = web.StreamResponse(
                status=upstream.status_code,
                reason=upstream.reason_phrase or None,
                headers=self.downstream_headers(upstream.headers),
            )
            await response.prepare(request)
            async for chunk in upstream.aiter_raw():
                await response.write(chunk)
            await response.write_eof()
            return response
        except httpx.TransportError as e:
            # headers already went out; dropping the connection is all that's left
            logger.warning("upstream_stream_aborted", method=request.method, path=request.raw_path, error=repr(e))
            raise
        finally:
            await upstream.aclose()

    async def _relay_websocket(self, request: web.Request) -> web.StreamResponse:
        url = self.target.ws_url + request.raw_path
        protocols = [p.strip() for p in request.headers.get(hdrs.SEC_WEBSOCKET_PROTOCOL, "").split(",") if p.strip()]
        headers = self.upstream_headers(request, drop=WEBSOCKET_HANDSHAKE_HEADERS)

        try:
            upstream = await self._session.ws_connect(
                url,
                headers=headers,
                protocols=protocols,
                autoping=False,
                max_msg_size=0,
                ssl=self.verify_tls,
            )
        except aiohttp.WSServerHandshakeError as e:
            logger.warning("upstream_websocket_rejected", path=request.raw_path, status=e.status)
            status = e.status if e.status and e.status >= 400 else 502
            return web.Response(status=status, text=f"Upstream rejected WebSocket upgrade: {e.message}\n")
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            return self._bad_gateway(request, e)

        downstream = web.WebSocketResponse(
            protocols=[upstream.protocol] if upstream.protocol else (),
            autoping=False,
            max_msg_size=0,
        )
        close_code = None
        close_reason = ""
        try:
            await downstream.prepare(request)
            logger.debug("websocket_relay_opened", path=request.raw_path, protocol=upstream.protocol)

            pumps = [
                asyncio.ensure_future(_pump(downstream, upstream)),
                asyncio.ensure_future(_pump(upstream, downstream)),
            ]
            try:
                done, _ = await asyncio.wait(pumps, return_when=asyncio.FIRST_COMPLETED)
                # read before cancelling: a cancelled receive() marks its socket 1006
                close_code = downstream.close_code or upstream.close_code
                close_reason = next((t.result() for t in done if not t.exception() and t.result()), "")
            finally:
                for task in pumps:
                    task.cancel()
                await asyncio.gather(*pumps, return_exceptions=True)
        finally:
            # mirror whichever side closed first onto the other
            code = _relayable_close_code(close_code)
            message = close_reason.encode("utf-8") if code == close_code else b""
            await upstream.close(code=code, message=message)
            if downstream.prepared:
                await downstream.close(code=code, message=message)
            logger.debug("websocket_relay_closed", path=request.raw_path, code=code, reason=close_reason)
        return downstream


def _relayable_close_code(code: Optional[int]) -> int:
    # 1005/1006 are reserved for local reporting and must not go on the wire
    if code is None or code in (1005, 1006):
        return aiohttp.WSCloseCode.OK
    return code


async def _pump(source, sink) -> str:
    """Copy frames from one WebSocket to the other until source closes; returns the close reason."""
    while True:
        msg = await source.receive()
        if msg.type == WSMsgType.TEXT:
            await sink.send_str(msg.data)
        elif msg.type == WSMsgType.BINARY:
            await sink.send_bytes(msg.data)
        elif msg.type == WSMsgType.PING:
            await sink.ping(msg.data)
        elif msg.type == WSMsgType.PONG:
            await sink.pong(msg.data)
        elif msg.type == WSMsgType.CLOSE:
            return msg.extra or ""
        elif msg.type == WSMsgType.ERROR:
            logger.debug("websocket_relay_error", error=repr(source.exception()))
            return ""
        else:
            # CLOSING / CLOSED
            return ""


def create_proxy(target: ProxyTarget, options: Optional[ProxyOptions] = None) -> ForwardingEngine:
    return ForwardingEngine(target, options)


def create_app(engine: ForwardingEngine, cors: bool = True) -> web.Application:
    """Create the aiohttp application every listener serves."""
    app = web.Application()
    app.cleanup_ctx.append(engine.client_context)
    app.router.add_route("*", "/{path_info:.*}", engine.handle)
    if cors:
        setup_cors(app)
    return app
