"""
WSL Proxy - Listener Supervisor
Binds the forwarding application on 0.0.0.0: a plaintext site always, and a
TLS-terminating site when a key/certificate pair was found.
"""
import ssl
from typing import Callable, List, Optional

import structlog
from aiohttp import web

from wsl_proxy.config import ListenSpec, ProxyTarget, TLSMaterial
from wsl_proxy.core.interfaces import select_best_address

logger = structlog.get_logger(__name__)

LISTEN_HOST = "0.0.0.0"


class ListenerBindError(RuntimeError):
    """A listener socket could not be bound; the proxy must not run half-started."""


class ListenerSupervisor:
    def __init__(
        self,
        listen_spec: ListenSpec,
        app: web.Application,
        tls_material: Optional[TLSMaterial] = None,
        target: Optional[ProxyTarget] = None,
        external_address: Callable[[], str] = select_best_address,
        host: str = LISTEN_HOST,
    ):
        self.listen_spec = listen_spec
        self.app = app
        self.tls_material = tls_material
        self.target = target
        self.external_address = external_address
        self.host = host
        self.urls: List[str] = []
        self._runner: Optional[web.AppRunner] = None

    @property
    def tls_enabled(self) -> bool:
        return self.tls_material is not None and self.listen_spec.tls_port is not None

    async def start(self):
        sites = [("http", self.listen_spec.port, None)]
        if self.tls_enabled:
            try:
                ctx = self.tls_material.ssl_context()
            except (ssl.SSLError, OSError) as e:
                raise ListenerBindError(f"TLS key/certificate could not be loaded: {e}") from e
            sites.append(("https", self.listen_spec.tls_port, ctx))
        else:
            logger.info("https_listener_disabled", reason="no TLS key/certificate")

        # client disconnects cancel their handler, which closes the upstream side
        self._runner = web.AppRunner(self.app, handler_cancellation=True)
        await self._runner.setup()
        for scheme, port, ctx in sites:
            site = web.TCPSite(self._runner, self.host, port, ssl_context=ctx)
            try:
                await site.start()
            except OSError as e:
                await self.stop()
                raise ListenerBindError(f"Could not listen on {self.host}:{port} ({scheme}): {e.strerror or e}") from e

        address = self.external_address()
        self.urls = []
        for scheme, port, _ in sites:
            url = f"{scheme}://{address}:{port}"
            self.urls.append(url)
            logger.info("listener_started", url=url, bind=f"{self.host}:{port}",
                        forwarding_to=self.target.url if self.target else None)

    async def stop(self):
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
