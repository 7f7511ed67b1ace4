"""
WSL Proxy - entry point.
Runs on the Windows HOST, discovers the WSL guest IP and forwards
HTTP / WebSocket / HTTPS traffic from 0.0.0.0:<port> to <guest-ip>:<target>.
"""
import argparse
import asyncio
import functools
import signal
import sys
from typing import Optional, Sequence

import structlog
from pydantic import ValidationError

from wsl_proxy.config import ListenSpec, Settings, get_settings, load_tls_material
from wsl_proxy.core.discovery import CommandDiscovery, DiscoveryFailure, StaticDiscovery, resolve_target
from wsl_proxy.observability.log_setup import configure_logging
from wsl_proxy.services.forwarding import ProxyOptions, create_app, create_proxy
from wsl_proxy.services.listeners import ListenerBindError, ListenerSupervisor

logger = structlog.get_logger(__name__)

DISCOVERY_HINT = "Is WSL installed and running? Check `wsl --status` and start your distro, then retry."


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="wsl-proxy",
        description="Forward HTTP, WebSocket and HTTPS traffic from this host to a service inside WSL.",
    )
    # Ports are parsed leniently by coerce_port so bad values fall back to defaults.
    parser.add_argument("-p", "--port", default=None, help="plaintext listen port (default 8001)")
    parser.add_argument("-sp", "--https-port", dest="https_port", default=None,
                        help="TLS listen port (default 8400 + port %% 100)")
    parser.add_argument("-t", "--target", default=None, help="port of the service inside WSL (default 8080)")
    parser.add_argument("--change-origin", action="store_true", default=None,
                        help="rewrite the Host header to the WSL target")
    parser.add_argument("--no-cors", action="store_false", dest="cors", default=None,
                        help="do not add CORS headers or answer preflights")
    parser.add_argument("-d", "--debug", action="store_true", default=False)
    return parser


def coerce_port(value, default: Optional[int], name: str) -> Optional[int]:
    if value is None:
        return default
    try:
        port = int(str(value).strip())
    except ValueError:
        port = 0
    if not 0 < port < 65536:
        logger.warning("invalid_port_argument", option=name, value=value, using=default)
        return default
    return port


def parse_args(argv: Optional[Sequence[str]] = None, settings: Optional[Settings] = None) -> argparse.Namespace:
    settings = settings or get_settings()
    args = build_parser().parse_args(argv)
    args.port = coerce_port(args.port, settings.listen_port, "--port")
    args.https_port = coerce_port(args.https_port, settings.https_port, "--https-port")
    args.target = coerce_port(args.target, settings.target_port, "--target")
    if args.change_origin is None:
        args.change_origin = settings.change_origin
    if args.cors is None:
        args.cors = settings.cors
    return args


def build_discovery(settings: Settings):
    if settings.target_host:
        return StaticDiscovery(settings.target_host)
    return CommandDiscovery(settings.discovery_command, timeout=settings.discovery_timeout)


async def serve(supervisor: ListenerSupervisor, stop_event: Optional[asyncio.Event] = None) -> None:
    """Start the listeners and keep them up until a shutdown signal arrives."""
    stop_event = stop_event or asyncio.Event()

    def handle_signal(sig: int) -> None:
        logger.info("shutdown_signal_received", signal=sig)
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, functools.partial(handle_signal, sig))
        except (NotImplementedError, RuntimeError):
            # Windows event loops: Ctrl+C arrives as KeyboardInterrupt instead
            pass

    await supervisor.start()
    try:
        await stop_event.wait()
    finally:
        logger.info("shutting_down")
        await supervisor.stop()


def main(argv: Optional[Sequence[str]] = None) -> int:
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_json)
    args = parse_args(argv, settings)
    if args.debug:
        configure_logging("DEBUG", settings.log_json)

    tls_material = load_tls_material(settings.cert_dir, settings.key_file, settings.cert_file)

    try:
        listen_spec = ListenSpec.from_ports(args.port, args.https_port, tls_enabled=tls_material is not None)
    except ValidationError as e:
        logger.error("invalid_listen_ports", port=args.port, https_port=args.https_port,
                     error=e.errors()[0].get("msg"))
        return 1

    try:
        target = resolve_target(build_discovery(settings), args.target)
    except DiscoveryFailure as e:
        logger.error("target_discovery_failed", error=str(e), hint=DISCOVERY_HINT)
        return 1

    engine = create_proxy(target, ProxyOptions(
        change_origin=args.change_origin,
        connect_timeout=settings.connect_timeout,
    ))
    supervisor = ListenerSupervisor(
        listen_spec,
        create_app(engine, cors=args.cors),
        tls_material=tls_material,
        target=target,
    )

    try:
        asyncio.run(serve(supervisor))
    except ListenerBindError as e:
        logger.error("listener_bind_failed", error=str(e))
        return 1
    except KeyboardInterrupt:
        logger.info("interrupted")
    return 0


if __name__ == "__main__":
    sys.exit(main())
