"""
WSL Proxy - Interface Selector
Picks the host IPv4 address LAN clients should use to reach the proxy.
Virtual adapters (Hyper-V / WSL switches, container bridges, VPNs) and
addresses inside the WSL guest range are never offered.
"""
import ipaddress
import re
import socket
from typing import Iterable, List, NamedTuple, Optional, Tuple

import psutil
import structlog

logger = structlog.get_logger(__name__)

LOOPBACK_FALLBACK = "127.0.0.1"

# WSL / Docker Desktop hand out guest addresses from this block
GUEST_SUBNET = ipaddress.IPv4Network("172.16.0.0/12")

PRIORITY_PHYSICAL = 1
PRIORITY_OTHER = 2

# Checked top-to-bottom before any priority is assigned.
VIRTUAL_ADAPTER_PATTERNS = tuple(re.compile(p, re.IGNORECASE) for p in (
    r"vEthernet",
    r"WSL",
    r"Hyper-V",
    r"VirtualBox",
    r"VMware",
    r"^vmnet",
    r"^vboxnet",
    r"^virbr",
    r"docker",
    r"^br-",
    r"^veth",
    r"^cni",
    r"^flannel",
    r"^(tun|tap|utun)\d*",
    r"^wg\d*",
    r"Tailscale",
    r"ZeroTier",
    r"VPN",
    r"Loopback",
    r"^lo\d*$",
))

PHYSICAL_ADAPTER_PATTERNS = tuple(re.compile(p, re.IGNORECASE) for p in (
    r"^Ethernet",
    r"^Wi-?Fi",
    r"^WLAN",
    r"Wireless",
    r"^以太网",
    r"^无线局域网",
    r"^eth\d",
    r"^en",
    r"^wl",
))


class NetworkInterfaceCandidate(NamedTuple):
    name: str
    address: str
    priority: int


def is_virtual_adapter(name: str) -> bool:
    return any(pattern.search(name) for pattern in VIRTUAL_ADAPTER_PATTERNS)


def adapter_priority(name: str) -> int:
    if any(pattern.search(name) for pattern in PHYSICAL_ADAPTER_PATTERNS):
        return PRIORITY_PHYSICAL
    return PRIORITY_OTHER


def _parse_ipv4(address: str) -> Optional[ipaddress.IPv4Address]:
    try:
        return ipaddress.IPv4Address(address.strip())
    except (ipaddress.AddressValueError, AttributeError):
        return None


def is_reachable_from_lan(address: ipaddress.IPv4Address) -> bool:
    if address.is_loopback or address.is_unspecified or address.is_link_local:
        return False
    return address not in GUEST_SUBNET


def list_host_interfaces() -> List[Tuple[str, str]]:
    """(name, IPv4 address) pairs for every interface that is up, in OS order."""
    stats = psutil.net_if_stats()
    results = []
    for name, addrs in psutil.net_if_addrs().items():
        iface_stats = stats.get(name)
        if iface_stats is not None and not iface_stats.isup:
            continue
        for addr in addrs:
            if addr.family == socket.AF_INET:
                results.append((name, addr.address))
    return results


def build_candidates(interfaces: Iterable[Tuple[str, str]]) -> List[NetworkInterfaceCandidate]:
    candidates = []
    for name, address in interfaces:
        if is_virtual_adapter(name):
            logger.debug("interface_skipped", interface=name, address=address, reason="virtual adapter")
            continue
        ip = _parse_ipv4(address)
        if ip is None:
            logger.debug("interface_skipped", interface=name, address=address, reason="not IPv4")
            continue
        if not is_reachable_from_lan(ip):
            logger.debug("interface_skipped", interface=name, address=address, reason="not LAN reachable")
            continue
        candidates.append(NetworkInterfaceCandidate(name, str(ip), adapter_priority(name)))
    # sorted() is stable: equal priorities keep enumeration order
    return sorted(candidates, key=lambda c: c.priority)


def select_best_address(interfaces: Optional[Iterable[Tuple[str, str]]] = None) -> str:
    """
    Return the best externally reachable IPv4 address of this host.
    Never raises; falls back to 127.0.0.1 when nothing qualifies.
    """
    if interfaces is None:
        try:
            interfaces = list_host_interfaces()
        except OSError as e:
            logger.warning("interface_enumeration_failed", error=str(e))
            interfaces = []

    candidates = build_candidates(interfaces)
    if not candidates:
        logger.info("external_interface_selected", interface=None, address=LOOPBACK_FALLBACK,
                    detail="no LAN-reachable interface found")
        return LOOPBACK_FALLBACK

    best = candidates[0]
    logger.info("external_interface_selected", interface=best.name, address=best.address,
                preferred=best.priority == PRIORITY_PHYSICAL)
    return best.address
