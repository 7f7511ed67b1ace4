"""
WSL Proxy - Target Resolver
Finds the current IP address of the WSL guest by running a discovery command
(`wsl hostname -I` by default) once at startup.
"""
import os
import shlex
import subprocess
from typing import List, Optional, Protocol, Sequence, Union

import structlog

from wsl_proxy.config import ProxyTarget

logger = structlog.get_logger(__name__)

DEFAULT_DISCOVERY_COMMAND = "wsl hostname -I"

# POSIX rules would eat the backslashes in C:\Windows\... paths
SHLEX_POSIX = os.name != "nt"


class DiscoveryFailure(RuntimeError):
    """The guest IP could not be discovered; the proxy has nothing to forward to."""


class TargetDiscovery(Protocol):
    def discover(self) -> str:
        """Return raw discovery output; the first token is the guest address."""
        ...


def split_command(command: str, posix: bool = SHLEX_POSIX) -> List[str]:
    return shlex.split(command, posix=posix)


class CommandDiscovery:
    """Runs an external command and returns its standard output."""

    def __init__(self, command: Union[str, Sequence[str]] = DEFAULT_DISCOVERY_COMMAND, timeout: Optional[float] = 15.0):
        self.command = split_command(command) if isinstance(command, str) else list(command)
        if not self.command:
            raise DiscoveryFailure("discovery command is empty")
        self.timeout = timeout

    def discover(self) -> str:
        display = " ".join(self.command)
        try:
            result = subprocess.run(
                self.command,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=self.timeout,
                check=True,
            )
        except FileNotFoundError as e:
            raise DiscoveryFailure(f"`{self.command[0]}` was not found on PATH") from e
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or "").replace("\x00", "").strip()
            raise DiscoveryFailure(f"`{display}` exited with status {e.returncode}: {stderr or 'no output'}") from e
        except subprocess.TimeoutExpired as e:
            raise DiscoveryFailure(f"`{display}` did not finish within {self.timeout}s") from e
        except OSError as e:
            raise DiscoveryFailure(f"`{display}` could not be executed: {e}") from e
        return result.stdout


class StaticDiscovery:
    """Always reports a fixed host; used when WSL_PROXY_TARGET_HOST is set."""

    def __init__(self, host: str):
        self.host = host

    def discover(self) -> str:
        return self.host


def resolve_target(discovery: TargetDiscovery, target_port: int) -> ProxyTarget:
    """
    Discover the guest address and pair it with target_port.
    Raises DiscoveryFailure when discovery fails or yields no address.
    Reachability is not checked here.
    """
    output = discovery.discover() or ""
    tokens = output.replace("\x00", "").split()
    if not tokens:
        raise DiscoveryFailure("discovery succeeded but returned no IP address")

    host = tokens[0].strip()
    logger.info("target_discovered", host=host, port=target_port, candidates=len(tokens))
    return ProxyTarget(host=host, port=target_port)
