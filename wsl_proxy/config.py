"""
WSL Proxy - configuration.
Loads settings from environment variables (and an optional .env file) and
defines the immutable values the proxy is built from at startup.
"""
import ipaddress
import ssl
from functools import lru_cache
from pathlib import Path
from typing import Optional

import structlog
from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings

logger = structlog.get_logger(__name__)

DEFAULT_LISTEN_PORT = 8001
DEFAULT_TARGET_PORT = 8080
TLS_PORT_BASE = 8400

# key.pem / cert.pem live next to the installed package by default
DEFAULT_CERT_DIR = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    """Application settings loaded from WSL_PROXY_* environment variables."""

    # Listeners
    listen_port: int = DEFAULT_LISTEN_PORT
    https_port: Optional[int] = None
    target_port: int = DEFAULT_TARGET_PORT

    # Target discovery (target_host skips the discovery command entirely)
    target_host: str = ""
    discovery_command: str = "wsl hostname -I"
    discovery_timeout: float = 15.0

    # TLS material
    cert_dir: Path = DEFAULT_CERT_DIR
    key_file: str = "key.pem"
    cert_file: str = "cert.pem"

    # Forwarding
    change_origin: bool = False
    cors: bool = True
    connect_timeout: float = 10.0

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    class Config:
        env_prefix = "WSL_PROXY_"
        env_file = ".env"
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def default_tls_port(port: int) -> int:
    return TLS_PORT_BASE + port % 100


def is_ip_literal(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return False
    return True


class ProxyTarget(BaseModel):
    """The single backend all traffic is relayed to."""
    host: str = Field(..., min_length=1)
    port: int = Field(..., ge=1, le=65535)

    class Config:
        frozen = True

    @property
    def authority(self) -> str:
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"

    @property
    def url(self) -> str:
        return f"http://{self.authority}"

    @property
    def ws_url(self) -> str:
        return f"ws://{self.authority}"


class ListenSpec(BaseModel):
    """Ports the plaintext and (optional) TLS listeners bind to."""
    port: int = Field(..., ge=1, le=65535)
    tls_port: Optional[int] = Field(None, ge=1, le=65535)

    class Config:
        frozen = True

    @model_validator(mode="after")
    def _ports_differ(self):
        if self.tls_port is not None and self.tls_port == self.port:
            raise ValueError(f"TLS port {self.tls_port} must differ from the listen port")
        return self

    @classmethod
    def from_ports(cls, port: int, https_port: Optional[int] = None, tls_enabled: bool = True) -> "ListenSpec":
        if not tls_enabled:
            return cls(port=port, tls_port=None)
        tls_port = https_port if https_port is not None else default_tls_port(port)
        return cls(port=port, tls_port=tls_port)


class TLSMaterial(BaseModel):
    """PEM key/certificate pair used to terminate TLS at the proxy."""
    key_path: Path
    cert_path: Path

    class Config:
        frozen = True

    def ssl_context(self) -> ssl.SSLContext:
        ctx = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
        ctx.load_cert_chain(certfile=str(self.cert_path), keyfile=str(self.key_path))
        return ctx


def load_tls_material(cert_dir: Path, key_file: str = "key.pem", cert_file: str = "cert.pem") -> Optional[TLSMaterial]:
    """
    Read key.pem and cert.pem from cert_dir.
    Returns None when either file is missing or empty; the TLS listener is
    then simply not started.
    """
    key_path = Path(cert_dir) / key_file
    cert_path = Path(cert_dir) / cert_file
    if not key_path.is_file() or not cert_path.is_file():
        logger.info("tls_material_not_found", key=str(key_path), cert=str(cert_path),
                    detail="HTTPS listener disabled")
        return None

    if not key_path.read_bytes().strip() or not cert_path.read_bytes().strip():
        logger.info("tls_material_empty", key=str(key_path), cert=str(cert_path),
                    detail="HTTPS listener disabled")
        return None

    logger.info("tls_material_loaded", key=str(key_path), cert=str(cert_path))
    return TLSMaterial(key_path=key_path, cert_path=cert_path)
