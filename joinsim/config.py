"""Environment-driven settings for the join simulator.

Variables:
    JOINSIM_LOG_LEVEL     logging level name (default INFO)
    JOINSIM_HOST          default BBB host for custom joins
    JOINSIM_MEETING_ID    default meeting ID for custom joins
    JOINSIM_CA_CERT       PEM CA bundle for HTTPS and WSS verification
    JOINSIM_HTTP_TIMEOUT  join request timeout in seconds (unset: no timeout)
"""

from __future__ import annotations

import os
import ssl
from dataclasses import dataclass


def get_ssl_context(ca_cert: str | None = None) -> ssl.SSLContext | None:
    """Get SSL context with custom CA cert if configured.

    Returns None if no custom CA cert is set (uses default verification).
    """
    ca_cert = ca_cert or os.environ.get("JOINSIM_CA_CERT")
    if ca_cert:
        return ssl.create_default_context(cafile=ca_cert)
    return None


@dataclass(frozen=True)
class Settings:
    """Runtime settings read once at startup."""
    log_level: str = "INFO"
    host: str = ""
    meeting_id: str = ""
    ca_cert: str = ""
    http_timeout: float | None = None

    @classmethod
    def from_env(cls) -> "Settings":
        timeout = os.environ.get("JOINSIM_HTTP_TIMEOUT", "").strip()
        return cls(
            log_level=os.environ.get("JOINSIM_LOG_LEVEL", "INFO").upper(),
            host=os.environ.get("JOINSIM_HOST", ""),
            meeting_id=os.environ.get("JOINSIM_MEETING_ID", ""),
            ca_cert=os.environ.get("JOINSIM_CA_CERT", ""),
            http_timeout=float(timeout) if timeout else None,
        )

    def ssl_context(self) -> ssl.SSLContext | None:
        return get_ssl_context(self.ca_cert or None)
