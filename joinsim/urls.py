"""Join URL validation and real-time endpoint derivation."""

from typing import Optional
from urllib.parse import urlsplit

REALTIME_SCHEME = "wss"
REALTIME_PATH = "/graphql"


def is_valid_http_url(value: str) -> bool:
    """Return True if value parses as an absolute http(s) URL with a host."""
    if not isinstance(value, str):
        return False
    value = value.strip()
    try:
        parsed = urlsplit(value)
        # Accessing .port validates it
        parsed.port
    except ValueError:
        return False
    if parsed.scheme not in ("http", "https"):
        return False
    return bool(parsed.hostname)


def derive_realtime_endpoint(join_url: str) -> Optional[str]:
    """Build the wss://<host>/graphql endpoint for a join URL.

    Only the hostname is carried over; port, path and query of the join URL
    are dropped.

    Returns:
        The endpoint URL, or None if join_url is not a valid http(s) URL
    """
    if not is_valid_http_url(join_url):
        return None

    hostname = urlsplit(join_url.strip()).hostname
    if ":" in hostname:
        hostname = f"[{hostname}]"
    return f"{REALTIME_SCHEME}://{hostname}{REALTIME_PATH}"
