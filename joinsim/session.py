"""Session token acquisition through the BBB HTTP join API.

A simulated user needs a session token before it can open the real-time
connection. The token is handed out by the join API: requesting a join URL
with ``redirect=true`` walks a redirect chain whose final URL carries the
token as a query parameter.

Join URLs are either supplied as-is (external-URL mode) or built here from
the shared secret (self-signed mode), in which case the query string is
canonicalized and signed with a SHA-1 checksum.
"""

from __future__ import annotations

import enum
import hashlib
import logging
import random
from dataclasses import dataclass, field, replace
from typing import Callable, Optional
from urllib.parse import quote

import httpx

from joinsim.errors import (
    HandshakeError,
    handshake_status,
    missing_session_token,
)

logger = logging.getLogger("joinsim.session")

JOIN_CALL = "join"
JOIN_PATH = "/bigbluebutton/api/join"
SESSION_TOKEN_PARAM = "sessionToken"

# Characters encodeURIComponent leaves alone, beyond quote()'s own safe set
_URI_COMPONENT_SAFE = "-_.!~*'()"

_FIRST_NAMES = [
    "Ada", "Alan", "Amara", "Bruno", "Chen", "Dalia", "Elena", "Farid",
    "Grace", "Hugo", "Ines", "Jonas", "Kenji", "Lena", "Mateo", "Nadia",
    "Omar", "Priya", "Quinn", "Rosa", "Sven", "Tara", "Uma", "Viktor",
    "Wen", "Ximena", "Yusuf", "Zoe",
]
_LAST_NAMES = [
    "Almeida", "Becker", "Castillo", "Dubois", "Eriksen", "Fischer",
    "Garcia", "Haddad", "Ivanova", "Jensen", "Kowalski", "Larsen",
    "Moreau", "Nakamura", "Okafor", "Petrov", "Quispe", "Rossi",
    "Silva", "Tanaka", "Ueda", "Varga", "Weber", "Yilmaz", "Zhang",
]


def generate_random_name(rng: Optional[random.Random] = None) -> str:
    """Generate a human-readable full name for a simulated participant."""
    rng = rng or random
    return f"{rng.choice(_FIRST_NAMES)} {rng.choice(_LAST_NAMES)}"


class JoinMode(enum.Enum):
    """How the join URL for a request is obtained."""
    EXTERNAL_URL = "external_url"
    SELF_SIGNED = "self_signed"


@dataclass(frozen=True)
class JoinRequest:
    """Everything needed to join one simulated user.

    A request with a ``secret`` is self-signed; otherwise ``join_url`` must
    hold an already-valid join URL.
    """
    host: str = ""
    meeting_id: str = ""
    display_name: str = ""
    password: str = ""
    secret: Optional[str] = field(default=None, repr=False)
    extra_attributes: tuple[tuple[str, str], ...] = ()
    join_url: Optional[str] = None

    @classmethod
    def from_url(cls, join_url: str) -> "JoinRequest":
        return cls(join_url=join_url)

    @classmethod
    def self_signed(
        cls,
        host: str,
        meeting_id: str,
        password: str,
        secret: str,
        extra_attributes: Optional[dict[str, str]] = None,
        display_name: str = "",
    ) -> "JoinRequest":
        return cls(
            host=host,
            meeting_id=meeting_id,
            display_name=display_name,
            password=password,
            secret=secret,
            extra_attributes=tuple((extra_attributes or {}).items()),
        )

    @property
    def mode(self) -> JoinMode:
        if self.secret is not None:
            return JoinMode.SELF_SIGNED
        return JoinMode.EXTERNAL_URL


@dataclass(frozen=True)
class Session:
    """Outcome of a successful handshake."""
    token: str = field(repr=False)
    join_url: str = field(repr=False)
    display_name: str = ""


def parse_user_data(userdata: Optional[str]) -> dict[str, str]:
    """Parse ``"key1=value1,key2=value2"`` into a dict.

    Pairs without both a key and a value are skipped.
    """
    attributes: dict[str, str] = {}
    if not userdata:
        return attributes
    for pair in userdata.split(","):
        parts = pair.split("=")
        key = parts[0].strip()
        value = parts[1].strip() if len(parts) > 1 else ""
        if key and value:
            attributes[key] = value
    return attributes


def encode_value(value: str) -> str:
    """URL-encode a query value, spaces as '+'."""
    return quote(value, safe=_URI_COMPONENT_SAFE).replace("%20", "+")


def build_query(params: dict[str, str]) -> str:
    """Build the canonical query string: keys sorted, values encoded."""
    return "&".join(f"{key}={encode_value(params[key])}" for key in sorted(params))


def calculate_checksum(call_name: str, query_string: str, secret: str) -> str:
    """SHA-1 hex digest of call name + query string + shared secret."""
    data = f"{call_name}{query_string}{secret}"
    return hashlib.sha1(data.encode("utf-8")).hexdigest()


def generate_join_url(
    host: str,
    meeting_id: str,
    full_name: str,
    password: str,
    secret: str,
    extra_attributes: Optional[dict[str, str]] = None,
) -> str:
    """Build a signed join URL.

    Extra attributes are added as individual query parameters and override
    the fixed ones on key collision.
    """
    params = {
        "fullName": full_name,
        "meetingID": meeting_id,
        "password": password,
        "redirect": "true",
    }
    params.update(extra_attributes or {})

    query_string = build_query(params)
    checksum = calculate_checksum(JOIN_CALL, query_string, secret)
    return f"{host.rstrip('/')}{JOIN_PATH}?{query_string}&checksum={checksum}"


class SessionAcquirer:
    """Performs the HTTP join handshake for one request at a time.

    The underlying httpx client is shared by all pipelines; it is created
    lazily unless one is injected.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        name_generator: Callable[[], str] = generate_random_name,
        verify=True,
        timeout: Optional[float] = None,
    ):
        self._client = client
        self._owns_client = client is None
        self._name_generator = name_generator
        self._verify = verify
        self._timeout = timeout

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._timeout,
                verify=self._verify,
                headers={"User-Agent": "joinsim/1.0"},
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def prepare(self, request: JoinRequest) -> JoinRequest:
        """Fill in a generated display name when none was supplied."""
        if request.display_name:
            return request
        return replace(request, display_name=self._name_generator())

    def join_url_for(self, request: JoinRequest) -> str:
        if request.mode is JoinMode.SELF_SIGNED:
            return generate_join_url(
                request.host,
                request.meeting_id,
                request.display_name,
                request.password,
                request.secret,
                dict(request.extra_attributes),
            )
        if not request.join_url:
            raise HandshakeError("No join URL supplied for external-URL join")
        return request.join_url

    async def acquire(self, request: JoinRequest, user_index: Optional[int] = None) -> Session:
        """Run the handshake for a request and return its session.

        Raises:
            HandshakeError: If the request fails, returns a non-success
                status, or the final URL carries no session token
        """
        request = self.prepare(request)
        join_url = self.join_url_for(request)
        token = await self.fetch_session_token(join_url, user_index=user_index)
        return Session(token=token, join_url=join_url, display_name=request.display_name)

    async def fetch_session_token(self, join_url: str, user_index: Optional[int] = None) -> str:
        """GET join_url following redirects; read the token off the final URL."""
        try:
            response = await self.client.get(join_url, follow_redirects=True)
        except httpx.HTTPError as e:
            raise HandshakeError(
                f"Join request failed: {type(e).__name__}: {e}",
                user_index=user_index,
            ) from e

        if not response.is_success:
            logger.warning("handshake_status user=%s status=%d", user_index, response.status_code)
            raise handshake_status(response.status_code, user_index=user_index)

        final_url = response.url
        token = final_url.params.get(SESSION_TOKEN_PARAM)
        if not token:
            raise missing_session_token(str(final_url), user_index=user_index)

        logger.info("session_token_obtained user=%s redirects=%d", user_index, len(response.history))
        logger.debug("session_token user=%s token=%s", user_index, token)
        return token
