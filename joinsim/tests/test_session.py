"""Tests for join URL signing and session token acquisition."""

import hashlib
import random

import httpx
import pytest

from joinsim.errors import ErrorCodes, HandshakeError
from joinsim.session import (
    JOIN_PATH,
    JoinMode,
    JoinRequest,
    SessionAcquirer,
    build_query,
    calculate_checksum,
    encode_value,
    generate_join_url,
    generate_random_name,
    parse_user_data,
)

FINAL_URL = "https://bbb.example.com/html5client/join?sessionToken=tok-123"


def redirecting_handler(final_url=FINAL_URL, seen=None):
    """MockTransport handler: join request redirects to final_url."""
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request.url)
        if request.url.path == JOIN_PATH:
            return httpx.Response(302, headers={"Location": final_url})
        return httpx.Response(200, text="<html></html>")
    return handler


def make_acquirer(handler) -> SessionAcquirer:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return SessionAcquirer(client=client, name_generator=lambda: "Test User")


class TestBuildQuery:
    """Tests for canonical query string construction."""

    def test_keys_sorted_and_spaces_as_plus(self):
        """Keys appear in lexicographic order; spaces encode as '+'."""
        params = {
            "redirect": "true",
            "meetingID": "room 1",
            "password": "pw",
            "fullName": "Ada Lovelace",
        }
        assert build_query(params) == "fullName=Ada+Lovelace&meetingID=room+1&password=pw&redirect=true"

    def test_deterministic(self):
        """Same map, same string, regardless of insertion order."""
        a = {"b": "2", "a": "1", "c": "x y"}
        b = {"c": "x y", "a": "1", "b": "2"}
        assert build_query(a) == build_query(b) == build_query(a)

    def test_uppercase_keys_sort_before_lowercase(self):
        """Sorting is plain lexicographic (code point) order."""
        assert build_query({"a": "1", "Z": "2"}) == "Z=2&a=1"

    def test_reserved_characters_encoded(self):
        """Query delimiters are percent-encoded."""
        assert encode_value("a&b=c") == "a%26b%3Dc"
        assert encode_value("50%") == "50%25"

    def test_uri_component_safe_characters_kept(self):
        """Characters encodeURIComponent leaves alone are not encoded."""
        assert encode_value("it's (ok)!*~") == "it's+(ok)!*~"

    def test_non_ascii_encoded_as_utf8(self):
        """Non-ASCII characters are UTF-8 percent-encoded."""
        assert encode_value("José") == "Jos%C3%A9"


class TestChecksum:
    """Tests for the join checksum."""

    def test_matches_sha1_of_concatenation(self):
        """Checksum is SHA-1 over call name + query + secret."""
        expected = hashlib.sha1(b"joinfullName=A&meetingID=mSECRET").hexdigest()
        assert calculate_checksum("join", "fullName=A&meetingID=m", "SECRET") == expected

    def test_is_40_lowercase_hex(self):
        """Digest is 40 lowercase hex characters."""
        digest = calculate_checksum("join", "a=1", "s")
        assert len(digest) == 40
        assert digest == digest.lower()
        int(digest, 16)

    def test_sensitive_to_every_input(self):
        """Changing any input changes the digest."""
        base = calculate_checksum("join", "a=1", "s")
        assert calculate_checksum("create", "a=1", "s") != base
        assert calculate_checksum("join", "a=2", "s") != base
        assert calculate_checksum("join", "a=1", "t") != base
        assert calculate_checksum("join", "a=1", "s") == base


class TestGenerateJoinUrl:
    """Tests for self-signed join URL generation."""

    def test_url_shape(self):
        """URL is host + join path + sorted query + checksum."""
        url = generate_join_url("https://bbb.example.com", "room1", "Ada Lovelace", "pw", "SECRET")
        query = "fullName=Ada+Lovelace&meetingID=room1&password=pw&redirect=true"
        checksum = calculate_checksum("join", query, "SECRET")
        assert url == f"https://bbb.example.com{JOIN_PATH}?{query}&checksum={checksum}"

    def test_trailing_slash_on_host(self):
        """A trailing slash on the host does not double up."""
        url = generate_join_url("https://bbb.example.com/", "m", "A", "pw", "s")
        assert url.startswith(f"https://bbb.example.com{JOIN_PATH}?")

    def test_extra_attributes_flattened_into_query(self):
        """Extra attributes become individual, sorted parameters."""
        url = generate_join_url(
            "https://h", "m", "A", "pw", "s",
            extra_attributes={"userdata-group": "qa", "avatarURL": "x"},
        )
        query = url.split("?", 1)[1].rsplit("&checksum=", 1)[0]
        assert query == "avatarURL=x&fullName=A&meetingID=m&password=pw&redirect=true&userdata-group=qa"

    def test_secret_not_in_url(self):
        """The shared secret never appears in the URL."""
        url = generate_join_url("https://h", "m", "A", "pw", "topsecret")
        assert "topsecret" not in url


class TestParseUserData:
    """Tests for --userdata parsing."""

    def test_pairs(self):
        """Comma-separated key=value pairs, trimmed."""
        assert parse_user_data("role=tester, group = qa") == {"role": "tester", "group": "qa"}

    def test_incomplete_pairs_skipped(self):
        """Pairs missing a key or value are ignored."""
        assert parse_user_data("a=1,=2,b=,c,d=4") == {"a": "1", "d": "4"}

    def test_empty(self):
        """None and empty strings give no attributes."""
        assert parse_user_data(None) == {}
        assert parse_user_data("") == {}


class TestJoinRequest:
    """Tests for JoinRequest modes."""

    def test_modes(self):
        """A secret makes the request self-signed."""
        assert JoinRequest.from_url("https://h/j").mode is JoinMode.EXTERNAL_URL
        signed = JoinRequest.self_signed("https://h", "m", "pw", "s", {"k": "v"})
        assert signed.mode is JoinMode.SELF_SIGNED
        assert signed.extra_attributes == (("k", "v"),)

    def test_secret_hidden_from_repr(self):
        """The secret does not leak through repr."""
        signed = JoinRequest.self_signed("https://h", "m", "pw", "hunter2")
        assert "hunter2" not in repr(signed)

    def test_random_names(self):
        """Generated names are 'First Last' and seedable."""
        name = generate_random_name(random.Random(7))
        assert len(name.split(" ")) == 2
        assert generate_random_name(random.Random(7)) == name


class TestSessionAcquirer:
    """Tests for the HTTP join handshake."""

    @pytest.mark.asyncio
    async def test_external_url_follows_redirects(self):
        """Session token is read from the final redirected URL."""
        acquirer = make_acquirer(redirecting_handler())
        join_url = f"https://bbb.example.com{JOIN_PATH}?meetingID=m&checksum=abc"

        session = await acquirer.acquire(JoinRequest.from_url(join_url), user_index=0)

        assert session.token == "tok-123"
        assert session.join_url == join_url
        assert session.display_name == "Test User"
        await acquirer.client.aclose()

    @pytest.mark.asyncio
    async def test_self_signed_request_is_signed(self):
        """Self-signed mode sends a checksum over the canonical query."""
        seen = []
        acquirer = make_acquirer(redirecting_handler(seen=seen))
        request = JoinRequest.self_signed("https://bbb.example.com", "room1", "pw", "SECRET")

        session = await acquirer.acquire(request)

        first = seen[0]
        assert first.path == JOIN_PATH
        assert first.params["fullName"] == "Test User"
        assert first.params["redirect"] == "true"
        query = "fullName=Test+User&meetingID=room1&password=pw&redirect=true"
        assert first.params["checksum"] == calculate_checksum("join", query, "SECRET")
        assert session.token == "tok-123"
        await acquirer.client.aclose()

    @pytest.mark.asyncio
    async def test_supplied_display_name_kept(self):
        """The name generator only runs when no display name was given."""
        seen = []
        acquirer = make_acquirer(redirecting_handler(seen=seen))
        request = JoinRequest.self_signed("https://h", "m", "pw", "s", display_name="Grace Hopper")

        session = await acquirer.acquire(request)

        assert session.display_name == "Grace Hopper"
        assert seen[0].params["fullName"] == "Grace Hopper"
        await acquirer.client.aclose()

    @pytest.mark.asyncio
    async def test_non_success_status(self):
        """A non-2xx final response is a HandshakeError."""
        acquirer = make_acquirer(lambda request: httpx.Response(404))

        with pytest.raises(HandshakeError) as exc_info:
            await acquirer.acquire(JoinRequest.from_url("https://h/j"), user_index=2)

        assert exc_info.value.code == ErrorCodes.HANDSHAKE_FAILED
        assert "404" in exc_info.value.message
        assert exc_info.value.user_index == 2
        await acquirer.client.aclose()

    @pytest.mark.asyncio
    async def test_missing_token(self):
        """A final URL without sessionToken is a HandshakeError."""
        acquirer = make_acquirer(redirecting_handler(final_url="https://h/html5client/join?other=1"))

        with pytest.raises(HandshakeError) as exc_info:
            await acquirer.acquire(JoinRequest.from_url(f"https://h{JOIN_PATH}?a=1"))

        assert exc_info.value.code == ErrorCodes.NO_SESSION_TOKEN
        assert "no session token" in exc_info.value.message.lower()
        await acquirer.client.aclose()

    @pytest.mark.asyncio
    async def test_network_error_wrapped(self):
        """Transport failures surface as HandshakeError."""
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        acquirer = make_acquirer(handler)

        with pytest.raises(HandshakeError) as exc_info:
            await acquirer.acquire(JoinRequest.from_url("https://h/j"))

        assert isinstance(exc_info.value.__cause__, httpx.ConnectError)
        await acquirer.client.aclose()

    @pytest.mark.asyncio
    async def test_external_mode_without_url(self):
        """An external-URL request without a URL cannot be joined."""
        acquirer = make_acquirer(redirecting_handler())

        with pytest.raises(HandshakeError):
            await acquirer.acquire(JoinRequest())
        await acquirer.client.aclose()

    @pytest.mark.asyncio
    async def test_aclose_only_closes_owned_client(self):
        """An injected client is left to its owner."""
        client = httpx.AsyncClient(transport=httpx.MockTransport(redirecting_handler()))
        acquirer = SessionAcquirer(client=client)

        await acquirer.aclose()

        assert not client.is_closed
        await client.aclose()
