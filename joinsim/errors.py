"""Structured error codes and exceptions for the join simulator."""

from typing import Optional


# Error codes
class ErrorCodes:
    """Join simulator error codes."""
    INVALID_JOIN_URL = "INVALID_JOIN_URL"
    INVALID_COUNT = "INVALID_COUNT"
    MISSING_PARAMETER = "MISSING_PARAMETER"
    HANDSHAKE_FAILED = "HANDSHAKE_FAILED"
    NO_SESSION_TOKEN = "NO_SESSION_TOKEN"
    TRANSPORT_FAILED = "TRANSPORT_FAILED"
    JOIN_FAILED = "JOIN_FAILED"


class SimulationError(Exception):
    """Base error carrying a code, a message and an optional suggestion."""

    code = "SIMULATION_ERROR"

    def __init__(
        self,
        message: str,
        suggestion: Optional[str] = None,
        code: Optional[str] = None,
        user_index: Optional[int] = None,
    ):
        self.message = message
        self.suggestion = suggestion
        self.user_index = user_index
        if code:
            self.code = code
        super().__init__(message)

    def to_dict(self) -> dict:
        """Convert to dictionary for structured reporting."""
        result = {
            "error": self.message,
            "code": self.code,
        }
        if self.suggestion:
            result["suggestion"] = self.suggestion
        if self.user_index is not None:
            result["user"] = self.user_index + 1
        return result


class ValidationError(SimulationError):
    """Raised before any pipeline starts when arguments are unusable."""


class HandshakeError(SimulationError):
    """Raised when the HTTP join handshake does not yield a session token."""

    code = ErrorCodes.HANDSHAKE_FAILED


class TransportError(SimulationError):
    """Raised when the real-time connection fails or cannot be built."""

    code = ErrorCodes.TRANSPORT_FAILED


class JoinConfirmationError(SimulationError):
    """Raised when the join mutation fails after an auth token arrived."""

    code = ErrorCodes.JOIN_FAILED


def invalid_join_url(url: str) -> ValidationError:
    """Create error for a join URL that is not absolute HTTP/HTTPS."""
    shown = url if len(url) <= 60 else f"{url[:60]}..."
    return ValidationError(
        f"Invalid join URL: '{shown}'.",
        suggestion="Must be a valid HTTP/HTTPS URL. Quote URLs containing '&'.",
        code=ErrorCodes.INVALID_JOIN_URL,
    )


def invalid_count(value) -> ValidationError:
    """Create error for a participant count that is not a positive integer."""
    return ValidationError(
        f"Invalid number of users: {value!r}.",
        suggestion="It must be a positive integer.",
        code=ErrorCodes.INVALID_COUNT,
    )


def missing_parameter(name: str, hint: str = "") -> ValidationError:
    """Create error for a required parameter that was not supplied."""
    return ValidationError(
        f"Missing required parameter: {name}.",
        suggestion=hint or f"Provide --{name}.",
        code=ErrorCodes.MISSING_PARAMETER,
    )


def handshake_status(status_code: int, user_index: Optional[int] = None) -> HandshakeError:
    """Create error for a join request answered with a non-success status."""
    return HandshakeError(
        f"Join request failed with status {status_code}",
        suggestion="Check the join URL, meeting ID, password and checksum secret.",
        user_index=user_index,
    )


def missing_session_token(final_url: str, user_index: Optional[int] = None) -> HandshakeError:
    """Create error for a redirect chain that ended without a session token."""
    # Only the path is echoed, the query may carry credentials
    path = final_url.split("?", 1)[0]
    return HandshakeError(
        f"No session token found in final URL after redirect ({path})",
        code=ErrorCodes.NO_SESSION_TOKEN,
        suggestion="The meeting may not be running, or the join was rejected.",
        user_index=user_index,
    )


def join_failed(reason: str, user_index: Optional[int] = None) -> JoinConfirmationError:
    """Create error for a failed join-confirmation mutation."""
    return JoinConfirmationError(
        f"Join mutation failed: {reason}",
        user_index=user_index,
    )
