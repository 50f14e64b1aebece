"""Error taxonomy for the transport bridge.

Only :class:`BridgeConnectionError` and :class:`UpstreamError` ever reach the
caller, as a terminal ``error`` chunk.  The rest are absorbed by the loop:

  ProtocolError        - malformed frame, logged and dropped
  AnchorNotFoundError  - stale continuation id, triggers full-context resend
  ToolExecutionError   - handler failure, becomes ``"Error: ..."`` tool output
"""

from __future__ import annotations

# Error code the service uses for an unknown ``previous_response_id``
ANCHOR_NOT_FOUND_CODE = "previous_response_not_found"


class BridgeError(Exception):
    """Base class for all bridge errors."""


class BridgeConnectionError(BridgeError):
    """Transport unreachable, handshake failed or connection lost."""


class TransportClosedError(BridgeConnectionError):
    """The connection closed while a response was still awaited."""


class FrameTimeoutError(BridgeConnectionError):
    """No inbound frame arrived within the configured bound."""


class ProtocolError(BridgeError):
    """A frame could not be decoded or is missing required fields."""


class AnchorNotFoundError(BridgeError):
    """The referenced prior response is no longer usable.

    Either the service reported it unknown or the connection it was
    produced on has been replaced.  *reason* says which.
    """

    def __init__(
        self,
        anchor_id: str | None,
        message: str = "",
        reason: str = "not found by service",
    ) -> None:
        super().__init__(message or f"Previous response not found: {anchor_id}")
        self.anchor_id = anchor_id
        self.reason = reason


class ToolExecutionError(BridgeError):
    """A tool handler reported failure."""


class UpstreamError(BridgeError):
    """The service reported an error for the current request."""

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


def is_anchor_not_found(error: dict) -> bool:
    """Classify a service error object as a stale-anchor report."""
    if not error:
        return False
    if error.get("code") == ANCHOR_NOT_FOUND_CODE:
        return True
    message = str(error.get("message") or "").lower()
    return "previous response" in message and "not found" in message
