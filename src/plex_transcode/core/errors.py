"""Exception hierarchy for transcode negotiation and download queue calls.

Every remote operation raises one of these; nothing is retried internally.
"""
from __future__ import annotations

from typing import Optional


class PlexTranscodeError(Exception):
    """Base class for all errors raised by this package."""


class TransportError(PlexTranscodeError):
    """Raised when the HTTP request itself fails (connection, timeout, protocol)."""


class UnexpectedApiResponseError(PlexTranscodeError):
    """Raised when the server answers with a status/body combination we do not expect.

    Notes
    -----
    - ``content`` holds the raw response body for diagnosis.
    """

    def __init__(self, status_code: int, content: str) -> None:
        super().__init__(f"Unexpected API response (HTTP {status_code}): {content[:200]}")
        self.status_code: int = status_code
        self.content: str = content


class DecodeError(PlexTranscodeError):
    """Raised when a response body is not valid JSON/XML or does not match the schema."""


class ItemNotFoundError(PlexTranscodeError):
    """Raised when a session or queue item is unknown to the server (often expired)."""


class TranscodeRefusedError(PlexTranscodeError):
    """Raised when the server declines to transcode the requested content."""


class TranscodeIncompleteError(PlexTranscodeError):
    """Raised when a rendition is requested before the server finished producing it.

    Notes
    -----
    - This is the recoverable case: wait (keep polling) and try again.
    """


class TranscodeError(PlexTranscodeError):
    """Raised when negotiation produced no usable result; carries the server's reason."""


class InvalidTranscodeSettingsError(PlexTranscodeError):
    """Raised when the requested context/protocol combination cannot be negotiated."""


class SubscriptionFeatureNotAvailableError(PlexTranscodeError):
    """Raised when the account lacks the subscription feature the call requires."""

    def __init__(self, feature: str) -> None:
        super().__init__(f"Subscription feature not available: {feature}")
        self.feature: str = feature


class UnknownContainerFormatError(PlexTranscodeError):
    """Raised when the server names a container format we do not know."""

    def __init__(self, extension: str) -> None:
        super().__init__(f"Unknown container format: {extension}")
        self.extension: str = extension


class InvalidHeaderValueError(PlexTranscodeError):
    """Raised when a required response header is missing or cannot be parsed."""

    def __init__(self, header: str, value: Optional[str] = None) -> None:
        super().__init__(f"Invalid {header} header value: {value!r}")
        self.header: str = header
        self.value: Optional[str] = value
