"""Project error hierarchy."""

from __future__ import annotations


class RelayGateError(Exception):
    """Base error."""


class ValidationError(RelayGateError):
    """Raised when the inbound chat request is malformed. Never reaches the network."""


class UpstreamSessionError(RelayGateError):
    """Raised when chat requirements cannot be fetched or parsed.

    ``kind`` is one of ``transport``, ``malformed_json``, ``missing_field``
    or ``unexpected_type``.
    """

    def __init__(self, message: str, kind: str = "transport") -> None:
        super().__init__(message)
        self.kind = kind


class UpstreamTransportError(RelayGateError):
    """Raised when the conversation SSE stream fails.

    ``kind`` is one of ``stream_ended``, ``invalid_status``,
    ``invalid_content_type`` or ``transport``.
    """

    def __init__(self, message: str, kind: str = "transport", status_code: int | None = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code


class RoutingError(RelayGateError):
    """Unknown route or failed authorization; handled by the gateway boundary."""

    def __init__(self, message: str, status_code: int = 404) -> None:
        super().__init__(message)
        self.status_code = status_code
