from __future__ import annotations

from enum import Enum


class ChatBridgeError(Exception):
    """Base class for failures the HTTP layer turns into a response."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ChatBridgeError):
    """Missing or invalid request fields. Raised before any bytes are streamed."""

    status_code = 400


class UnauthorizedError(ChatBridgeError):
    status_code = 401


class NotFoundError(ChatBridgeError):
    """Conversation or message is absent, or owned by someone else."""

    status_code = 404


class ConflictError(ChatBridgeError):
    """A record with the same identifier already exists."""

    status_code = 409


class PersistenceError(ChatBridgeError):
    """A store write failed after the provider stream completed."""

    status_code = 500


class ProviderErrorKind(str, Enum):
    AUTHENTICATION = "authentication"
    RATE_LIMIT = "rate_limit"
    BAD_REQUEST = "bad_request"
    NETWORK = "network"
    UNKNOWN = "unknown"


class ProviderError(ChatBridgeError):
    """
    Upstream LLM failure in the common taxonomy.

    Never propagated past the stream boundary: the orchestrator turns it into
    an error envelope.
    """

    status_code = 502

    def __init__(self, kind: ProviderErrorKind, message: str):
        super().__init__(message)
        self.kind = kind
