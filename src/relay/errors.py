"""Error taxonomy for the translation relay.

Session-level errors are raised by the registry, session actors and the
lifecycle controller and converted into ``error`` wire messages at the
protocol boundary. Chunk-level errors (decode, adapter) are isolated inside
the pipeline and only ever reported, never propagated across sessions.
"""


class RelayError(Exception):
    """Base exception for all relay errors.

    Attributes:
        code: Stable machine-readable error code sent to clients
    """

    code: str = "RELAY_ERROR"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class SessionNotFound(RelayError):
    """Raised when a session code does not resolve to a known session."""

    code = "SESSION_NOT_FOUND"


class SessionEnded(RelayError):
    """Raised for any chunk, join or control operation on an ended session."""

    code = "SESSION_ENDED"


class SessionNotActive(RelayError):
    """Raised when audio is submitted while the session is not active."""

    code = "SESSION_NOT_ACTIVE"


class AuthenticationFailed(RelayError):
    """Raised on a missing or wrong session password or reclaim token."""

    code = "AUTHENTICATION_FAILED"


class NotBroadcaster(RelayError):
    """Raised when a broadcaster-only command comes from another connection."""

    code = "NOT_BROADCASTER"


class InvalidStateTransition(RelayError):
    """Raised when a command would move a session along an undefined edge."""

    code = "INVALID_STATE_TRANSITION"


class CapacityExceeded(RelayError):
    """Raised when too many sessions or subscribers are requested."""

    code = "CAPACITY_EXCEEDED"


class AudioDecodeError(RelayError):
    """Raised when an inbound chunk is not a valid self-contained container."""

    code = "AUDIO_DECODE_ERROR"


class InvalidMessage(RelayError):
    """Raised when a client message is malformed or of an unknown type."""

    code = "INVALID_MESSAGE"


class AdapterFailure(RelayError):
    """Failure of an external collaborator call.

    Instances are normally carried as values inside ``AdapterResult`` rather
    than raised, so one failing language never aborts the rest of a chunk.

    Attributes:
        stage: Pipeline stage (transcription, translation, synthesis)
        timed_out: Whether the failure was a deadline expiry
    """

    code = "ADAPTER_FAILURE"

    def __init__(self, stage: str, message: str | None = None, timed_out: bool = False) -> None:
        super().__init__(message or f"{stage} failed")
        self.stage = stage
        self.timed_out = timed_out
