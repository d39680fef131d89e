class ServiceError(Exception):
    """Base exception for service layer failures."""

    def __init__(self, message: str, *, cause: Exception | None = None):
        super().__init__(message)
        self.cause = cause


class DownstreamServiceError(ServiceError):
    """Raised when an external service (LLM, media host) returns an error."""

    def __init__(self, message: str, status_code: int | None = None, *, cause: Exception | None = None):
        super().__init__(message, cause=cause)
        self.status_code = status_code


class ParseFailure(ServiceError):
    """The parser or extractor produced nothing usable."""


class ExtractionFailure(ServiceError):
    """A transcript did not contain any billable items."""


class TranscriptionError(DownstreamServiceError):
    """A voice note could not be downloaded or transcribed."""


class PersistenceFailure(ServiceError):
    """A store write failed; no state transition took place."""


class RegenerationFailure(ServiceError):
    """The quote document could not be rendered or stored."""


class SessionNotFound(ServiceError):
    """No active review session exists for the request."""


class ContractorNotFound(ServiceError):
    """The sender is not a registered contractor."""


class QuoteNotFound(ServiceError):
    """The requested quote does not exist."""


class InvalidTransition(ServiceError):
    """The requested action is not allowed from the session's current state."""


class VersionConflict(ServiceError):
    """A write was attempted against a stale quote version."""

    def __init__(self, quote_id: str, expected: int, actual: int):
        super().__init__(
            f"Quote {quote_id} is at version {actual}, expected {expected}"
        )
        self.quote_id = quote_id
        self.expected = expected
        self.actual = actual
