"""reqchain errors - exception taxonomy."""


class ReqchainError(Exception):
    """Base class for all reqchain errors."""


class FormatError(ReqchainError):
    """Malformed script or unusable URL. Raised before any network call."""


class TransportError(ReqchainError):
    """Network or transport failure while executing a request."""


class PipelineError(ReqchainError):
    """A middleware stage misused its continuation."""


class JsonPathError(ValueError):
    """Malformed JSON path selector."""


class ReleaseError(ReqchainError):
    """Failure closing a retained response. Logged, never raised to callers."""
