# zkgate/errors.py


class GatewayError(Exception):
    """Base error for everything the gateway reports to a caller."""

    code = "UNKNOWN_ERROR"
    retryable = False

    def __init__(self, message: str = "", details: dict = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details or {}


class ConfigurationError(GatewayError):
    """Bad session-creation input or an invalid deployment setting."""

    code = "ConfigurationError"


class MalformedRequest(GatewayError):
    """Missing or ill-typed fields in a proof submission."""

    code = "MALFORMED_REQUEST"


class UpstreamFetchError(GatewayError):
    """The profile-enrichment service could not be reached or answered badly."""

    code = "UPSTREAM_FETCH_ERROR"
    retryable = True


class UpstreamTimeout(UpstreamFetchError):
    code = "UPSTREAM_TIMEOUT"


class VerificationTimeout(GatewayError):
    """The proof check did not finish before its deadline."""

    code = "VERIFICATION_TIMEOUT"
