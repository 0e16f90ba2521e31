"""
Error taxonomy for the gateway
"""


class ConfigurationError(Exception):
    """Raised at startup when the selected provider cannot be configured"""


class LLMBackendError(Exception):
    """Base class for per-request backend failures (answered with 502)"""


class BackendUnreachable(LLMBackendError):
    """Connection to the backend was refused, reset or timed out"""


class MalformedUpstreamResponse(LLMBackendError):
    """Backend answered with a body that does not have the expected shape"""


class BackendRequestFailed(LLMBackendError):
    """Backend answered with an error status"""

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        self.message = message
        super().__init__(f"{message} (status {status_code})")


class UnsupportedEndpoint(Exception):
    """Endpoint is not implemented by the active provider"""

    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(f"This endpoint is not available when using {provider} provider")
