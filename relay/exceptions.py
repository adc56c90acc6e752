"""Failures raised by the completion client.

The relay turns every one of these into the same fallback reply; the
classes only matter for logging.
"""


class CompletionError(Exception):
    """Base class for a completion request that produced no usable reply."""


class TransportFailure(CompletionError):
    """The provider could not be reached (connect error, timeout, TLS)."""


class AuthFailure(CompletionError):
    """The provider rejected the API key."""

    def __init__(self, status_code: int, detail: str = "") -> None:
        self.status_code = status_code
        super().__init__(f"Provider rejected credentials ({status_code}) {detail}".strip())


class UpstreamFailure(CompletionError):
    """The provider answered with a non-2xx status other than an auth error."""

    def __init__(self, status_code: int, detail: str = "") -> None:
        self.status_code = status_code
        super().__init__(f"API error: {status_code} {detail}".strip())


class MalformedResponse(CompletionError):
    """A 2xx response that does not carry a reply."""
