"""Error taxonomy for external platform clients.

Sync jobs branch on the exception type: retry on UpstreamUnavailable or
RateLimited, prompt re-auth on AuthenticationError, and treat
UnsupportedOperation as an empty result.
"""

from typing import Optional


class PlatformError(Exception):
    """Base class for every error raised by a platform client."""

    kind = "platform_error"

    def __init__(self, message: str, platform: Optional[str] = None):
        super().__init__(message)
        self.platform = platform

    def to_dict(self) -> dict:
        return {"kind": self.kind, "platform": self.platform, "message": str(self)}


class AuthenticationError(PlatformError):
    """Credentials are missing, invalid, expired or a signature was rejected."""

    kind = "authentication"


class UpstreamUnavailable(PlatformError):
    """Network failure, timeout or 5xx from the platform."""

    kind = "upstream_unavailable"


class RateLimited(PlatformError):
    kind = "rate_limited"

    def __init__(
        self,
        message: str,
        platform: Optional[str] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, platform)
        self.retry_after = retry_after

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["retry_after"] = self.retry_after
        return payload


class UnsupportedOperation(PlatformError):
    """The account or platform does not support this call (e.g. no margin)."""

    kind = "unsupported_operation"


class UnknownPlatformError(PlatformError):
    kind = "unknown_platform"


class PlatformConfigurationError(PlatformError):
    """A server-side app key, client id or secret is not configured."""

    kind = "configuration"
