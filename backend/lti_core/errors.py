"""Exceptions raised by the LTI 1.3 security core."""

from __future__ import annotations


class LTIError(RuntimeError):
    """Base class for every error raised by the LTI core."""


class LTIConfigurationError(LTIError):
    """Raised when mandatory LTI configuration is missing or invalid."""


class LTILaunchError(LTIError):
    """Raised when a launch message cannot be validated."""


class LTILoginError(LTIError):
    """Raised when an OIDC login initiation or authentication request is invalid."""


class LTIServiceError(LTIError):
    """Raised when a service-to-service call fails."""


class LTIAuthorizationError(LTIServiceError):
    """Raised when the platform keeps rejecting the service access token."""


__all__ = [
    "LTIAuthorizationError",
    "LTIConfigurationError",
    "LTIError",
    "LTILaunchError",
    "LTILoginError",
    "LTIServiceError",
]
