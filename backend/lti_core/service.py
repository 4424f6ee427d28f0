"""Composition root wiring the LTI core components from the environment."""

from __future__ import annotations

import logging
from typing import Any, Mapping

import httpx

from .config import LTISettings, load_registrations
from .message import LtiMessage, PlatformOriginatingLaunchBuilder, ToolOriginatingLaunchBuilder
from .oidc import OidcAuthenticator, OidcInitiator, UserAuthenticationResult, UserAuthenticator
from .payload import UserIdentity
from .registration import InMemoryRegistrationRepository, RegistrationRepository
from .security import InMemoryNonceRepository, JwksFetcher, KeyResolver, NonceGenerator, TokenCodec
from .service_client import InMemoryCache, ServiceClient
from .validator import LaunchValidationResult, PlatformLaunchValidator, ToolLaunchValidator


logger = logging.getLogger(__name__)


class LoginHintAuthenticator:
    """Default user authenticator: the platform login hint is the user identifier."""

    def authenticate(self, login_hint: str) -> UserAuthenticationResult:
        if not login_hint:
            return UserAuthenticationResult(success=False)
        return UserAuthenticationResult(success=True, identity=UserIdentity(identifier=login_hint))


class LTIService:
    """Aggregates the LTI components for both the tool and the platform side."""

    def __init__(
        self,
        settings: LTISettings | None = None,
        *,
        registration_repository: RegistrationRepository | None = None,
        user_authenticator: UserAuthenticator | None = None,
        http_client: httpx.Client | None = None,
    ) -> None:
        self.settings = settings or LTISettings.from_env()
        if registration_repository is None:
            registration_repository = InMemoryRegistrationRepository(load_registrations(self.settings))
        self.registrations = registration_repository
        self.http_client = http_client or httpx.Client(timeout=self.settings.http_timeout, follow_redirects=True)

        self.cache = InMemoryCache()
        self.codec = TokenCodec()
        self.nonce_generator = NonceGenerator(ttl=self.settings.nonce_ttl)
        self.nonce_repository = InMemoryNonceRepository(retention=self.settings.nonce_ttl)
        self.key_resolver = KeyResolver(
            JwksFetcher(self.http_client, cache=self.cache, cache_ttl=self.settings.jwks_cache_ttl)
        )

        self.tool_launch_validator = ToolLaunchValidator(
            self.registrations,
            self.nonce_repository,
            self.key_resolver,
            self.codec,
            validate_nonce=self.settings.validate_nonce,
            validate_state=self.settings.validate_state,
            nonce_ttl=self.settings.nonce_ttl,
        )
        self.platform_launch_validator = PlatformLaunchValidator(
            self.registrations,
            self.nonce_repository,
            self.key_resolver,
            self.codec,
            validate_nonce=self.settings.validate_nonce,
            nonce_ttl=self.settings.nonce_ttl,
        )
        self.oidc_initiator = OidcInitiator(self.registrations, self.codec, self.nonce_generator)
        self.oidc_authenticator = OidcAuthenticator(
            self.registrations,
            user_authenticator or LoginHintAuthenticator(),
            self.codec,
            self.nonce_generator,
        )
        self.platform_launch_builder = PlatformOriginatingLaunchBuilder(self.codec, self.nonce_generator)
        self.tool_launch_builder = ToolOriginatingLaunchBuilder(self.codec, self.nonce_generator)
        self.service_client = ServiceClient(self.http_client, self.cache, self.codec)

        logger.info("Service LTI initialisé avec %s registration(s)", len(self.registrations.find_all()))

    def initiate_login(self, parameters: Mapping[str, Any]) -> LtiMessage:
        return self.oidc_initiator.initiate(parameters)

    def validate_launch(self, parameters: Mapping[str, Any]) -> LaunchValidationResult:
        return self.tool_launch_validator.validate_platform_originating_launch(parameters)

    def authenticate(self, parameters: Mapping[str, Any]) -> LtiMessage:
        return self.oidc_authenticator.authenticate(parameters)

    def validate_tool_message(self, parameters: Mapping[str, Any]) -> LaunchValidationResult:
        return self.platform_launch_validator.validate_tool_originating_launch(parameters)

    def close(self) -> None:
        self.http_client.close()


_lti_service: LTIService | None = None
_lti_error: Exception | None = None


def get_lti_service() -> LTIService:
    global _lti_service, _lti_error
    if _lti_service is None:
        try:
            _lti_service = LTIService()
        except Exception as exc:  # pragma: no cover - configuration errors only
            _lti_error = exc
            raise
        _lti_error = None
    return _lti_service


def get_lti_boot_error() -> Exception | None:
    return _lti_error
