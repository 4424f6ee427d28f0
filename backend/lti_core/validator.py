"""Launch validation for both directions of an LTI 1.3 exchange.

Each validator resolves the registration a message belongs to, then runs an
ordered list of checks. A check returns the success message it records or
raises :class:`LTILaunchError`; the first failure stops the run and becomes
the error of the returned :class:`LaunchValidationResult`. Problems detected
before the checks start (missing parameter, unreadable token, unknown
registration) are raised to the caller instead.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping, Sequence

from .claims import (
    CLAIM_LTI_AGS,
    CLAIM_LTI_DEEP_LINKING_SETTINGS,
    CLAIM_LTI_FOR_USER,
    CLAIM_LTI_RESOURCE_LINK,
    CLAIM_LTI_ROLES,
)
from .errors import LTIError, LTILaunchError
from .payload import (
    LTI_VERSION,
    MESSAGE_TYPE_DEEP_LINKING_REQUEST,
    MESSAGE_TYPE_DEEP_LINKING_RESPONSE,
    MESSAGE_TYPE_END_ASSESSMENT,
    MESSAGE_TYPE_RESOURCE_LINK_REQUEST,
    MESSAGE_TYPE_START_ASSESSMENT,
    MESSAGE_TYPE_START_PROCTORING,
    MESSAGE_TYPE_SUBMISSION_REVIEW_REQUEST,
    LtiMessagePayload,
    MessagePayload,
)
from .registration import Registration, RegistrationRepository
from .security import NONCE_TTL, KeyResolver, Nonce, NonceRepository, TokenCodec


logger = logging.getLogger(__name__)


Check = Callable[[], str]


@dataclass(slots=True)
class LaunchValidationResult:
    registration: Registration | None = None
    payload: LtiMessagePayload | None = None
    state: MessagePayload | None = None
    successes: list[str] = field(default_factory=list)
    error: str | None = None

    @property
    def has_error(self) -> bool:
        return self.error is not None


class _LaunchValidator:
    supported_message_types: tuple[str, ...] = ()
    token_label = ""

    def __init__(
        self,
        registration_repository: RegistrationRepository,
        nonce_repository: NonceRepository,
        key_resolver: KeyResolver,
        codec: TokenCodec,
        *,
        validate_nonce: bool = True,
        nonce_ttl: int = NONCE_TTL,
    ) -> None:
        self._registrations = registration_repository
        self._nonces = nonce_repository
        self._key_resolver = key_resolver
        self._codec = codec
        self._validate_nonce = validate_nonce
        self._nonce_ttl = nonce_ttl

    def get_supported_message_types(self) -> list[str]:
        return list(self.supported_message_types)

    def _mandatory_parameter(self, parameters: Mapping[str, Any], name: str) -> str:
        value = parameters.get(name)
        if not value:
            raise LTILaunchError(f"Mandatory parameter {name} is missing")
        return str(value)

    def _parse(self, raw: str) -> Any:
        try:
            return self._codec.parse(raw)
        except LTIError as exc:
            raise LTILaunchError(str(exc)) from exc

    def _mandatory_claim(self, payload: MessagePayload, name: str) -> Any:
        try:
            return payload.get_mandatory_claim(name)
        except LTIError as exc:
            raise LTILaunchError(str(exc)) from exc

    def _run(self, registration: Registration, checks: Sequence[Check]) -> tuple[list[str], str | None]:
        successes: list[str] = []
        for check in checks:
            try:
                successes.append(check())
            except LTIError as exc:
                error = str(exc)
                break
            except Exception as exc:
                logger.exception("Erreur inattendue pendant la validation du lancement LTI")
                error = f"Unexpected launch validation error: {exc}"
                break
        else:
            return successes, None

        logger.warning(
            "Validation du lancement LTI refusée pour la registration %s: %s",
            registration.identifier,
            error,
        )
        return successes, error

    # Checks shared by both directions

    def _check_kid(self, payload: MessagePayload) -> str:
        if not payload.key_id:
            raise LTILaunchError(f"{self.token_label} kid header is missing")
        return f"{self.token_label} kid header is provided"

    def _check_version(self, payload: LtiMessagePayload) -> str:
        if payload.version != LTI_VERSION:
            raise LTILaunchError(f"{self.token_label} version claim is invalid")
        return f"{self.token_label} version claim is valid"

    def _check_message_type(self, payload: LtiMessagePayload) -> str:
        if payload.message_type not in self.supported_message_types:
            raise LTILaunchError(f"{self.token_label} message_type claim is not supported")
        return f"{self.token_label} message_type claim is valid"

    def _check_nonce(self, payload: MessagePayload) -> str:
        value = payload.nonce
        if not value:
            raise LTILaunchError(f"{self.token_label} nonce claim is missing")

        existing = self._nonces.find(value)
        if existing is not None:
            if not existing.is_expired():
                raise LTILaunchError(f"{self.token_label} nonce claim already used")
            # expired entries are accepted and left untouched
            return f"{self.token_label} nonce claim is valid (expired nonce reuse accepted)"

        expires_at = datetime.now(timezone.utc) + timedelta(seconds=self._nonce_ttl)
        if not self._nonces.save(Nonce(value=value, expires_at=expires_at)):
            raise LTILaunchError(f"{self.token_label} nonce claim already used")
        return f"{self.token_label} nonce claim is valid"

    def _check_deployment_id(self, registration: Registration, payload: LtiMessagePayload) -> str:
        if payload.deployment_id is None:
            raise LTILaunchError(f"{self.token_label} deployment_id claim is missing")
        if not registration.has_deployment_id(payload.deployment_id):
            raise LTILaunchError(f"{self.token_label} deployment_id claim not valid for this registration")
        return f"{self.token_label} deployment_id claim valid for this registration"

    def _check_resource_link(self, payload: LtiMessagePayload) -> None:
        resource_link = payload.get_claim(CLAIM_LTI_RESOURCE_LINK)
        if resource_link is None:
            raise LTILaunchError(f"{self.token_label} resource_link claim is missing")
        if not isinstance(resource_link, Mapping) or not resource_link.get("id"):
            raise LTILaunchError(f"{self.token_label} resource_link id claim is invalid")


class ToolLaunchValidator(_LaunchValidator):
    """Validates platform originating launches (``id_token`` + ``state``) on the tool side."""

    supported_message_types = (
        MESSAGE_TYPE_RESOURCE_LINK_REQUEST,
        MESSAGE_TYPE_DEEP_LINKING_REQUEST,
        MESSAGE_TYPE_START_PROCTORING,
        MESSAGE_TYPE_END_ASSESSMENT,
        MESSAGE_TYPE_SUBMISSION_REVIEW_REQUEST,
    )
    token_label = "ID token"

    def __init__(
        self,
        registration_repository: RegistrationRepository,
        nonce_repository: NonceRepository,
        key_resolver: KeyResolver,
        codec: TokenCodec,
        *,
        validate_nonce: bool = True,
        validate_state: bool = True,
        nonce_ttl: int = NONCE_TTL,
    ) -> None:
        super().__init__(
            registration_repository,
            nonce_repository,
            key_resolver,
            codec,
            validate_nonce=validate_nonce,
            nonce_ttl=nonce_ttl,
        )
        self._validate_state = validate_state

    def validate_platform_originating_launch(self, parameters: Mapping[str, Any]) -> LaunchValidationResult:
        payload = LtiMessagePayload(self._parse(self._mandatory_parameter(parameters, "id_token")))
        state: MessagePayload | None = None
        if self._validate_state or parameters.get("state"):
            state = MessagePayload(self._parse(self._mandatory_parameter(parameters, "state")))

        registration = self._find_registration(payload)

        checks: list[Check] = [
            lambda: self._check_kid(payload),
            lambda: self._check_signature(registration, payload),
            lambda: self._check_version(payload),
            lambda: self._check_message_type(payload),
            lambda: self._check_roles(payload),
            lambda: self._check_user_identifier(payload),
        ]
        if self._validate_nonce:
            checks.append(lambda: self._check_nonce(payload))
        checks.append(lambda: self._check_deployment_id(registration, payload))
        checks.append(lambda: self._check_message_type_specifics(payload))
        if self._validate_state and state is not None:
            checks.append(lambda: self._check_state(registration, state))

        successes, error = self._run(registration, checks)
        if error is not None:
            return LaunchValidationResult(registration=registration, successes=successes, error=error)

        logger.info(
            "Lancement LTI %s validé pour la registration %s",
            payload.message_type,
            registration.identifier,
        )
        return LaunchValidationResult(
            registration=registration,
            payload=payload,
            state=state,
            successes=successes,
        )

    def _find_registration(self, payload: LtiMessagePayload) -> Registration:
        issuer = self._mandatory_claim(payload, "iss")
        self._mandatory_claim(payload, "aud")
        for audience in payload.audiences:
            registration = self._registrations.find_by_platform_issuer(issuer, audience)
            if registration is not None:
                return registration
        raise LTILaunchError("No matching registration found tool side")

    def _check_signature(self, registration: Registration, payload: LtiMessagePayload) -> str:
        key = self._key_resolver.resolve_platform_key(registration, payload.key_id)
        if not self._codec.verify(payload.token, key):
            raise LTILaunchError("ID token validation failure")
        return "ID token validation success"

    def _check_roles(self, payload: LtiMessagePayload) -> str:
        if not isinstance(payload.get_claim(CLAIM_LTI_ROLES), list):
            raise LTILaunchError("ID token roles claim is invalid")
        return "ID token roles claim is valid"

    def _check_user_identifier(self, payload: LtiMessagePayload) -> str:
        if payload.has_claim("sub") and not payload.subject:
            raise LTILaunchError("ID token user identifier (sub) claim is invalid")
        return "ID token user identifier (sub) claim is valid"

    def _check_message_type_specifics(self, payload: LtiMessagePayload) -> str:
        message_type = payload.message_type

        if message_type == MESSAGE_TYPE_RESOURCE_LINK_REQUEST:
            self._check_resource_link(payload)

        elif message_type == MESSAGE_TYPE_DEEP_LINKING_REQUEST:
            if not payload.get_claim(CLAIM_LTI_DEEP_LINKING_SETTINGS):
                raise LTILaunchError("ID token deep_linking_settings id claim is invalid")

        elif message_type == MESSAGE_TYPE_START_PROCTORING:
            if not payload.proctoring_start_assessment_url:
                raise LTILaunchError("ID token start_assessment_url proctoring claim is invalid")
            if not payload.proctoring_session_data:
                raise LTILaunchError("ID token session_data proctoring claim is invalid")
            if not payload.proctoring_attempt_number:
                raise LTILaunchError("ID token attempt_number proctoring claim is invalid")
            self._check_resource_link(payload)

        elif message_type == MESSAGE_TYPE_END_ASSESSMENT:
            if not payload.proctoring_attempt_number:
                raise LTILaunchError("ID token attempt_number proctoring claim is invalid")

        elif message_type == MESSAGE_TYPE_SUBMISSION_REVIEW_REQUEST:
            ags = payload.get_claim(CLAIM_LTI_AGS)
            if ags is None:
                raise LTILaunchError("ID token AGS submission review claim is missing")
            if not isinstance(ags, Mapping) or not ags.get("lineitem"):
                raise LTILaunchError("ID token AGS line item submission review claim is invalid")
            if not payload.get_claim(CLAIM_LTI_FOR_USER):
                raise LTILaunchError("ID token for_user submission review claim is invalid")

        return f"ID token message type claim {message_type} requirements are valid"

    def _check_state(self, registration: Registration, state: MessagePayload) -> str:
        tool_key_chain = registration.tool_key_chain
        if tool_key_chain is None:
            raise LTILaunchError("State validation failure: tool key chain not configured")
        if not self._codec.verify(state.token, tool_key_chain.public_key):
            raise LTILaunchError("State validation failure")
        return "State validation success"


class PlatformLaunchValidator(_LaunchValidator):
    """Validates tool originating messages (a single ``JWT`` parameter) on the platform side."""

    supported_message_types = (
        MESSAGE_TYPE_DEEP_LINKING_RESPONSE,
        MESSAGE_TYPE_START_ASSESSMENT,
    )
    token_label = "JWT"

    def validate_tool_originating_launch(self, parameters: Mapping[str, Any]) -> LaunchValidationResult:
        payload = LtiMessagePayload(self._parse(self._mandatory_parameter(parameters, "JWT")))
        registration = self._find_registration(payload)

        checks: list[Check] = [
            lambda: self._check_kid(payload),
            lambda: self._check_signature(registration, payload),
            lambda: self._check_version(payload),
            lambda: self._check_message_type(payload),
        ]
        if self._validate_nonce:
            checks.append(lambda: self._check_nonce(payload))
        checks.append(lambda: self._check_deployment_id(registration, payload))
        checks.append(lambda: self._check_message_type_specifics(registration, payload))

        successes, error = self._run(registration, checks)
        if error is not None:
            return LaunchValidationResult(registration=registration, successes=successes, error=error)

        logger.info(
            "Message %s de l'outil validé pour la registration %s",
            payload.message_type,
            registration.identifier,
        )
        return LaunchValidationResult(registration=registration, payload=payload, successes=successes)

    def _find_registration(self, payload: LtiMessagePayload) -> Registration:
        issuer = self._mandatory_claim(payload, "iss")
        self._mandatory_claim(payload, "aud")
        for audience in payload.audiences:
            registration = self._registrations.find_by_platform_issuer(audience, issuer)
            if registration is not None:
                return registration
        raise LTILaunchError("No matching registration found platform side")

    def _check_signature(self, registration: Registration, payload: LtiMessagePayload) -> str:
        key = self._key_resolver.resolve_tool_key(registration, payload.key_id)
        if not self._codec.verify(payload.token, key):
            raise LTILaunchError("JWT validation failure")
        return "JWT validation success"

    def _check_nested_token(self, registration: Registration, raw: str, description: str) -> None:
        nested = self._codec.parse(raw)
        platform_key_chain = registration.platform_key_chain
        if platform_key_chain is None:
            raise LTILaunchError(f"JWT {description} validation failure: platform key chain is not configured")
        if not self._codec.verify(nested, platform_key_chain.public_key):
            raise LTILaunchError(f"JWT {description} validation failure")

    def _check_message_type_specifics(self, registration: Registration, payload: LtiMessagePayload) -> str:
        message_type = payload.message_type

        if message_type == MESSAGE_TYPE_DEEP_LINKING_RESPONSE:
            data = payload.deep_linking_data
            if not data:
                raise LTILaunchError("JWT data deep linking claim is missing")
            self._check_nested_token(registration, data, "data deep linking claim")

        elif message_type == MESSAGE_TYPE_START_ASSESSMENT:
            session_data = payload.proctoring_session_data
            if not session_data:
                raise LTILaunchError("JWT session_data proctoring claim is missing")
            self._check_nested_token(registration, session_data, "session_data proctoring claim")
            if not payload.proctoring_attempt_number:
                raise LTILaunchError("JWT attempt_number proctoring claim is invalid")
            self._check_resource_link(payload)

        return f"JWT message type claim {message_type} requirements are valid"
