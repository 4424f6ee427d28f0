"""OIDC third party initiated login, tool side initiation and platform side authentication.

The handshake runs in three steps:

1. the platform sends a login initiation request to the tool
   (:class:`message.PlatformOriginatingLaunchBuilder`),
2. the tool answers with an authentication request redirect carrying a signed
   ``state`` (:class:`OidcInitiator`),
3. the platform authenticates the user and posts the signed ``id_token`` back
   to the tool (:class:`OidcAuthenticator`).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Protocol

from .claims import CLAIM_LTI_TARGET_LINK_URI
from .errors import LTIError, LTILoginError
from .message import LtiMessage
from .payload import (
    CLAIM_AUD,
    CLAIM_ISS,
    CLAIM_NONCE,
    CLAIM_PARAMETERS,
    CLAIM_REGISTRATION_ID,
    CLAIM_SUB,
    SIGNATURE_CLAIMS,
    LtiMessagePayload,
    MessagePayloadBuilder,
    UserIdentity,
)
from .registration import RegistrationRepository
from .security import NonceGenerator, TokenCodec


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class UserAuthenticationResult:
    success: bool
    anonymous: bool = False
    identity: UserIdentity | None = None


class UserAuthenticator(Protocol):
    def authenticate(self, login_hint: str) -> UserAuthenticationResult:
        ...


def _mandatory_parameter(parameters: Mapping[str, Any], name: str) -> str:
    value = parameters.get(name)
    if not value:
        raise LTILoginError(f"Mandatory parameter {name} is missing")
    return str(value)


class OidcInitiator:
    """Turns a login initiation request into an OIDC authentication request."""

    def __init__(
        self,
        registration_repository: RegistrationRepository,
        codec: TokenCodec,
        nonce_generator: NonceGenerator,
    ) -> None:
        self._registrations = registration_repository
        self._codec = codec
        self._nonce_generator = nonce_generator

    def initiate(self, parameters: Mapping[str, Any]) -> LtiMessage:
        try:
            issuer = _mandatory_parameter(parameters, "iss")
            login_hint = _mandatory_parameter(parameters, "login_hint")
            target_link_uri = _mandatory_parameter(parameters, "target_link_uri")
            client_id = parameters.get("client_id") or None

            registration = self._registrations.find_by_platform_issuer(issuer, client_id)
            if registration is None:
                raise LTILoginError("Cannot find registration for OIDC request")

            tool_key_chain = registration.tool_key_chain
            if tool_key_chain is None:
                raise LTILoginError(
                    f"Registration {registration.identifier} does not have a configured tool key chain"
                )

            deployment_id = parameters.get("lti_deployment_id")
            if deployment_id is not None and not registration.has_deployment_id(deployment_id):
                raise LTILoginError("Cannot find deployment for OIDC request")

            authentication_url = registration.platform.oidc_authentication_url
            if not authentication_url:
                raise LTILoginError(
                    f"Registration {registration.identifier} does not have a platform OIDC authentication url"
                )

            nonce = self._nonce_generator.generate()
            state = (
                MessagePayloadBuilder(self._codec, self._nonce_generator)
                .with_claim(CLAIM_SUB, registration.identifier)
                .with_claim(CLAIM_ISS, registration.tool.audience)
                .with_claim(CLAIM_AUD, registration.platform.audience)
                .with_claim(CLAIM_NONCE, nonce.value)
                .with_claim(CLAIM_PARAMETERS, {key: value for key, value in parameters.items()})
                .build_message_payload(tool_key_chain)
            )

            logger.info(
                "Initiation OIDC pour la registration %s (deployment=%s)",
                registration.identifier,
                deployment_id,
            )
            return LtiMessage(
                authentication_url,
                {
                    "redirect_uri": target_link_uri,
                    "client_id": registration.client_id,
                    "login_hint": login_hint,
                    "nonce": nonce.value,
                    "state": state.token.raw,
                    "lti_message_hint": parameters.get("lti_message_hint"),
                    "scope": "openid",
                    "response_type": "id_token",
                    "response_mode": "form_post",
                    "prompt": "none",
                },
            )
        except LTIError:
            raise
        except Exception as exc:
            raise LTILoginError(f"OIDC initiation failed: {exc}") from exc


class OidcAuthenticator:
    """Answers an OIDC authentication request with a signed ``id_token``.

    The launch context is read back from the signed ``lti_message_hint``
    issued at login initiation; the user is authenticated by the injected
    :class:`UserAuthenticator` from the ``login_hint``.
    """

    def __init__(
        self,
        registration_repository: RegistrationRepository,
        user_authenticator: UserAuthenticator,
        codec: TokenCodec,
        nonce_generator: NonceGenerator,
    ) -> None:
        self._registrations = registration_repository
        self._authenticator = user_authenticator
        self._codec = codec
        self._nonce_generator = nonce_generator

    def authenticate(self, parameters: Mapping[str, Any]) -> LtiMessage:
        try:
            original = LtiMessagePayload(self._codec.parse(_mandatory_parameter(parameters, "lti_message_hint")))

            if original.is_expired():
                raise LTILoginError("Message hint expired")

            registration = self._registrations.find(str(original.get_mandatory_claim(CLAIM_REGISTRATION_ID)))
            if registration is None:
                raise LTILoginError("Invalid message hint registration id claim")

            platform_key_chain = registration.platform_key_chain
            if platform_key_chain is None:
                raise LTILoginError(
                    f"Registration {registration.identifier} does not have a configured platform key chain"
                )

            if not self._codec.verify(
                original.token,
                platform_key_chain.public_key,
                audience=registration.platform.audience,
            ):
                raise LTILoginError("Invalid message hint signature")

            result = self._authenticator.authenticate(_mandatory_parameter(parameters, "login_hint"))
            if not result.success:
                raise LTILoginError("User authentication failure")

            builder = (
                MessagePayloadBuilder(self._codec, self._nonce_generator)
                .with_message_payload_claims(original, exclusions=(*SIGNATURE_CLAIMS, CLAIM_NONCE))
                .with_claim(CLAIM_ISS, registration.platform.audience)
                .with_claim(CLAIM_AUD, registration.client_id)
            )
            # echo the nonce of the authentication request when the tool sent one
            if parameters.get("nonce"):
                builder.with_claim(CLAIM_NONCE, str(parameters["nonce"]))
            if not result.anonymous and result.identity is not None:
                builder.with_claims(result.identity.normalize())

            id_token = builder.build_message_payload(platform_key_chain)

            logger.info(
                "Authentification OIDC réussie pour la registration %s (anonyme=%s)",
                registration.identifier,
                result.anonymous,
            )
            return LtiMessage(
                str(original.get_mandatory_claim(CLAIM_LTI_TARGET_LINK_URI)),
                {
                    "id_token": id_token.token.raw,
                    "state": _mandatory_parameter(parameters, "state"),
                },
            )
        except LTIError:
            raise
        except Exception as exc:
            raise LTILoginError(f"OIDC authentication failed: {exc}") from exc
