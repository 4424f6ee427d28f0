"""Outbound LTI messages and the builders producing launch messages."""

from __future__ import annotations

import html
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from .claims import (
    CLAIM_LTI_DEPLOYMENT_ID,
    CLAIM_LTI_MESSAGE_TYPE,
    CLAIM_LTI_ROLES,
    CLAIM_LTI_TARGET_LINK_URI,
    CLAIM_LTI_VERSION,
)
from .errors import LTIError
from .payload import (
    CLAIM_AUD,
    CLAIM_ISS,
    CLAIM_REGISTRATION_ID,
    LTI_VERSION,
    RESERVED_USER_CLAIMS,
    MessagePayloadBuilder,
)
from .registration import Registration
from .security import NonceGenerator, TokenCodec


@dataclass(slots=True)
class LtiMessage:
    """A message to deliver to ``url``, as a redirect or an auto-posted form."""

    url: str
    parameters: dict[str, Any] = field(default_factory=dict)

    def get_parameter(self, name: str, default: Any = None) -> Any:
        return self.parameters.get(name, default)

    def get_mandatory_parameter(self, name: str) -> Any:
        value = self.parameters.get(name)
        if value is None or value == "":
            raise LTIError(f"Mandatory parameter {name} is missing")
        return value

    def to_url(self) -> str:
        parts = urlsplit(self.url)
        query = parse_qsl(parts.query, keep_blank_values=True)
        query.extend((name, str(value)) for name, value in self.parameters.items() if value is not None)
        return urlunsplit(parts._replace(query=urlencode(query)))

    def to_html_form(self, auto_submit: bool = True) -> str:
        form_id = "lti-message-form"
        inputs = "".join(
            f'  <input type="hidden" name="{html.escape(str(name), quote=True)}" '
            f'value="{html.escape(str(value), quote=True)}" />\n'
            for name, value in self.parameters.items()
            if value is not None
        )
        page = (
            f'<form id="{form_id}" action="{html.escape(self.url, quote=True)}" method="POST">\n'
            + inputs
            + '  <input type="submit" value="Continue" />\n'
            "</form>\n"
        )
        if auto_submit:
            page += f"<script>document.getElementById('{form_id}').submit();</script>\n"
        return page


class _LaunchBuilder:
    def __init__(self, codec: TokenCodec, nonce_generator: NonceGenerator) -> None:
        self._codec = codec
        self._nonce_generator = nonce_generator

    def _payload_builder(self) -> MessagePayloadBuilder:
        return MessagePayloadBuilder(self._codec, self._nonce_generator)

    @staticmethod
    def resolve_deployment_id(registration: Registration, deployment_id: str | None = None) -> str:
        if deployment_id is not None:
            if not registration.has_deployment_id(deployment_id):
                raise LTIError(
                    f"Invalid deployment id {deployment_id} for registration {registration.identifier}"
                )
            return deployment_id

        default = registration.default_deployment_id()
        if default is None:
            raise LTIError("Mandatory deployment id is missing")
        return default


class PlatformOriginatingLaunchBuilder(_LaunchBuilder):
    """Builds the third party login initiation message sent by a platform.

    Launch context travels in a signed ``lti_message_hint`` so the platform
    never has to trust it when it comes back during authentication.
    """

    def build_platform_originating_launch(
        self,
        registration: Registration,
        message_type: str,
        target_link_uri: str,
        login_hint: str,
        deployment_id: str | None = None,
        roles: Iterable[str] = (),
        optional_claims: Mapping[str, Any] | Iterable[Any] = (),
    ) -> LtiMessage:
        deployment_id = self.resolve_deployment_id(registration, deployment_id)
        if registration.platform_key_chain is None:
            raise LTIError(f"Registration {registration.identifier} does not have a configured platform key chain")
        if not registration.tool.oidc_initiation_url:
            raise LTIError(f"Registration {registration.identifier} does not have a tool OIDC initiation url")

        platform_audience = registration.platform.audience
        builder = (
            self._payload_builder()
            .with_claim(CLAIM_ISS, platform_audience)
            .with_claim(CLAIM_AUD, platform_audience)
            .with_claim(CLAIM_LTI_VERSION, LTI_VERSION)
            .with_claim(CLAIM_LTI_MESSAGE_TYPE, message_type)
            .with_claim(CLAIM_LTI_DEPLOYMENT_ID, deployment_id)
            .with_claim(CLAIM_LTI_TARGET_LINK_URI, target_link_uri)
            .with_claim(CLAIM_LTI_ROLES, list(roles))
            .with_claim(CLAIM_REGISTRATION_ID, registration.identifier)
        )
        builder.with_claims(_without_reserved_user_claims(optional_claims))
        hint = builder.build_message_payload(registration.platform_key_chain)

        return LtiMessage(
            registration.tool.oidc_initiation_url,
            {
                "iss": platform_audience,
                "login_hint": login_hint,
                "target_link_uri": target_link_uri,
                "lti_message_hint": hint.token.raw,
                "lti_deployment_id": deployment_id,
                "client_id": registration.client_id,
            },
        )


class ToolOriginatingLaunchBuilder(_LaunchBuilder):
    """Builds a message sent by a tool back to its platform as a single ``JWT``."""

    def build_tool_originating_launch(
        self,
        registration: Registration,
        message_type: str,
        platform_url: str,
        deployment_id: str | None = None,
        optional_claims: Mapping[str, Any] | Iterable[Any] = (),
    ) -> LtiMessage:
        deployment_id = self.resolve_deployment_id(registration, deployment_id)
        if registration.tool_key_chain is None:
            raise LTIError(f"Registration {registration.identifier} does not have a configured tool key chain")

        builder = (
            self._payload_builder()
            .with_claim(CLAIM_ISS, registration.client_id)
            .with_claim(CLAIM_AUD, registration.platform.audience)
            .with_claim(CLAIM_LTI_VERSION, LTI_VERSION)
            .with_claim(CLAIM_LTI_MESSAGE_TYPE, message_type)
            .with_claim(CLAIM_LTI_DEPLOYMENT_ID, deployment_id)
        )
        builder.with_claims(optional_claims)
        payload = builder.build_message_payload(registration.tool_key_chain)

        return LtiMessage(platform_url, {"JWT": payload.token.raw})


def _without_reserved_user_claims(claims: Mapping[str, Any] | Iterable[Any]) -> Mapping[str, Any] | Iterable[Any]:
    if isinstance(claims, Mapping):
        return {name: value for name, value in claims.items() if name not in RESERVED_USER_CLAIMS}
    return claims
