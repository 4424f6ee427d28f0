"""Message payloads: parsed signed tokens and typed accessors over their claims.

A :class:`MessagePayload` wraps a parsed, not yet trusted :class:`Token`.
:class:`LtiMessagePayload` adds accessors for every LTI claim, materializing
claim objects from :mod:`claims` on demand. :class:`MessagePayloadBuilder`
goes the other way and produces new signed payloads.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Iterable, Mapping

from .claims import (
    CLAIM_LTI_ACS,
    CLAIM_LTI_AGS,
    CLAIM_LTI_BASIC_OUTCOME,
    CLAIM_LTI_CONTEXT,
    CLAIM_LTI_CUSTOM,
    CLAIM_LTI_DEEP_LINKING_CONTENT_ITEMS,
    CLAIM_LTI_DEEP_LINKING_DATA,
    CLAIM_LTI_DEEP_LINKING_ERROR_LOG,
    CLAIM_LTI_DEEP_LINKING_ERROR_MESSAGE,
    CLAIM_LTI_DEEP_LINKING_LOG,
    CLAIM_LTI_DEEP_LINKING_MESSAGE,
    CLAIM_LTI_DEEP_LINKING_SETTINGS,
    CLAIM_LTI_DEPLOYMENT_ID,
    CLAIM_LTI_FOR_USER,
    CLAIM_LTI_LAUNCH_PRESENTATION,
    CLAIM_LTI_LIS,
    CLAIM_LTI_MESSAGE_TYPE,
    CLAIM_LTI_NRPS,
    CLAIM_LTI_PROCTORING_ATTEMPT_NUMBER,
    CLAIM_LTI_PROCTORING_END_ASSESSMENT_RETURN,
    CLAIM_LTI_PROCTORING_ERROR_LOG,
    CLAIM_LTI_PROCTORING_ERROR_MESSAGE,
    CLAIM_LTI_PROCTORING_SESSION_DATA,
    CLAIM_LTI_PROCTORING_SETTINGS,
    CLAIM_LTI_PROCTORING_START_ASSESSMENT_URL,
    CLAIM_LTI_PROCTORING_VERIFIED_USER,
    CLAIM_LTI_RESOURCE_LINK,
    CLAIM_LTI_ROLE_SCOPE_MENTOR,
    CLAIM_LTI_ROLES,
    CLAIM_LTI_TARGET_LINK_URI,
    CLAIM_LTI_TOOL_PLATFORM,
    CLAIM_LTI_VERSION,
    AcsClaim,
    AgsClaim,
    BasicOutcomeClaim,
    ContextClaim,
    DeepLinkingContentItemsClaim,
    DeepLinkingSettingsClaim,
    ForUserClaim,
    LaunchPresentationClaim,
    LisClaim,
    NrpsClaim,
    PlatformInstanceClaim,
    ProctoringSettingsClaim,
    ProctoringVerifiedUserClaim,
    ResourceLinkClaim,
    denormalize_claim,
)
from .errors import LTIError

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .security import KeyChain, NonceGenerator, TokenCodec


LTI_VERSION = "1.3.0"

MESSAGE_TYPE_RESOURCE_LINK_REQUEST = "LtiResourceLinkRequest"
MESSAGE_TYPE_DEEP_LINKING_REQUEST = "LtiDeepLinkingRequest"
MESSAGE_TYPE_DEEP_LINKING_RESPONSE = "LtiDeepLinkingResponse"
MESSAGE_TYPE_START_PROCTORING = "LtiStartProctoring"
MESSAGE_TYPE_START_ASSESSMENT = "LtiStartAssessment"
MESSAGE_TYPE_END_ASSESSMENT = "LtiEndAssessment"
MESSAGE_TYPE_SUBMISSION_REVIEW_REQUEST = "LtiSubmissionReviewRequest"

HEADER_KID = "kid"

CLAIM_JTI = "jti"
CLAIM_ISS = "iss"
CLAIM_SUB = "sub"
CLAIM_AUD = "aud"
CLAIM_EXP = "exp"
CLAIM_NBF = "nbf"
CLAIM_IAT = "iat"
CLAIM_NONCE = "nonce"
CLAIM_PARAMETERS = "parameters"
CLAIM_REGISTRATION_ID = "registration_id"

CLAIM_USER_NAME = "name"
CLAIM_USER_EMAIL = "email"
CLAIM_USER_GIVEN_NAME = "given_name"
CLAIM_USER_FAMILY_NAME = "family_name"
CLAIM_USER_MIDDLE_NAME = "middle_name"
CLAIM_USER_LOCALE = "locale"
CLAIM_USER_PICTURE = "picture"

RESERVED_USER_CLAIMS = (
    CLAIM_SUB,
    CLAIM_USER_NAME,
    CLAIM_USER_EMAIL,
    CLAIM_USER_GIVEN_NAME,
    CLAIM_USER_FAMILY_NAME,
    CLAIM_USER_MIDDLE_NAME,
    CLAIM_USER_LOCALE,
    CLAIM_USER_PICTURE,
)

# Registered claims regenerated on every signature
SIGNATURE_CLAIMS = (CLAIM_JTI, CLAIM_IAT, CLAIM_NBF, CLAIM_EXP)

PAYLOAD_TTL = 600


@dataclass(slots=True)
class Token:
    """A compact signed token split into its decoded parts."""

    raw: str
    headers: dict[str, Any]
    claims: dict[str, Any]

    def __str__(self) -> str:
        return self.raw


@dataclass(slots=True)
class UserIdentity:
    identifier: str
    name: str | None = None
    email: str | None = None
    given_name: str | None = None
    family_name: str | None = None
    middle_name: str | None = None
    locale: str | None = None
    picture: str | None = None
    additional_properties: dict[str, Any] = field(default_factory=dict)

    def normalize(self) -> dict[str, Any]:
        values = {
            **self.additional_properties,
            CLAIM_SUB: self.identifier,
            CLAIM_USER_NAME: self.name,
            CLAIM_USER_EMAIL: self.email,
            CLAIM_USER_GIVEN_NAME: self.given_name,
            CLAIM_USER_FAMILY_NAME: self.family_name,
            CLAIM_USER_MIDDLE_NAME: self.middle_name,
            CLAIM_USER_LOCALE: self.locale,
            CLAIM_USER_PICTURE: self.picture,
        }
        return {key: value for key, value in values.items() if value is not None}


class MessagePayload:
    """Read-only view over the claims of a parsed token."""

    def __init__(self, token: Token) -> None:
        self._token = token

    @property
    def token(self) -> Token:
        return self._token

    def has_claim(self, name: str) -> bool:
        return name in self._token.claims

    def get_claim(self, name: str, default: Any = None) -> Any:
        return self._token.claims.get(name, default)

    def get_mandatory_claim(self, name: str) -> Any:
        if name not in self._token.claims:
            raise LTIError(f"Cannot read mandatory {name} claim")
        return self._token.claims[name]

    def get_claim_object(self, name: str) -> Any:
        """Return the typed claim registered under ``name``, or ``None`` if absent."""

        value = self._token.claims.get(name)
        if value is None:
            return None
        return denormalize_claim(name, value)

    @property
    def key_id(self) -> str | None:
        return self._token.headers.get(HEADER_KID)

    @property
    def issuer(self) -> str | None:
        return self.get_claim(CLAIM_ISS)

    @property
    def subject(self) -> str | None:
        return self.get_claim(CLAIM_SUB)

    @property
    def audiences(self) -> list[str]:
        audience = self.get_claim(CLAIM_AUD)
        if audience is None:
            return []
        if isinstance(audience, (list, tuple)):
            return [str(value) for value in audience]
        return [str(audience)]

    @property
    def nonce(self) -> str | None:
        return self.get_claim(CLAIM_NONCE)

    @property
    def expires_at(self) -> int | None:
        value = self.get_claim(CLAIM_EXP)
        return None if value is None else int(value)

    def is_expired(self, now: float | None = None) -> bool:
        expires_at = self.expires_at
        if expires_at is None:
            return False
        current = time.time() if now is None else now
        return expires_at <= current


class LtiMessagePayload(MessagePayload):
    """Accessors for the LTI claims of a launch message."""

    @property
    def version(self) -> str | None:
        return self.get_claim(CLAIM_LTI_VERSION)

    @property
    def message_type(self) -> str | None:
        return self.get_claim(CLAIM_LTI_MESSAGE_TYPE)

    @property
    def deployment_id(self) -> str | None:
        return self.get_claim(CLAIM_LTI_DEPLOYMENT_ID)

    @property
    def target_link_uri(self) -> str | None:
        return self.get_claim(CLAIM_LTI_TARGET_LINK_URI)

    @property
    def roles(self) -> list[str]:
        return list(self.get_claim(CLAIM_LTI_ROLES) or [])

    @property
    def role_scope_mentor(self) -> list[str]:
        return list(self.get_claim(CLAIM_LTI_ROLE_SCOPE_MENTOR) or [])

    @property
    def custom(self) -> dict[str, Any]:
        return dict(self.get_claim(CLAIM_LTI_CUSTOM) or {})

    @property
    def registration_id(self) -> str | None:
        return self.get_claim(CLAIM_REGISTRATION_ID)

    @property
    def resource_link(self) -> ResourceLinkClaim | None:
        return self.get_claim_object(CLAIM_LTI_RESOURCE_LINK)

    @property
    def context(self) -> ContextClaim | None:
        return self.get_claim_object(CLAIM_LTI_CONTEXT)

    @property
    def platform_instance(self) -> PlatformInstanceClaim | None:
        return self.get_claim_object(CLAIM_LTI_TOOL_PLATFORM)

    @property
    def launch_presentation(self) -> LaunchPresentationClaim | None:
        return self.get_claim_object(CLAIM_LTI_LAUNCH_PRESENTATION)

    @property
    def lis(self) -> LisClaim | None:
        return self.get_claim_object(CLAIM_LTI_LIS)

    @property
    def for_user(self) -> ForUserClaim | None:
        return self.get_claim_object(CLAIM_LTI_FOR_USER)

    @property
    def deep_linking_settings(self) -> DeepLinkingSettingsClaim | None:
        return self.get_claim_object(CLAIM_LTI_DEEP_LINKING_SETTINGS)

    @property
    def deep_linking_content_items(self) -> DeepLinkingContentItemsClaim | None:
        return self.get_claim_object(CLAIM_LTI_DEEP_LINKING_CONTENT_ITEMS)

    @property
    def deep_linking_data(self) -> str | None:
        return self.get_claim(CLAIM_LTI_DEEP_LINKING_DATA)

    @property
    def deep_linking_message(self) -> str | None:
        return self.get_claim(CLAIM_LTI_DEEP_LINKING_MESSAGE)

    @property
    def deep_linking_log(self) -> str | None:
        return self.get_claim(CLAIM_LTI_DEEP_LINKING_LOG)

    @property
    def deep_linking_error_message(self) -> str | None:
        return self.get_claim(CLAIM_LTI_DEEP_LINKING_ERROR_MESSAGE)

    @property
    def deep_linking_error_log(self) -> str | None:
        return self.get_claim(CLAIM_LTI_DEEP_LINKING_ERROR_LOG)

    @property
    def proctoring_start_assessment_url(self) -> str | None:
        return self.get_claim(CLAIM_LTI_PROCTORING_START_ASSESSMENT_URL)

    @property
    def proctoring_settings(self) -> ProctoringSettingsClaim | None:
        return self.get_claim_object(CLAIM_LTI_PROCTORING_SETTINGS)

    @property
    def proctoring_session_data(self) -> str | None:
        return self.get_claim(CLAIM_LTI_PROCTORING_SESSION_DATA)

    @property
    def proctoring_attempt_number(self) -> int | None:
        value = self.get_claim(CLAIM_LTI_PROCTORING_ATTEMPT_NUMBER)
        if value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            return None

    @property
    def proctoring_verified_user(self) -> ProctoringVerifiedUserClaim | None:
        return self.get_claim_object(CLAIM_LTI_PROCTORING_VERIFIED_USER)

    @property
    def proctoring_end_assessment_return(self) -> bool:
        return bool(self.get_claim(CLAIM_LTI_PROCTORING_END_ASSESSMENT_RETURN, False))

    @property
    def proctoring_error_message(self) -> str | None:
        return self.get_claim(CLAIM_LTI_PROCTORING_ERROR_MESSAGE)

    @property
    def proctoring_error_log(self) -> str | None:
        return self.get_claim(CLAIM_LTI_PROCTORING_ERROR_LOG)

    @property
    def acs(self) -> AcsClaim | None:
        return self.get_claim_object(CLAIM_LTI_ACS)

    @property
    def ags(self) -> AgsClaim | None:
        return self.get_claim_object(CLAIM_LTI_AGS)

    @property
    def nrps(self) -> NrpsClaim | None:
        return self.get_claim_object(CLAIM_LTI_NRPS)

    @property
    def basic_outcome(self) -> BasicOutcomeClaim | None:
        return self.get_claim_object(CLAIM_LTI_BASIC_OUTCOME)

    @property
    def user_identity(self) -> UserIdentity | None:
        subject = self.subject
        if subject is None:
            return None
        return UserIdentity(
            identifier=str(subject),
            name=self.get_claim(CLAIM_USER_NAME),
            email=self.get_claim(CLAIM_USER_EMAIL),
            given_name=self.get_claim(CLAIM_USER_GIVEN_NAME),
            family_name=self.get_claim(CLAIM_USER_FAMILY_NAME),
            middle_name=self.get_claim(CLAIM_USER_MIDDLE_NAME),
            locale=self.get_claim(CLAIM_USER_LOCALE),
            picture=self.get_claim(CLAIM_USER_PICTURE),
        )


class MessagePayloadBuilder:
    """Accumulates claims and signs them into a new :class:`LtiMessagePayload`.

    Builders hold per-message state, so callers create one per message rather
    than sharing an instance between requests.
    """

    def __init__(self, codec: "TokenCodec", nonce_generator: "NonceGenerator") -> None:
        self._codec = codec
        self._nonce_generator = nonce_generator
        self._claims: dict[str, Any] = {}

    def reset(self) -> "MessagePayloadBuilder":
        self._claims = {}
        return self

    def with_claim(self, claim: Any, value: Any = None) -> "MessagePayloadBuilder":
        if hasattr(claim, "claim_name") and hasattr(claim, "normalize"):
            self._claims[claim.claim_name] = claim.normalize()
        else:
            self._claims[str(claim)] = value
        return self

    def with_claims(self, claims: Mapping[str, Any] | Iterable[Any]) -> "MessagePayloadBuilder":
        if isinstance(claims, Mapping):
            for name, value in claims.items():
                if hasattr(value, "claim_name") and hasattr(value, "normalize"):
                    self.with_claim(value)
                else:
                    self.with_claim(name, value)
        else:
            for claim in claims:
                self.with_claim(claim)
        return self

    def with_message_payload_claims(
        self, payload: MessagePayload, exclusions: Iterable[str] = ()
    ) -> "MessagePayloadBuilder":
        excluded = set(exclusions)
        for name, value in payload.token.claims.items():
            if name not in excluded:
                self._claims[name] = value
        return self

    def build_message_payload(self, key_chain: "KeyChain", ttl: int = PAYLOAD_TTL) -> LtiMessagePayload:
        claims = dict(self._claims)
        if not claims.get(CLAIM_NONCE):
            claims[CLAIM_NONCE] = self._nonce_generator.generate().value
        raw = self._codec.build({}, claims, key_chain, ttl=ttl)
        return LtiMessagePayload(self._codec.parse(raw))
