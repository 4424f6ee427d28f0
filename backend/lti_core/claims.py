"""Typed views over the namespaced LTI claims carried by a message payload.

Each claim class knows the claim name it is stored under, can ``normalize``
itself into the sparse mapping found in a token and ``denormalize`` such a
mapping back into an object. :data:`CLAIM_TYPES` maps claim names to their
class so payloads can decode claims by name.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Mapping

# Core claims
CLAIM_LTI_MESSAGE_TYPE = "https://purl.imsglobal.org/spec/lti/claim/message_type"
CLAIM_LTI_VERSION = "https://purl.imsglobal.org/spec/lti/claim/version"
CLAIM_LTI_DEPLOYMENT_ID = "https://purl.imsglobal.org/spec/lti/claim/deployment_id"
CLAIM_LTI_ROLES = "https://purl.imsglobal.org/spec/lti/claim/roles"
CLAIM_LTI_CONTEXT = "https://purl.imsglobal.org/spec/lti/claim/context"
CLAIM_LTI_TOOL_PLATFORM = "https://purl.imsglobal.org/spec/lti/claim/tool_platform"
CLAIM_LTI_ROLE_SCOPE_MENTOR = "https://purl.imsglobal.org/spec/lti/claim/role_scope_mentor"
CLAIM_LTI_LAUNCH_PRESENTATION = "https://purl.imsglobal.org/spec/lti/claim/launch_presentation"
CLAIM_LTI_LIS = "https://purl.imsglobal.org/spec/lti/claim/lis"
CLAIM_LTI_CUSTOM = "https://purl.imsglobal.org/spec/lti/claim/custom"
CLAIM_LTI_TARGET_LINK_URI = "https://purl.imsglobal.org/spec/lti/claim/target_link_uri"
CLAIM_LTI_RESOURCE_LINK = "https://purl.imsglobal.org/spec/lti/claim/resource_link"
CLAIM_LTI_FOR_USER = "https://purl.imsglobal.org/spec/lti/claim/for_user"

# Deep Linking claims
CLAIM_LTI_DEEP_LINKING_SETTINGS = "https://purl.imsglobal.org/spec/lti-dl/claim/deep_linking_settings"
CLAIM_LTI_DEEP_LINKING_CONTENT_ITEMS = "https://purl.imsglobal.org/spec/lti-dl/claim/content_items"
CLAIM_LTI_DEEP_LINKING_DATA = "https://purl.imsglobal.org/spec/lti-dl/claim/data"
CLAIM_LTI_DEEP_LINKING_MESSAGE = "https://purl.imsglobal.org/spec/lti-dl/claim/msg"
CLAIM_LTI_DEEP_LINKING_LOG = "https://purl.imsglobal.org/spec/lti-dl/claim/log"
CLAIM_LTI_DEEP_LINKING_ERROR_MESSAGE = "https://purl.imsglobal.org/spec/lti-dl/claim/errormsg"
CLAIM_LTI_DEEP_LINKING_ERROR_LOG = "https://purl.imsglobal.org/spec/lti-dl/claim/errorlog"

# Proctoring claims
CLAIM_LTI_PROCTORING_START_ASSESSMENT_URL = "https://purl.imsglobal.org/spec/lti-ap/claim/start_assessment_url"
CLAIM_LTI_PROCTORING_SETTINGS = "https://purl.imsglobal.org/spec/lti-ap/claim/proctoring_settings"
CLAIM_LTI_PROCTORING_SESSION_DATA = "https://purl.imsglobal.org/spec/lti-ap/claim/session_data"
CLAIM_LTI_PROCTORING_ATTEMPT_NUMBER = "https://purl.imsglobal.org/spec/lti-ap/claim/attempt_number"
CLAIM_LTI_PROCTORING_VERIFIED_USER = "https://purl.imsglobal.org/spec/lti-ap/claim/verified_user"
CLAIM_LTI_PROCTORING_END_ASSESSMENT_RETURN = "https://purl.imsglobal.org/spec/lti-ap/claim/end_assessment_return"
CLAIM_LTI_PROCTORING_ERROR_MESSAGE = "https://purl.imsglobal.org/spec/lti-ap/claim/errormsg"
CLAIM_LTI_PROCTORING_ERROR_LOG = "https://purl.imsglobal.org/spec/lti-ap/claim/errorlog"

# Services claims
CLAIM_LTI_ACS = "https://purl.imsglobal.org/spec/lti-ap/claim/acs"
CLAIM_LTI_AGS = "https://purl.imsglobal.org/spec/lti-ags/claim/endpoint"
CLAIM_LTI_NRPS = "https://purl.imsglobal.org/spec/lti-nrps/claim/namesroleservice"
CLAIM_LTI_BASIC_OUTCOME = "https://purl.imsglobal.org/spec/lti-bo/claim/basicoutcome"


def _sparse(values: Mapping[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in values.items() if value is not None and value != []}


def _optional_str(value: Any) -> str | None:
    return None if value is None else str(value)


@dataclass(slots=True)
class ResourceLinkClaim:
    claim_name: ClassVar[str] = CLAIM_LTI_RESOURCE_LINK

    identifier: str
    title: str | None = None
    description: str | None = None

    def normalize(self) -> dict[str, Any]:
        return _sparse({"id": self.identifier, "title": self.title, "description": self.description})

    @classmethod
    def denormalize(cls, data: Mapping[str, Any]) -> "ResourceLinkClaim":
        return cls(
            identifier=data["id"],
            title=data.get("title"),
            description=data.get("description"),
        )


@dataclass(slots=True)
class ContextClaim:
    claim_name: ClassVar[str] = CLAIM_LTI_CONTEXT

    TYPE_COURSE_TEMPLATE: ClassVar[str] = "http://purl.imsglobal.org/vocab/lis/v2/course#CourseTemplate"
    TYPE_COURSE_OFFERING: ClassVar[str] = "http://purl.imsglobal.org/vocab/lis/v2/course#CourseOffering"
    TYPE_COURSE_SECTION: ClassVar[str] = "http://purl.imsglobal.org/vocab/lis/v2/course#CourseSection"
    TYPE_GROUP: ClassVar[str] = "http://purl.imsglobal.org/vocab/lis/v2/course#Group"

    identifier: str
    types: list[str] = field(default_factory=list)
    label: str | None = None
    title: str | None = None

    def normalize(self) -> dict[str, Any]:
        return _sparse(
            {"id": self.identifier, "type": list(self.types), "label": self.label, "title": self.title}
        )

    @classmethod
    def denormalize(cls, data: Mapping[str, Any]) -> "ContextClaim":
        return cls(
            identifier=data["id"],
            types=list(data.get("type") or []),
            label=data.get("label"),
            title=data.get("title"),
        )


@dataclass(slots=True)
class PlatformInstanceClaim:
    claim_name: ClassVar[str] = CLAIM_LTI_TOOL_PLATFORM

    guid: str
    contact_email: str | None = None
    description: str | None = None
    name: str | None = None
    url: str | None = None
    product_family_code: str | None = None
    version: str | None = None

    def normalize(self) -> dict[str, Any]:
        return _sparse(
            {
                "guid": self.guid,
                "contact_email": self.contact_email,
                "description": self.description,
                "name": self.name,
                "url": self.url,
                "product_family_code": self.product_family_code,
                "version": self.version,
            }
        )

    @classmethod
    def denormalize(cls, data: Mapping[str, Any]) -> "PlatformInstanceClaim":
        return cls(
            guid=str(data["guid"]),
            contact_email=data.get("contact_email"),
            description=data.get("description"),
            name=data.get("name"),
            url=data.get("url"),
            product_family_code=data.get("product_family_code"),
            version=data.get("version"),
        )


@dataclass(slots=True)
class LaunchPresentationClaim:
    claim_name: ClassVar[str] = CLAIM_LTI_LAUNCH_PRESENTATION

    document_target: str | None = None
    height: str | None = None
    width: str | None = None
    return_url: str | None = None
    locale: str | None = None

    def normalize(self) -> dict[str, Any]:
        return _sparse(
            {
                "document_target": self.document_target,
                "height": self.height,
                "width": self.width,
                "return_url": self.return_url,
                "locale": self.locale,
            }
        )

    @classmethod
    def denormalize(cls, data: Mapping[str, Any]) -> "LaunchPresentationClaim":
        # platforms send dimensions as numbers as often as strings
        return cls(
            document_target=data.get("document_target"),
            height=_optional_str(data.get("height")),
            width=_optional_str(data.get("width")),
            return_url=data.get("return_url"),
            locale=data.get("locale"),
        )


@dataclass(slots=True)
class LisClaim:
    claim_name: ClassVar[str] = CLAIM_LTI_LIS

    course_offering_sourcedid: str | None = None
    course_section_sourcedid: str | None = None
    outcome_service_url: str | None = None
    person_sourcedid: str | None = None
    result_sourcedid: str | None = None

    def normalize(self) -> dict[str, Any]:
        return _sparse(
            {
                "course_offering_sourcedid": self.course_offering_sourcedid,
                "course_section_sourcedid": self.course_section_sourcedid,
                "outcome_service_url": self.outcome_service_url,
                "person_sourcedid": self.person_sourcedid,
                "result_sourcedid": self.result_sourcedid,
            }
        )

    @classmethod
    def denormalize(cls, data: Mapping[str, Any]) -> "LisClaim":
        return cls(
            course_offering_sourcedid=data.get("course_offering_sourcedid"),
            course_section_sourcedid=data.get("course_section_sourcedid"),
            outcome_service_url=data.get("outcome_service_url"),
            person_sourcedid=data.get("person_sourcedid"),
            result_sourcedid=data.get("result_sourcedid"),
        )


@dataclass(slots=True)
class ForUserClaim:
    claim_name: ClassVar[str] = CLAIM_LTI_FOR_USER

    identifier: str
    name: str | None = None
    given_name: str | None = None
    family_name: str | None = None
    email: str | None = None
    person_sourcedid: str | None = None
    roles: list[str] = field(default_factory=list)

    def normalize(self) -> dict[str, Any]:
        return _sparse(
            {
                "user_id": self.identifier,
                "name": self.name,
                "given_name": self.given_name,
                "family_name": self.family_name,
                "email": self.email,
                "person_sourcedid": self.person_sourcedid,
                "roles": list(self.roles),
            }
        )

    @classmethod
    def denormalize(cls, data: Mapping[str, Any]) -> "ForUserClaim":
        return cls(
            identifier=data["user_id"],
            name=data.get("name"),
            given_name=data.get("given_name"),
            family_name=data.get("family_name"),
            email=data.get("email"),
            person_sourcedid=data.get("person_sourcedid"),
            roles=list(data.get("roles") or []),
        )


@dataclass(slots=True)
class DeepLinkingSettingsClaim:
    claim_name: ClassVar[str] = CLAIM_LTI_DEEP_LINKING_SETTINGS

    deep_link_return_url: str
    accepted_types: list[str] = field(default_factory=list)
    accepted_presentation_document_targets: list[str] = field(default_factory=list)
    accepted_media_types: str | None = None
    accept_multiple: bool = True
    auto_create: bool = False
    title: str | None = None
    text: str | None = None
    data: str | None = None

    def normalize(self) -> dict[str, Any]:
        return _sparse(
            {
                "deep_link_return_url": self.deep_link_return_url,
                "accept_types": list(self.accepted_types),
                "accept_presentation_document_targets": list(self.accepted_presentation_document_targets),
                "accept_media_types": self.accepted_media_types,
                "accept_multiple": self.accept_multiple,
                "auto_create": self.auto_create,
                "title": self.title,
                "text": self.text,
                "data": self.data,
            }
        )

    @classmethod
    def denormalize(cls, data: Mapping[str, Any]) -> "DeepLinkingSettingsClaim":
        return cls(
            deep_link_return_url=data["deep_link_return_url"],
            accepted_types=list(data.get("accept_types") or []),
            accepted_presentation_document_targets=list(data.get("accept_presentation_document_targets") or []),
            accepted_media_types=data.get("accept_media_types"),
            accept_multiple=bool(data.get("accept_multiple", True)),
            auto_create=bool(data.get("auto_create", False)),
            title=data.get("title"),
            text=data.get("text"),
            data=data.get("data"),
        )


@dataclass(slots=True)
class DeepLinkingContentItemsClaim:
    claim_name: ClassVar[str] = CLAIM_LTI_DEEP_LINKING_CONTENT_ITEMS

    content_items: list[dict[str, Any]] = field(default_factory=list)

    def normalize(self) -> list[dict[str, Any]]:
        return [dict(item) for item in self.content_items]

    @classmethod
    def denormalize(cls, data: Any) -> "DeepLinkingContentItemsClaim":
        return cls(content_items=[dict(item) for item in data or []])


@dataclass(slots=True)
class ProctoringSettingsClaim:
    claim_name: ClassVar[str] = CLAIM_LTI_PROCTORING_SETTINGS

    data: str | None = None

    def normalize(self) -> dict[str, Any]:
        return _sparse({"data": self.data})

    @classmethod
    def denormalize(cls, data: Mapping[str, Any]) -> "ProctoringSettingsClaim":
        return cls(data=data.get("data"))


@dataclass(slots=True)
class ProctoringVerifiedUserClaim:
    claim_name: ClassVar[str] = CLAIM_LTI_PROCTORING_VERIFIED_USER

    user_data: dict[str, Any] = field(default_factory=dict)

    def normalize(self) -> dict[str, Any]:
        return _sparse(self.user_data)

    @classmethod
    def denormalize(cls, data: Mapping[str, Any]) -> "ProctoringVerifiedUserClaim":
        return cls(user_data=_sparse(data))


@dataclass(slots=True)
class AcsClaim:
    claim_name: ClassVar[str] = CLAIM_LTI_ACS

    actions: list[str]
    assessment_control_url: str

    def normalize(self) -> dict[str, Any]:
        return {"actions": list(self.actions), "assessment_control_url": self.assessment_control_url}

    @classmethod
    def denormalize(cls, data: Mapping[str, Any]) -> "AcsClaim":
        return cls(actions=list(data["actions"]), assessment_control_url=data["assessment_control_url"])


@dataclass(slots=True)
class AgsClaim:
    claim_name: ClassVar[str] = CLAIM_LTI_AGS

    scopes: list[str]
    line_items_container_url: str | None = None
    line_item_url: str | None = None

    def normalize(self) -> dict[str, Any]:
        return _sparse(
            {
                "scope": list(self.scopes),
                "lineitems": self.line_items_container_url,
                "lineitem": self.line_item_url,
            }
        )

    @classmethod
    def denormalize(cls, data: Mapping[str, Any]) -> "AgsClaim":
        scopes = data.get("scope") or []
        # some platforms send the scope list as a space separated string
        if isinstance(scopes, str):
            scopes = scopes.split()
        return cls(
            scopes=list(scopes),
            line_items_container_url=data.get("lineitems"),
            line_item_url=data.get("lineitem"),
        )


@dataclass(slots=True)
class NrpsClaim:
    claim_name: ClassVar[str] = CLAIM_LTI_NRPS

    context_memberships_url: str
    service_versions: list[str] = field(default_factory=list)

    def normalize(self) -> dict[str, Any]:
        return {
            "context_memberships_url": self.context_memberships_url,
            "service_versions": list(self.service_versions),
        }

    @classmethod
    def denormalize(cls, data: Mapping[str, Any]) -> "NrpsClaim":
        return cls(
            context_memberships_url=data["context_memberships_url"],
            service_versions=list(data.get("service_versions") or []),
        )


@dataclass(slots=True)
class BasicOutcomeClaim:
    claim_name: ClassVar[str] = CLAIM_LTI_BASIC_OUTCOME

    lis_result_sourcedid: str
    lis_outcome_service_url: str

    def normalize(self) -> dict[str, Any]:
        return {
            "lis_result_sourcedid": self.lis_result_sourcedid,
            "lis_outcome_service_url": self.lis_outcome_service_url,
        }

    @classmethod
    def denormalize(cls, data: Mapping[str, Any]) -> "BasicOutcomeClaim":
        return cls(
            lis_result_sourcedid=data["lis_result_sourcedid"],
            lis_outcome_service_url=data["lis_outcome_service_url"],
        )


CLAIM_TYPES: dict[str, type] = {
    claim_class.claim_name: claim_class
    for claim_class in (
        ResourceLinkClaim,
        ContextClaim,
        PlatformInstanceClaim,
        LaunchPresentationClaim,
        LisClaim,
        ForUserClaim,
        DeepLinkingSettingsClaim,
        DeepLinkingContentItemsClaim,
        ProctoringSettingsClaim,
        ProctoringVerifiedUserClaim,
        AcsClaim,
        AgsClaim,
        NrpsClaim,
        BasicOutcomeClaim,
    )
}


def denormalize_claim(claim_name: str, data: Any) -> Any:
    """Decode ``data`` with the claim class registered for ``claim_name``."""

    claim_class = CLAIM_TYPES.get(claim_name)
    if claim_class is None:
        raise KeyError(f"No claim type registered for {claim_name}")
    return claim_class.denormalize(data)
