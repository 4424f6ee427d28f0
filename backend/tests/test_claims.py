"""Tests for claim value objects and the claim registry."""

from __future__ import annotations

import pytest

from backend.lti_core import claims


FULL_CLAIMS = [
    claims.ResourceLinkClaim(identifier="link-1", title="Quiz", description="Weekly quiz"),
    claims.ContextClaim(
        identifier="course-1",
        types=[claims.ContextClaim.TYPE_COURSE_OFFERING],
        label="C1",
        title="Course one",
    ),
    claims.PlatformInstanceClaim(
        guid="guid-1",
        contact_email="admin@platform.example",
        description="Main LMS",
        name="LMS",
        url="https://platform.example",
        product_family_code="moodle",
        version="4.3",
    ),
    claims.LaunchPresentationClaim(
        document_target="iframe",
        height="600",
        width="800",
        return_url="https://platform.example/return",
        locale="fr-CA",
    ),
    claims.LisClaim(
        course_offering_sourcedid="co",
        course_section_sourcedid="cs",
        outcome_service_url="https://platform.example/outcomes",
        person_sourcedid="person",
        result_sourcedid="result",
    ),
    claims.ForUserClaim(
        identifier="user-2",
        name="Jane Doe",
        given_name="Jane",
        family_name="Doe",
        email="jane@example.com",
        person_sourcedid="jd",
        roles=["http://purl.imsglobal.org/vocab/lis/v2/membership#Learner"],
    ),
    claims.DeepLinkingSettingsClaim(
        deep_link_return_url="https://platform.example/deep-link",
        accepted_types=["ltiResourceLink"],
        accepted_presentation_document_targets=["iframe", "window"],
        accepted_media_types="image/*",
        accept_multiple=False,
        auto_create=True,
        title="Pick",
        text="Pick an activity",
        data="opaque",
    ),
    claims.DeepLinkingContentItemsClaim(content_items=[{"type": "ltiResourceLink", "url": "https://tool.example"}]),
    claims.ProctoringSettingsClaim(data="settings"),
    claims.ProctoringVerifiedUserClaim(user_data={"given_name": "Jane", "picture": "https://example.com/p.png"}),
    claims.AcsClaim(actions=["pause", "terminate"], assessment_control_url="https://platform.example/acs"),
    claims.AgsClaim(
        scopes=["https://purl.imsglobal.org/spec/lti-ags/scope/score"],
        line_items_container_url="https://platform.example/lineitems",
        line_item_url="https://platform.example/lineitems/1",
    ),
    claims.NrpsClaim(
        context_memberships_url="https://platform.example/memberships",
        service_versions=["2.0"],
    ),
    claims.BasicOutcomeClaim(
        lis_result_sourcedid="sourced",
        lis_outcome_service_url="https://platform.example/outcome",
    ),
]

SPARSE_CLAIMS = [
    claims.ResourceLinkClaim(identifier="link-1"),
    claims.ContextClaim(identifier="course-1"),
    claims.PlatformInstanceClaim(guid="guid-1"),
    claims.LaunchPresentationClaim(),
    claims.LisClaim(),
    claims.ForUserClaim(identifier="user-2"),
    claims.DeepLinkingSettingsClaim(deep_link_return_url="https://platform.example/deep-link"),
    claims.DeepLinkingContentItemsClaim(),
    claims.ProctoringSettingsClaim(),
    claims.ProctoringVerifiedUserClaim(),
    claims.AgsClaim(scopes=[]),
    claims.NrpsClaim(context_memberships_url="https://platform.example/memberships"),
]


@pytest.mark.parametrize("claim", FULL_CLAIMS + SPARSE_CLAIMS, ids=lambda claim: type(claim).__name__)
def test_denormalize_restores_normalized_claim(claim) -> None:
    assert type(claim).denormalize(claim.normalize()) == claim


def test_normalize_omits_absent_fields() -> None:
    assert claims.ResourceLinkClaim(identifier="link-1").normalize() == {"id": "link-1"}
    assert claims.LaunchPresentationClaim().normalize() == {}
    assert claims.LisClaim(person_sourcedid="p").normalize() == {"person_sourcedid": "p"}
    assert claims.ContextClaim(identifier="course-1").normalize() == {"id": "course-1"}
    assert claims.ForUserClaim(identifier="user-2").normalize() == {"user_id": "user-2"}
    assert claims.AgsClaim(scopes=[]).normalize() == {}
    assert claims.DeepLinkingSettingsClaim(deep_link_return_url="https://platform.example/return").normalize() == {
        "deep_link_return_url": "https://platform.example/return",
        "accept_multiple": True,
        "auto_create": False,
    }


def test_deep_linking_settings_use_wire_names() -> None:
    normalized = claims.DeepLinkingSettingsClaim(
        deep_link_return_url="https://platform.example/return",
        accepted_types=["ltiResourceLink"],
    ).normalize()

    assert normalized == {
        "deep_link_return_url": "https://platform.example/return",
        "accept_types": ["ltiResourceLink"],
        "accept_multiple": True,
        "auto_create": False,
    }


def test_denormalize_does_not_mutate_source() -> None:
    source = {"user_id": "user-2", "roles": ["Learner"]}
    snapshot = {"user_id": "user-2", "roles": ["Learner"]}

    claim = claims.ForUserClaim.denormalize(source)
    claim.roles.append("Instructor")

    assert source == snapshot


def test_ags_scope_accepts_space_separated_string() -> None:
    claim = claims.AgsClaim.denormalize({"scope": "scope-a scope-b", "lineitem": "https://lms/lineitems/1"})

    assert claim.scopes == ["scope-a", "scope-b"]
    assert claim.line_item_url == "https://lms/lineitems/1"


def test_launch_presentation_numeric_dimensions_are_strings() -> None:
    claim = claims.LaunchPresentationClaim.denormalize({"height": 600, "width": 800})

    assert claim.height == "600"
    assert claim.width == "800"


def test_registry_maps_claim_names() -> None:
    assert claims.CLAIM_TYPES[claims.CLAIM_LTI_RESOURCE_LINK] is claims.ResourceLinkClaim
    assert claims.CLAIM_TYPES[claims.CLAIM_LTI_AGS] is claims.AgsClaim
    assert len(claims.CLAIM_TYPES) == 14

    decoded = claims.denormalize_claim(claims.CLAIM_LTI_NRPS, {"context_memberships_url": "https://lms/m"})
    assert decoded == claims.NrpsClaim(context_memberships_url="https://lms/m")

    with pytest.raises(KeyError):
        claims.denormalize_claim("https://example.com/unknown", {})


def test_proctoring_claim_names_have_no_stray_whitespace() -> None:
    for name in (claims.CLAIM_LTI_PROCTORING_ERROR_MESSAGE, claims.CLAIM_LTI_PROCTORING_ERROR_LOG):
        assert name == name.strip()
        assert " " not in name
