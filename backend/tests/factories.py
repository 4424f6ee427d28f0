"""Constants and builders shared by the LTI test modules."""

from __future__ import annotations

from typing import Any

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from backend.lti_core import claims as lti_claims


PLATFORM_AUDIENCE = "https://platform.example"
TOOL_AUDIENCE = "https://tool.example"
CLIENT_ID = "client-1"

# marks a claim to remove from the defaults
DROP = object()


def generate_pem_pair() -> tuple[str, str]:
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("utf-8")
    return private_pem, public_pem


def with_overrides(values: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    merged = dict(values)
    for name, value in overrides.items():
        if value is DROP:
            merged.pop(name, None)
        else:
            merged[name] = value
    return merged


def launch_claims(**overrides: Any) -> dict[str, Any]:
    """Claims of a resource link launch issued by the platform for registration-1."""

    values: dict[str, Any] = {
        "iss": PLATFORM_AUDIENCE,
        "aud": CLIENT_ID,
        "sub": "user-1",
        "nonce": "N1",
        lti_claims.CLAIM_LTI_VERSION: "1.3.0",
        lti_claims.CLAIM_LTI_MESSAGE_TYPE: "LtiResourceLinkRequest",
        lti_claims.CLAIM_LTI_DEPLOYMENT_ID: "deployment-1",
        lti_claims.CLAIM_LTI_ROLES: ["http://purl.imsglobal.org/vocab/lis/v2/membership#Learner"],
        lti_claims.CLAIM_LTI_RESOURCE_LINK: {"id": "link1"},
    }
    return with_overrides(values, overrides)


def tool_message_claims(**overrides: Any) -> dict[str, Any]:
    """Claims of a deep linking response sent by the tool of registration-1."""

    values: dict[str, Any] = {
        "iss": CLIENT_ID,
        "aud": PLATFORM_AUDIENCE,
        "nonce": "T1",
        lti_claims.CLAIM_LTI_VERSION: "1.3.0",
        lti_claims.CLAIM_LTI_MESSAGE_TYPE: "LtiDeepLinkingResponse",
        lti_claims.CLAIM_LTI_DEPLOYMENT_ID: "deployment-1",
    }
    return with_overrides(values, overrides)
