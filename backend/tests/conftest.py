"""Shared fixtures: RSA key chains, registrations and core collaborators."""

from __future__ import annotations

from typing import Any, Callable

import httpx
import pytest

from backend.lti_core.registration import InMemoryRegistrationRepository, Platform, Registration, Tool
from backend.lti_core.security import (
    InMemoryNonceRepository,
    JwksFetcher,
    Key,
    KeyChain,
    KeyResolver,
    NonceGenerator,
    TokenCodec,
)
from backend.tests.factories import CLIENT_ID, PLATFORM_AUDIENCE, TOOL_AUDIENCE, generate_pem_pair


@pytest.fixture(scope="session")
def platform_keys() -> tuple[str, str]:
    return generate_pem_pair()


@pytest.fixture(scope="session")
def tool_keys() -> tuple[str, str]:
    return generate_pem_pair()


@pytest.fixture(scope="session")
def foreign_keys() -> tuple[str, str]:
    return generate_pem_pair()


def _key_chain(identifier: str, pair: tuple[str, str]) -> KeyChain:
    private_pem, public_pem = pair
    return KeyChain(
        identifier=identifier,
        key_set_name=f"{identifier}-set",
        public_key=Key(public_pem),
        private_key=Key(private_pem),
    )


@pytest.fixture
def platform_key_chain(platform_keys) -> KeyChain:
    return _key_chain("platform-kid", platform_keys)


@pytest.fixture
def tool_key_chain(tool_keys) -> KeyChain:
    return _key_chain("tool-kid", tool_keys)


@pytest.fixture
def foreign_key_chain(foreign_keys) -> KeyChain:
    return _key_chain("platform-kid", foreign_keys)


@pytest.fixture
def make_registration(platform_key_chain, tool_key_chain) -> Callable[..., Registration]:
    def factory(**overrides: Any) -> Registration:
        values: dict[str, Any] = {
            "identifier": "registration-1",
            "client_id": CLIENT_ID,
            "platform": Platform(
                identifier="platform",
                name="Platform",
                audience=PLATFORM_AUDIENCE,
                oidc_authentication_url=f"{PLATFORM_AUDIENCE}/oidc/auth",
                oauth2_access_token_url=f"{PLATFORM_AUDIENCE}/token",
            ),
            "tool": Tool(
                identifier="tool",
                name="Tool",
                audience=TOOL_AUDIENCE,
                oidc_initiation_url=f"{TOOL_AUDIENCE}/lti/login",
                launch_url=f"{TOOL_AUDIENCE}/lti/launch",
                deep_linking_url=f"{TOOL_AUDIENCE}/lti/deep-link",
            ),
            "deployment_ids": ("deployment-1", "deployment-2"),
            "platform_key_chain": platform_key_chain,
            "tool_key_chain": tool_key_chain,
            "platform_jwks_url": f"{PLATFORM_AUDIENCE}/jwks",
            "tool_jwks_url": f"{TOOL_AUDIENCE}/jwks",
        }
        values.update(overrides)
        return Registration(**values)

    return factory


@pytest.fixture
def registration(make_registration) -> Registration:
    return make_registration()


@pytest.fixture
def registrations(registration) -> InMemoryRegistrationRepository:
    return InMemoryRegistrationRepository([registration])


@pytest.fixture
def codec() -> TokenCodec:
    return TokenCodec()


@pytest.fixture
def nonce_repository() -> InMemoryNonceRepository:
    return InMemoryNonceRepository()


@pytest.fixture
def nonce_generator() -> NonceGenerator:
    return NonceGenerator()


@pytest.fixture
def offline_http_client():
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError(f"unexpected network call to {request.url}")

    client = httpx.Client(transport=httpx.MockTransport(handler))
    yield client
    client.close()


@pytest.fixture
def key_resolver(offline_http_client) -> KeyResolver:
    return KeyResolver(JwksFetcher(offline_http_client))


@pytest.fixture
def sign(codec) -> Callable[..., str]:
    def _sign(claims: dict[str, Any], key_chain: KeyChain, ttl: int = 600) -> str:
        return codec.build({}, claims, key_chain, ttl=ttl)

    return _sign
