"""Tests for keys, token codec, JWKS resolution and the nonce store."""

from __future__ import annotations

import json
import time
from datetime import datetime, timedelta, timezone

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives import serialization
from jwt.algorithms import RSAAlgorithm

from backend.lti_core.errors import LTIConfigurationError, LTIError
from backend.lti_core.security import (
    InMemoryNonceRepository,
    JwksFetcher,
    Key,
    KeyChain,
    KeyResolver,
    Nonce,
    NonceGenerator,
    TokenCodec,
)
from backend.lti_core.service_client import InMemoryCache


def _jwk(public_pem: str, kid: str) -> dict:
    public_key = serialization.load_pem_public_key(public_pem.encode("utf-8"))
    jwk = json.loads(RSAAlgorithm.to_jwk(public_key))
    jwk.update({"kid": kid, "alg": "RS256", "use": "sig"})
    return jwk


def test_key_loads_from_file_reference(tmp_path, platform_keys) -> None:
    private_pem, public_pem = platform_keys
    key_path = tmp_path / "public.pem"
    key_path.write_text(public_pem, encoding="utf-8")

    key = Key(f"file://{key_path}")

    assert key.public.public_numbers() == Key(private_pem).public.public_numbers()
    assert not key.is_private


def test_key_with_passphrase(tmp_path) -> None:
    from cryptography.hazmat.primitives.asymmetric import rsa

    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    encrypted = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.BestAvailableEncryption(b"secret"),
    ).decode("utf-8")

    key = Key(encrypted, passphrase="secret")

    assert key.private.private_numbers() == private_key.private_numbers()
    with pytest.raises(LTIConfigurationError):
        Key(encrypted, passphrase="wrong").private


def test_missing_key_file_is_a_configuration_error(tmp_path) -> None:
    with pytest.raises(LTIConfigurationError):
        Key(f"file://{tmp_path / 'absent.pem'}").public


def test_codec_rejects_unparseable_token(codec) -> None:
    with pytest.raises(LTIError, match="Cannot parse token"):
        codec.parse("not-a-token")


def test_codec_verify_checks_key_expiry_and_audience(codec, sign, platform_key_chain, foreign_key_chain) -> None:
    token = codec.parse(sign({"aud": "client-1"}, platform_key_chain))

    assert codec.verify(token, platform_key_chain.public_key)
    assert codec.verify(token, platform_key_chain.public_key, audience="client-1")
    assert not codec.verify(token, platform_key_chain.public_key, audience="someone-else")
    assert not codec.verify(token, foreign_key_chain.public_key)

    expired = codec.parse(sign({"aud": "client-1"}, platform_key_chain, ttl=-60))
    assert not codec.verify(expired, platform_key_chain.public_key)


def test_codec_tolerates_one_second_of_clock_skew(codec, platform_key_chain) -> None:
    issued = int(time.time()) + 1
    claims_map = {"iss": "x", "iat": issued, "nbf": issued, "exp": issued + 600}
    early = jwt.encode(claims_map, platform_key_chain.private_key.private, algorithm="RS256")

    assert TokenCodec().verify(codec.parse(early), platform_key_chain.public_key)

    too_early = jwt.encode(
        {**claims_map, "nbf": issued + 30}, platform_key_chain.private_key.private, algorithm="RS256"
    )
    assert not codec.verify(codec.parse(too_early), platform_key_chain.public_key)


def test_codec_build_requires_private_key(codec, platform_keys) -> None:
    public_only = KeyChain(identifier="kid", key_set_name="set", public_key=Key(platform_keys[1]))

    with pytest.raises(LTIError, match="Cannot generate message token"):
        codec.build({}, {"iss": "x"}, public_only)


def test_jwks_fetcher_returns_matching_key_and_caches_document(platform_keys) -> None:
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(str(request.url))
        return httpx.Response(200, json={"keys": [_jwk(platform_keys[1], "other"), _jwk(platform_keys[1], "kid-1")]})

    fetcher = JwksFetcher(httpx.Client(transport=httpx.MockTransport(handler)), cache=InMemoryCache())

    first = fetcher.fetch_key("https://platform.example/jwks", "kid-1")
    second = fetcher.fetch_key("https://platform.example/jwks", "kid-1")

    expected = Key(platform_keys[0]).public.public_numbers()
    assert first.public.public_numbers() == expected
    assert second.algorithm == "RS256"
    assert calls == ["https://platform.example/jwks"]


def test_jwks_fetcher_unknown_key_id(platform_keys) -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"keys": [_jwk(platform_keys[1], "a")]}))
    fetcher = JwksFetcher(httpx.Client(transport=transport))

    with pytest.raises(LTIError, match="Could not find key id missing from url https://platform.example/jwks"):
        fetcher.fetch_key("https://platform.example/jwks", "missing")


def test_jwks_fetcher_wraps_http_errors() -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(500))
    fetcher = JwksFetcher(httpx.Client(transport=transport))

    with pytest.raises(LTIError, match="Error during JWK fetching for url https://platform.example/jwks"):
        fetcher.fetch_key("https://platform.example/jwks", "kid-1")


def test_key_resolver_prefers_configured_key_chain(make_registration, key_resolver, platform_key_chain) -> None:
    registration = make_registration()

    assert key_resolver.resolve_platform_key(registration, "any") is platform_key_chain.public_key


def test_key_resolver_falls_back_to_jwks(make_registration, tool_keys) -> None:
    requested: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requested.append(str(request.url))
        return httpx.Response(200, json={"keys": [_jwk(tool_keys[1], "tool-kid")]})

    resolver = KeyResolver(JwksFetcher(httpx.Client(transport=httpx.MockTransport(handler))))
    registration = make_registration(tool_key_chain=None)

    key = resolver.resolve_tool_key(registration, "tool-kid")

    assert key.public.public_numbers() == Key(tool_keys[0]).public.public_numbers()
    assert requested == ["https://tool.example/jwks"]


def test_key_resolver_without_any_source(make_registration, key_resolver) -> None:
    registration = make_registration(platform_key_chain=None, platform_jwks_url=None)

    with pytest.raises(LTIError, match="neither key chain nor JWKS url"):
        key_resolver.resolve_platform_key(registration, "kid")


def test_nonce_generator_produces_unique_values() -> None:
    generator = NonceGenerator(ttl=30)

    first, second = generator.generate(), generator.generate()

    assert first.value != second.value
    assert not first.is_expired()
    assert first.is_expired(now=datetime.now(timezone.utc) + timedelta(seconds=31))


def test_nonce_repository_save_is_check_and_set() -> None:
    repository = InMemoryNonceRepository()
    future = datetime.now(timezone.utc) + timedelta(minutes=10)
    past = datetime.now(timezone.utc) - timedelta(minutes=10)

    assert repository.save(Nonce("n1", future))
    assert not repository.save(Nonce("n1", future))
    assert repository.find("n1").expires_at == future

    assert repository.save(Nonce("n2", past))
    assert repository.save(Nonce("n2", future))
    assert repository.find("unknown") is None
    assert len(repository) == 2


def test_nonce_repository_drops_entries_past_retention() -> None:
    repository = InMemoryNonceRepository(retention=60)
    now = datetime.now(timezone.utc)

    for index in range(1000):
        repository.save(Nonce(f"old-{index}", now - timedelta(days=30)))
    assert len(repository) == 0

    recently_expired = Nonce("recent", now - timedelta(seconds=5))
    repository.save(recently_expired)
    repository.save(Nonce("fresh", now + timedelta(minutes=10)))

    assert repository.find("recent") is recently_expired
    assert repository.find("fresh") is not None
    assert len(repository) == 2
