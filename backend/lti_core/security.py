"""Key material, signed token handling, JWKS resolution and replay protection."""

from __future__ import annotations

import base64
import logging
import secrets
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from threading import RLock
from typing import TYPE_CHECKING, Any, Mapping, Protocol

import httpx
import jwt
from cryptography.hazmat.primitives import serialization
from jwt import PyJWKError, PyJWTError

from .errors import LTIConfigurationError, LTIError
from .payload import HEADER_KID, PAYLOAD_TTL, Token

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .registration import Registration
    from .service_client import CacheStore


logger = logging.getLogger(__name__)


FILE_PREFIX = "file://"
DEFAULT_ALGORITHM = "RS256"
NONCE_TTL = 600
JWKS_CACHE_TTL = 86400


class Key:
    """A PEM encoded key given inline or as a ``file://`` reference.

    The key is parsed lazily on first use with ``cryptography`` and the parsed
    object is kept for the lifetime of the instance.
    """

    def __init__(self, content: str, passphrase: str | None = None, algorithm: str = DEFAULT_ALGORITHM) -> None:
        self.content = content
        self.passphrase = passphrase
        self.algorithm = algorithm
        self._public: Any = None
        self._private: Any = None

    @classmethod
    def from_jwk(cls, data: Mapping[str, Any]) -> "Key":
        jwk = jwt.PyJWK.from_dict(dict(data))
        key = cls(content="", algorithm=jwk.algorithm_name or DEFAULT_ALGORITHM)
        key._public = jwk.key
        return key

    def _pem(self) -> bytes:
        if self.content.startswith(FILE_PREFIX):
            path = Path(self.content[len(FILE_PREFIX):])
            if not path.exists():
                raise LTIConfigurationError(f"Le fichier de clé {str(path)!r} est introuvable.")
            return path.read_bytes()
        return self.content.replace("\\n", "\n").strip().encode("utf-8")

    def _password(self) -> bytes | None:
        return self.passphrase.encode("utf-8") if self.passphrase else None

    @property
    def is_private(self) -> bool:
        return self._private is not None or b"PRIVATE KEY" in self._pem()

    @property
    def private(self) -> Any:
        if self._private is None:
            try:
                self._private = serialization.load_pem_private_key(self._pem(), password=self._password())
            except (TypeError, ValueError) as exc:
                raise LTIConfigurationError("Impossible de charger la clé privée LTI (format PEM invalide).") from exc
        return self._private

    @property
    def public(self) -> Any:
        if self._public is None:
            if self.is_private:
                self._public = self.private.public_key()
            else:
                try:
                    self._public = serialization.load_pem_public_key(self._pem())
                except ValueError as exc:
                    raise LTIConfigurationError(
                        "Impossible de charger la clé publique LTI (format PEM invalide)."
                    ) from exc
        return self._public


@dataclass(slots=True)
class KeyChain:
    identifier: str
    key_set_name: str
    public_key: Key
    private_key: Key | None = None


class TokenCodec:
    """Parses, verifies and builds compact JWS tokens with PyJWT."""

    def __init__(self, leeway: int = 1) -> None:
        self._leeway = leeway

    def parse(self, raw: str) -> Token:
        try:
            headers = jwt.get_unverified_header(raw)
            claims = jwt.decode(raw, options={"verify_signature": False})
        except PyJWTError as exc:
            raise LTIError(f"Cannot parse token: {exc}") from exc
        return Token(raw=raw, headers=dict(headers), claims=dict(claims))

    def verify(self, token: Token, key: Key, *, audience: str | None = None) -> bool:
        """Check signature and time based claims, plus ``aud`` when an audience is given."""

        try:
            jwt.decode(
                token.raw,
                key=key.public,
                algorithms=[key.algorithm],
                audience=audience,
                leeway=self._leeway,
                options={"verify_aud": audience is not None},
            )
        except PyJWTError as exc:
            logger.debug("Vérification du jeton refusée: %s", exc)
            return False
        return True

    def build(
        self,
        headers: Mapping[str, Any],
        claims: Mapping[str, Any],
        key_chain: KeyChain,
        ttl: int = PAYLOAD_TTL,
    ) -> str:
        if key_chain.private_key is None:
            raise LTIError(f"Cannot generate message token: key chain {key_chain.identifier} has no private key")
        now = int(time.time())
        payload = {
            **claims,
            "jti": str(uuid.uuid4()),
            "iat": now,
            "nbf": now,
            "exp": now + ttl,
        }
        token_headers = {**headers, HEADER_KID: key_chain.identifier}
        try:
            return jwt.encode(
                payload,
                key_chain.private_key.private,
                algorithm=key_chain.private_key.algorithm,
                headers=token_headers,
            )
        except (PyJWTError, TypeError, ValueError) as exc:
            raise LTIError(f"Cannot generate message token: {exc}") from exc


class JwksFetcher:
    """Fetches public keys from a JWKS endpoint, caching the documents per URL."""

    CACHE_PREFIX = "lti-jwks"

    def __init__(
        self,
        http_client: httpx.Client,
        cache: "CacheStore | None" = None,
        cache_ttl: int = JWKS_CACHE_TTL,
    ) -> None:
        self._client = http_client
        self._cache = cache
        self._cache_ttl = cache_ttl

    def fetch_key(self, jwks_url: str, key_id: str) -> Key:
        try:
            document = self._fetch_document(jwks_url)
            for entry in document.get("keys") or []:
                if isinstance(entry, Mapping) and entry.get("kid") == key_id:
                    return Key.from_jwk(entry)
        except (httpx.HTTPError, PyJWKError, ValueError) as exc:
            raise LTIError(f"Error during JWK fetching for url {jwks_url}: {exc}") from exc

        raise LTIError(f"Could not find key id {key_id} from url {jwks_url}")

    def _cache_key(self, jwks_url: str) -> str:
        encoded = base64.urlsafe_b64encode(jwks_url.encode("utf-8")).decode("ascii")
        return f"{self.CACHE_PREFIX}-{encoded}"

    def _fetch_document(self, jwks_url: str) -> Mapping[str, Any]:
        cache_key = self._cache_key(jwks_url)
        if self._cache is not None:
            cached = self._cache.get(cache_key)
            if cached is not None:
                logger.debug("JWKS servi depuis le cache pour %s", jwks_url)
                return cached

        logger.debug("Récupération du JWKS %s", jwks_url)
        response = self._client.get(jwks_url, headers={"Accept": "application/json"})
        response.raise_for_status()
        document = response.json()
        if not isinstance(document, Mapping):
            raise ValueError("JWKS document must be a JSON object")

        if self._cache is not None:
            self._cache.set(cache_key, document, self._cache_ttl)
        return document


class KeyResolver:
    """Picks the verification key for a registration.

    A statically configured key chain always wins; the JWKS endpoint of the
    relevant side is only queried when no key chain is configured.
    """

    def __init__(self, fetcher: JwksFetcher) -> None:
        self._fetcher = fetcher

    def resolve_platform_key(self, registration: "Registration", key_id: str | None) -> Key:
        if registration.platform_key_chain is not None:
            return registration.platform_key_chain.public_key
        return self._fetch(registration.platform_jwks_url, key_id, registration)

    def resolve_tool_key(self, registration: "Registration", key_id: str | None) -> Key:
        if registration.tool_key_chain is not None:
            return registration.tool_key_chain.public_key
        return self._fetch(registration.tool_jwks_url, key_id, registration)

    def _fetch(self, jwks_url: str | None, key_id: str | None, registration: "Registration") -> Key:
        if not jwks_url:
            raise LTIError(f"Registration {registration.identifier} has neither key chain nor JWKS url configured")
        if not key_id:
            raise LTIError("Cannot fetch JWKS key without key id")
        return self._fetcher.fetch_key(jwks_url, key_id)


@dataclass(slots=True)
class Nonce:
    value: str
    expires_at: datetime | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        current = now or datetime.now(timezone.utc)
        return current >= self.expires_at


class NonceGenerator:
    def __init__(self, ttl: int = NONCE_TTL) -> None:
        self.ttl = ttl

    def generate(self) -> Nonce:
        return Nonce(
            value=secrets.token_urlsafe(32),
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=self.ttl),
        )


class NonceRepository(Protocol):
    def find(self, value: str) -> Nonce | None:
        ...

    def save(self, nonce: Nonce) -> bool:
        """Persist ``nonce`` unless an unexpired entry with the same value exists.

        Returns ``False`` when the value is already held, which callers treat
        as a replay.
        """
        ...


class InMemoryNonceRepository:
    """Process local nonce store with an atomic check-and-set ``save``.

    Entries are kept ``retention`` seconds past their expiry, so an expired
    nonce is still recognised for a while, then dropped on the next ``save``.
    """

    def __init__(self, retention: int = NONCE_TTL) -> None:
        self._nonces: dict[str, Nonce] = {}
        self._retention = timedelta(seconds=retention)
        self._lock = RLock()

    def find(self, value: str) -> Nonce | None:
        with self._lock:
            return self._nonces.get(value)

    def save(self, nonce: Nonce) -> bool:
        with self._lock:
            now = datetime.now(timezone.utc)
            self._purge(now)
            existing = self._nonces.get(nonce.value)
            if existing is not None and not existing.is_expired(now):
                return False
            if not self._is_stale(nonce, now):
                self._nonces[nonce.value] = nonce
            return True

    def _is_stale(self, nonce: Nonce, now: datetime) -> bool:
        return nonce.expires_at is not None and nonce.expires_at + self._retention <= now

    def _purge(self, now: datetime) -> None:
        stale = [value for value, nonce in self._nonces.items() if self._is_stale(nonce, now)]
        for value in stale:
            del self._nonces[value]

    def __len__(self) -> int:
        with self._lock:
            return len(self._nonces)
