"""Authenticated service calls from a tool to its platform (AGS, NRPS, ...).

Access tokens are obtained with the OAuth2 client credentials grant using a
signed JWT client assertion, then cached per registration and scope set for
the lifetime announced by the platform.
"""

from __future__ import annotations

import hashlib
import logging
import time
from threading import Lock
from typing import Any, Iterable, Mapping, Protocol

import httpx

from .errors import LTIAuthorizationError, LTIError, LTIServiceError
from .registration import Registration
from .security import TokenCodec


logger = logging.getLogger(__name__)


GRANT_TYPE = "client_credentials"
CLIENT_ASSERTION_TYPE = "urn:ietf:params:oauth:client-assertion-type:jwt-bearer"
CLIENT_ASSERTION_TTL = 600


class CacheStore(Protocol):
    def get(self, key: str) -> Any | None:
        ...

    def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        ...

    def delete(self, key: str) -> None:
        ...


class InMemoryCache:
    """Thread safe key/value cache with per item expiry."""

    def __init__(self) -> None:
        self._items: dict[str, tuple[Any, float | None]] = {}
        self._lock = Lock()

    def get(self, key: str) -> Any | None:
        with self._lock:
            item = self._items.get(key)
            if item is None:
                return None
            value, expires_at = item
            if expires_at is not None and expires_at <= time.monotonic():
                self._items.pop(key, None)
                return None
            return value

    def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        expires_at = time.monotonic() + ttl if ttl is not None else None
        with self._lock:
            self._items[key] = (value, expires_at)

    def delete(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)


class ServiceClient:
    CACHE_PREFIX = "lti1p3-service-client-token"

    def __init__(
        self,
        http_client: httpx.Client,
        cache: CacheStore,
        codec: TokenCodec,
        assertion_ttl: int = CLIENT_ASSERTION_TTL,
    ) -> None:
        self._client = http_client
        self._cache = cache
        self._codec = codec
        self._assertion_ttl = assertion_ttl

    def request(
        self,
        registration: Registration,
        method: str,
        uri: str,
        options: Mapping[str, Any] | None = None,
        scopes: Iterable[str] = (),
    ) -> httpx.Response:
        """Perform ``method uri`` with a bearer token valid for ``scopes``.

        ``options`` are passed to :meth:`httpx.Client.request` (``json``,
        ``params``, ``headers``...). A 401 answer evicts the cached token and
        the call is retried once with a fresh one.
        """

        scope_list = list(scopes)
        response = self._send(registration, method, uri, options, scope_list, force_refresh=False)

        if response.status_code == httpx.codes.UNAUTHORIZED:
            logger.warning(
                "Jeton de service refusé pour la registration %s, renouvellement et nouvel essai",
                registration.identifier,
            )
            self._cache.delete(self.cache_key(registration, scope_list))
            response = self._send(registration, method, uri, options, scope_list, force_refresh=True)
            if response.status_code == httpx.codes.UNAUTHORIZED:
                raise LTIAuthorizationError(
                    f"Cannot perform request: access token rejected by {uri} ({response.status_code})"
                )

        if response.status_code >= 400:
            raise LTIServiceError(
                f"Cannot perform request: {method.upper()} {uri} returned {response.status_code}: "
                f"{response.text.strip()}"
            )
        return response

    def cache_key(self, registration: Registration, scopes: Iterable[str]) -> str:
        scope_hash = hashlib.sha256(" ".join(sorted(scopes)).encode("utf-8")).hexdigest()
        return f"{self.CACHE_PREFIX}-{registration.identifier}-{scope_hash}"

    def get_access_token(
        self,
        registration: Registration,
        scopes: Iterable[str],
        *,
        force_refresh: bool = False,
    ) -> str:
        scope_list = list(scopes)
        cache_key = self.cache_key(registration, scope_list)

        if not force_refresh:
            cached = self._cache.get(cache_key)
            if cached:
                logger.debug("Jeton de service servi depuis le cache pour %s", registration.identifier)
                return cached

        token_url = registration.platform.oauth2_access_token_url
        if not token_url:
            raise LTIServiceError("Cannot get access token: platform access token url is not configured")

        form_data = {
            "grant_type": GRANT_TYPE,
            "client_assertion_type": CLIENT_ASSERTION_TYPE,
            "client_assertion": self._client_assertion(registration, token_url),
            "scope": " ".join(scope_list),
        }

        try:
            response = self._client.post(token_url, data=form_data)
        except httpx.HTTPError as exc:
            raise LTIServiceError(f"Cannot get access token: {exc}") from exc

        if response.status_code not in (httpx.codes.OK, httpx.codes.CREATED):
            raise LTIServiceError(
                f"Cannot get access token: invalid response http status code {response.status_code}"
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise LTIServiceError(f"Cannot get access token: {exc}") from exc

        access_token = body.get("access_token") if isinstance(body, Mapping) else None
        expires_in = body.get("expires_in") if isinstance(body, Mapping) else None
        if not access_token or not expires_in:
            raise LTIServiceError("Cannot get access token: invalid response body")

        try:
            ttl = int(expires_in)
        except (TypeError, ValueError) as exc:
            raise LTIServiceError("Cannot get access token: invalid response body") from exc

        self._cache.set(cache_key, access_token, ttl)
        logger.info(
            "Jeton de service obtenu pour la registration %s (expire dans %ss)",
            registration.identifier,
            ttl,
        )
        return access_token

    def _client_assertion(self, registration: Registration, token_url: str) -> str:
        tool_key_chain = registration.tool_key_chain
        if tool_key_chain is None:
            raise LTIServiceError("Cannot get access token: tool key chain is not configured")
        claims = {
            "iss": registration.tool.audience,
            "sub": registration.client_id,
            "aud": [registration.platform.audience, token_url],
        }
        try:
            return self._codec.build({}, claims, tool_key_chain, ttl=self._assertion_ttl)
        except LTIError as exc:
            raise LTIServiceError(f"Cannot get access token: {exc}") from exc

    def _send(
        self,
        registration: Registration,
        method: str,
        uri: str,
        options: Mapping[str, Any] | None,
        scopes: list[str],
        *,
        force_refresh: bool,
    ) -> httpx.Response:
        access_token = self.get_access_token(registration, scopes, force_refresh=force_refresh)
        request_options = dict(options or {})
        headers = dict(request_options.pop("headers", None) or {})
        headers["Authorization"] = f"Bearer {access_token}"
        try:
            return self._client.request(method, uri, headers=headers, **request_options)
        except httpx.HTTPError as exc:
            raise LTIServiceError(f"Cannot perform request: {exc}") from exc
