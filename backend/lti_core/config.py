"""Environment driven configuration of the LTI core.

Registrations are described as JSON, either in the file pointed to by
``LTI_REGISTRATIONS_PATH`` or inline in ``LTI_REGISTRATIONS_JSON``. The
document is a list of entries (or a mapping whose values are entries)::

    {
      "identifier": "moodle-tool",
      "client_id": "client-123",
      "platform": {"identifier": "moodle", "name": "Moodle", "audience": "https://moodle.example", ...},
      "tool": {"identifier": "tool", "name": "Tool", "audience": "https://tool.example", ...},
      "deployment_ids": ["1"],
      "platform_key_chain": {"identifier": "kid-1", "public_key": "file:///keys/platform.pub"},
      "tool_key_chain": {"identifier": "kid-2", "public_key": "...", "private_key": "..."},
      "platform_jwks_url": null,
      "tool_jwks_url": null
    }
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from .errors import LTIConfigurationError
from .registration import Platform, Registration, Tool
from .security import DEFAULT_ALGORITHM, JWKS_CACHE_TTL, NONCE_TTL, Key, KeyChain


_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise LTIConfigurationError(f"La variable {name} doit être un booléen (reçu {value!r}).")


def _env_number(name: str, default: float, cast: type) -> Any:
    value = os.getenv(name)
    if value is None or not value.strip():
        return cast(default)
    try:
        return cast(value)
    except ValueError as exc:
        raise LTIConfigurationError(f"La variable {name} doit être numérique (reçu {value!r}).") from exc


@dataclass(slots=True)
class LTISettings:
    registrations_path: Path | None = None
    registrations_json: str | None = None
    http_timeout: float = 10.0
    jwks_cache_ttl: int = JWKS_CACHE_TTL
    nonce_ttl: int = NONCE_TTL
    validate_nonce: bool = True
    validate_state: bool = True

    @classmethod
    def from_env(cls) -> "LTISettings":
        path_value = os.getenv("LTI_REGISTRATIONS_PATH")
        return cls(
            registrations_path=Path(path_value) if path_value else None,
            registrations_json=os.getenv("LTI_REGISTRATIONS_JSON") or None,
            http_timeout=_env_number("LTI_HTTP_TIMEOUT", 10.0, float),
            jwks_cache_ttl=_env_number("LTI_JWKS_CACHE_TTL", JWKS_CACHE_TTL, int),
            nonce_ttl=_env_number("LTI_NONCE_TTL", NONCE_TTL, int),
            validate_nonce=_env_bool("LTI_VALIDATE_NONCE", True),
            validate_state=_env_bool("LTI_VALIDATE_STATE", True),
        )


class KeyChainConfig(BaseModel):
    identifier: str
    key_set_name: str | None = None
    public_key: str
    private_key: str | None = None
    passphrase: str | None = None
    algorithm: str = DEFAULT_ALGORITHM

    def to_key_chain(self) -> KeyChain:
        return KeyChain(
            identifier=self.identifier,
            key_set_name=self.key_set_name or self.identifier,
            public_key=Key(self.public_key, algorithm=self.algorithm),
            private_key=(
                Key(self.private_key, passphrase=self.passphrase, algorithm=self.algorithm)
                if self.private_key
                else None
            ),
        )


class RegistrationConfig(BaseModel):
    identifier: str
    client_id: str
    platform: Platform
    tool: Tool
    deployment_ids: list[str] = Field(default_factory=list)
    platform_key_chain: KeyChainConfig | None = None
    tool_key_chain: KeyChainConfig | None = None
    platform_jwks_url: str | None = None
    tool_jwks_url: str | None = None

    def to_registration(self) -> Registration:
        return Registration(
            identifier=self.identifier,
            client_id=self.client_id,
            platform=self.platform,
            tool=self.tool,
            deployment_ids=tuple(self.deployment_ids),
            platform_key_chain=self.platform_key_chain.to_key_chain() if self.platform_key_chain else None,
            tool_key_chain=self.tool_key_chain.to_key_chain() if self.tool_key_chain else None,
            platform_jwks_url=self.platform_jwks_url,
            tool_jwks_url=self.tool_jwks_url,
        )


def _read_registrations_document(settings: LTISettings) -> Any:
    if settings.registrations_path is not None:
        path = settings.registrations_path
        if not path.exists():
            raise LTIConfigurationError(f"Le fichier de registrations LTI {str(path)!r} est introuvable.")
        raw = path.read_text(encoding="utf-8")
    elif settings.registrations_json:
        raw = settings.registrations_json
    else:
        return []

    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise LTIConfigurationError(f"Configuration des registrations LTI illisible: {exc}") from exc


def load_registrations(settings: LTISettings) -> list[Registration]:
    data = _read_registrations_document(settings)
    if isinstance(data, dict):
        values = list(data.values())
    elif isinstance(data, list):
        values = data
    else:
        raise LTIConfigurationError("La configuration des registrations LTI doit être une liste ou un mapping.")

    registrations: list[Registration] = []
    seen: set[str] = set()
    for item in values:
        try:
            config = RegistrationConfig.model_validate(item)
        except ValidationError as exc:
            raise LTIConfigurationError(f"Entrée de registration LTI invalide: {exc}") from exc
        if config.identifier in seen:
            raise LTIConfigurationError(f"Registration LTI dupliquée: {config.identifier!r}.")
        seen.add(config.identifier)
        registrations.append(config.to_registration())
    return registrations
