"""Registrations: the trust relationship between one platform and one tool."""

from __future__ import annotations

from typing import Iterable, Protocol

from pydantic import BaseModel, ConfigDict, Field, InstanceOf

from .security import KeyChain


class Platform(BaseModel):
    model_config = ConfigDict(frozen=True)

    identifier: str
    name: str
    audience: str
    oidc_authentication_url: str | None = None
    oauth2_access_token_url: str | None = None


class Tool(BaseModel):
    model_config = ConfigDict(frozen=True)

    identifier: str
    name: str
    audience: str
    oidc_initiation_url: str | None = None
    launch_url: str | None = None
    deep_linking_url: str | None = None


class Registration(BaseModel):
    """Immutable pairing of a platform and a tool.

    Key chains are optional on both sides; a side without a key chain is
    expected to publish its keys on its JWKS url instead.
    """

    model_config = ConfigDict(frozen=True)

    identifier: str
    client_id: str
    platform: Platform
    tool: Tool
    deployment_ids: tuple[str, ...] = Field(default_factory=tuple)
    platform_key_chain: InstanceOf[KeyChain] | None = None
    tool_key_chain: InstanceOf[KeyChain] | None = None
    platform_jwks_url: str | None = None
    tool_jwks_url: str | None = None

    def has_deployment_id(self, deployment_id: str | None) -> bool:
        if not deployment_id:
            return False
        return deployment_id in self.deployment_ids

    def default_deployment_id(self) -> str | None:
        return self.deployment_ids[0] if self.deployment_ids else None


class RegistrationRepository(Protocol):
    def find(self, identifier: str) -> Registration | None:
        ...

    def find_all(self) -> list[Registration]:
        ...

    def find_by_client_id(self, client_id: str) -> Registration | None:
        ...

    def find_by_platform_issuer(self, issuer: str, client_id: str | None = None) -> Registration | None:
        ...

    def find_by_tool_issuer(self, issuer: str, client_id: str | None = None) -> Registration | None:
        ...


class InMemoryRegistrationRepository:
    """Registration lookups over a fixed, in-memory set of registrations."""

    def __init__(self, registrations: Iterable[Registration] = ()) -> None:
        self._registrations: dict[str, Registration] = {}
        for registration in registrations:
            self.add(registration)

    def add(self, registration: Registration) -> None:
        self._registrations[registration.identifier] = registration

    def find(self, identifier: str) -> Registration | None:
        return self._registrations.get(identifier)

    def find_all(self) -> list[Registration]:
        return list(self._registrations.values())

    def find_by_client_id(self, client_id: str) -> Registration | None:
        for registration in self._registrations.values():
            if registration.client_id == client_id:
                return registration
        return None

    def find_by_platform_issuer(self, issuer: str, client_id: str | None = None) -> Registration | None:
        for registration in self._registrations.values():
            if registration.platform.audience != issuer:
                continue
            if client_id is not None and registration.client_id != client_id:
                continue
            return registration
        return None

    def find_by_tool_issuer(self, issuer: str, client_id: str | None = None) -> Registration | None:
        for registration in self._registrations.values():
            if registration.tool.audience != issuer:
                continue
            if client_id is not None and registration.client_id != client_id:
                continue
            return registration
        return None

    def __len__(self) -> int:
        return len(self._registrations)
