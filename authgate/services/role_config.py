"""Deployment role registries, built once from settings."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from functools import lru_cache

from authgate.config import settings
from authgate.services.roles import RoleEncoding, RoleRegistry


@dataclass(frozen=True)
class RoleRegistries:
    client_roles: RoleRegistry
    user_roles: RoleRegistry
    oauth_scopes: RoleRegistry


@lru_cache(maxsize=1)
def _configured_registries(
    client_roles: tuple[str, ...],
    user_roles: tuple[str, ...],
    oauth_scopes: tuple[str, ...],
) -> RoleRegistries:
    return RoleRegistries(
        client_roles=RoleRegistry(client_roles),
        user_roles=RoleRegistry(user_roles),
        oauth_scopes=RoleRegistry(oauth_scopes),
    )


def default_registries() -> RoleRegistries:
    return _configured_registries(
        tuple(settings.client_roles),
        tuple(settings.user_roles),
        tuple(settings.oauth_scopes),
    )


def default_encoding() -> RoleEncoding:
    return RoleEncoding(settings.role_encoding)


def client_role_names(names: Iterable[str]) -> list[str]:
    return default_registries().client_roles.checked(names, kind="client role")


def user_role_names(names: Iterable[str]) -> list[str]:
    return default_registries().user_roles.checked(names, kind="user role")


def oauth_scope_names(names: Iterable[str]) -> list[str]:
    return default_registries().oauth_scopes.checked(names, kind="scope")
