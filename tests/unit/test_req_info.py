"""Unit tests for ReqInfo construction, wire form and authorization helpers."""

import pytest

from authgate.errors import AuthenticationFailed, EncodingMismatch, Forbidden
from authgate.services.context_service import (
    ReqInfo,
    UserContext,
    has_scope,
    require_any_role,
    require_roles,
    require_scope,
    require_user,
)
from authgate.services.role_config import RoleRegistries
from authgate.services.roles import BitwiseRoles, RoleEncoding, RoleRegistry, StringRoles

REGISTRIES = RoleRegistries(
    client_roles=RoleRegistry(["internal", "partner"]),
    user_roles=RoleRegistry(["sysadmin", "admin", "billing"]),
    oauth_scopes=RoleRegistry(["read:profile", "read:billing", "write:billing"]),
)


def _string_info(scopes=None) -> ReqInfo:
    return ReqInfo(
        encoding=RoleEncoding.STRING,
        client_id="c1",
        client_authenticated=True,
        client_roles=StringRoles(frozenset({"internal"})),
        origin_ip="10.0.0.1",
        user=UserContext(
            session_id="s1",
            user_id="u1",
            user_roles=StringRoles(frozenset({"admin", "billing"})),
            oauth_scopes=StringRoles(frozenset(scopes)) if scopes is not None else None,
        ),
    )


def _bitwise_info(scopes_mask=None) -> ReqInfo:
    return ReqInfo(
        encoding=RoleEncoding.BITWISE,
        client_id="c1",
        client_authenticated=False,
        client_roles=BitwiseRoles(0b01),
        origin_ip="10.0.0.1",
        user=UserContext(
            session_id="s1",
            user_id="u1",
            user_roles=BitwiseRoles(0b110),
            oauth_scopes=BitwiseRoles(scopes_mask) if scopes_mask is not None else None,
        ),
    )


class TestReqInfoEncoding:
    """A context is entirely one encoding."""

    def test_mixed_encodings_rejected(self) -> None:
        with pytest.raises(EncodingMismatch):
            ReqInfo(
                encoding=RoleEncoding.BITWISE,
                client_id="c1",
                client_authenticated=False,
                client_roles=BitwiseRoles(1),
                origin_ip="::1",
                user=UserContext(
                    session_id="s1",
                    user_id="u1",
                    user_roles=StringRoles(frozenset({"admin"})),
                ),
            )

    def test_string_wire_round_trip(self) -> None:
        info = _string_info(scopes={"read:billing"})
        wire = info.to_wire()
        assert wire["t"] == 0
        assert wire["r"] == ["internal"]
        assert wire["u"]["r"] == ["admin", "billing"]
        assert wire["u"]["s"] == ["read:billing"]
        assert ReqInfo.from_wire(wire) == info

    def test_bitwise_wire_round_trip(self) -> None:
        info = _bitwise_info(scopes_mask=0b010)
        wire = info.to_wire()
        assert wire["t"] == 1
        assert wire["u"]["r"] == 0b110
        assert ReqInfo.from_wire(wire) == info

    def test_client_only_wire(self) -> None:
        info = ReqInfo(
            encoding=RoleEncoding.STRING,
            client_id="c1",
            client_authenticated=True,
            client_roles=StringRoles(),
            origin_ip="::1",
        )
        assert info.to_wire()["u"] is None
        assert ReqInfo.from_wire(info.to_wire()).user is None

    def test_wire_with_mixed_values_rejected(self) -> None:
        wire = _bitwise_info().to_wire()
        wire["u"]["r"] = ["admin"]
        with pytest.raises(EncodingMismatch):
            ReqInfo.from_wire(wire)


class TestAuthorizationHelpers:
    """require_* helpers over both encodings."""

    def test_require_user_without_user(self) -> None:
        info = ReqInfo(
            encoding=RoleEncoding.STRING,
            client_id="c1",
            client_authenticated=True,
            client_roles=StringRoles(),
            origin_ip="::1",
        )
        with pytest.raises(AuthenticationFailed):
            require_user(info)

    def test_require_roles_string(self) -> None:
        info = _string_info()
        assert require_roles(info, "admin", "billing", registries=REGISTRIES).user_id == "u1"
        with pytest.raises(Forbidden):
            require_roles(info, "sysadmin", registries=REGISTRIES)

    def test_require_roles_bitwise(self) -> None:
        info = _bitwise_info()
        require_roles(info, "admin", registries=REGISTRIES)
        require_any_role(info, "sysadmin", "billing", registries=REGISTRIES)
        with pytest.raises(Forbidden):
            require_roles(info, "sysadmin", registries=REGISTRIES)

    def test_scope_narrowing(self) -> None:
        """Scopes restrict actions but leave the user's roles untouched."""
        info = _string_info(scopes={"read:billing"})
        require_roles(info, "admin", registries=REGISTRIES)
        require_scope(info, "read:billing", registries=REGISTRIES)
        with pytest.raises(Forbidden):
            require_scope(info, "write:billing", registries=REGISTRIES)
        assert not has_scope(info, "read:profile", registries=REGISTRIES)

    def test_scope_narrowing_bitwise(self) -> None:
        info = _bitwise_info(scopes_mask=0b010)
        assert has_scope(info, "read:billing", registries=REGISTRIES)
        assert not has_scope(info, "write:billing", registries=REGISTRIES)

    def test_unscoped_session_has_every_scope(self) -> None:
        info = _string_info()
        assert has_scope(info, "write:billing", registries=REGISTRIES)
