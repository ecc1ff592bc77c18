"""Role and scope encodings.

A deployment runs in one of two encodings:

* ``string``: roles are a set of names; membership is set containment.
* ``bitwise``: every known role name owns one power-of-two flag; a role set
  is the OR of its flags and membership is a bitwise AND.

Both are represented by a tagged value (`StringRoles` or `BitwiseRoles`)
whose ``encoding`` field is the discriminant. Comparison helpers dispatch on
it and refuse to mix the two: a bitmask is never checked against a role
name and vice versa, an `EncodingMismatch` is raised instead.

Bitmask mode is limited to 53 roles per registry, so every mask stays an
exact integer when it reaches a JSON/JavaScript consumer.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Union

from authgate.errors import EncodingMismatch, UnknownRole, ValidationFailed

MAX_BITWISE_ROLES = 53


class RoleEncoding(str, Enum):
    STRING = "string"
    BITWISE = "bitwise"

    @property
    def wire_tag(self) -> int:
        return 0 if self is RoleEncoding.STRING else 1

    @classmethod
    def from_wire_tag(cls, tag: int) -> RoleEncoding:
        if tag == 0:
            return cls.STRING
        if tag == 1:
            return cls.BITWISE
        raise ValueError(f"Unknown role encoding tag: {tag!r}")


@dataclass(frozen=True)
class StringRoles:
    names: frozenset[str] = frozenset()
    encoding: RoleEncoding = field(default=RoleEncoding.STRING, init=False)

    def to_wire(self) -> list[str]:
        return sorted(self.names)


@dataclass(frozen=True)
class BitwiseRoles:
    mask: int = 0
    encoding: RoleEncoding = field(default=RoleEncoding.BITWISE, init=False)

    def __post_init__(self) -> None:
        if isinstance(self.mask, bool) or not isinstance(self.mask, int):
            raise EncodingMismatch(f"Bitmask roles need an int, got {type(self.mask).__name__}")
        if self.mask < 0 or self.mask >= (1 << MAX_BITWISE_ROLES):
            raise ValueError(f"Role mask out of range: {self.mask}")

    def to_wire(self) -> int:
        return self.mask


RoleSet = Union[StringRoles, BitwiseRoles]
RoleArg = Union[str, int, StringRoles, BitwiseRoles]


class RoleRegistry:
    """Ordered role names; position ``n`` owns flag ``1 << n`` in bitmask mode."""

    def __init__(self, names: Sequence[str]) -> None:
        if len(names) > MAX_BITWISE_ROLES:
            raise ValueError(
                f"At most {MAX_BITWISE_ROLES} roles fit in a bitmask, got {len(names)}"
            )
        if len(set(names)) != len(names):
            raise ValueError("Role names must be unique")
        self._flags = {name: 1 << i for i, name in enumerate(names)}
        self._names = tuple(names)

    @property
    def names(self) -> tuple[str, ...]:
        return self._names

    def flag(self, name: str) -> int:
        try:
            return self._flags[name]
        except KeyError:
            raise UnknownRole(name) from None

    def mask(self, names: Iterable[str]) -> int:
        mask = 0
        for name in names:
            mask |= self.flag(name)
        return mask

    def names_for(self, mask: int) -> frozenset[str]:
        return frozenset(name for name, bit in self._flags.items() if mask & bit)

    def checked(self, names: Iterable[str], *, kind: str = "role") -> list[str]:
        """Sorted, de-duplicated ``names``; unknown names are a caller error."""
        wanted = set(names)
        unknown = sorted(wanted - self._flags.keys())
        if unknown:
            raise ValidationFailed(f"Unknown {kind}: {', '.join(unknown)}")
        return sorted(wanted)


def encode_roles(
    names: Iterable[str],
    encoding: RoleEncoding,
    registry: RoleRegistry | None = None,
) -> RoleSet:
    """Normalize stored role names into the request-lifetime representation."""
    if encoding is RoleEncoding.STRING:
        return StringRoles(frozenset(names))
    if registry is None:
        raise ValueError("Bitmask encoding requires a role registry")
    return BitwiseRoles(registry.mask(names))


def decode_roles(roles: RoleSet, registry: RoleRegistry | None = None) -> frozenset[str]:
    """Return role names for either encoding."""
    if isinstance(roles, StringRoles):
        return roles.names
    if registry is None:
        raise ValueError("Bitmask decoding requires a role registry")
    return registry.names_for(roles.mask)


def from_wire(value: object, encoding: RoleEncoding) -> RoleSet:
    """Rebuild a role set from its wire form, enforcing the declared encoding."""
    if encoding is RoleEncoding.STRING:
        if isinstance(value, (list, tuple, set, frozenset)) and all(
            isinstance(v, str) for v in value
        ):
            return StringRoles(frozenset(value))
        raise EncodingMismatch(f"Expected a list of role names, got {value!r}")
    if isinstance(value, bool) or not isinstance(value, int):
        raise EncodingMismatch(f"Expected a role bitmask, got {value!r}")
    return BitwiseRoles(value)


def _as_mask(roles: BitwiseRoles, role: RoleArg) -> int:
    if isinstance(role, BitwiseRoles):
        mask = role.mask
    elif isinstance(role, bool) or not isinstance(role, int):
        raise EncodingMismatch(
            f"Cannot compare bitmask roles with {type(role).__name__} {role!r}"
        )
    else:
        mask = role
    if mask == 0:
        # Every role set holds the empty mask
        raise ValueError("A role argument needs at least one flag")
    return mask


def _as_names(roles: StringRoles, role: RoleArg) -> frozenset[str]:
    if isinstance(role, StringRoles):
        return role.names
    if not isinstance(role, str):
        raise EncodingMismatch(
            f"Cannot compare string roles with {type(role).__name__} {role!r}"
        )
    return frozenset((role,))


def has_role(roles: RoleSet, role: RoleArg) -> bool:
    """True if ``roles`` holds ``role`` (every flag of it, for a multi-bit mask)."""
    return has_all_roles(roles, [role])


def has_any_role(roles: RoleSet, candidates: Iterable[RoleArg]) -> bool:
    if isinstance(roles, BitwiseRoles):
        return any(roles.mask & _as_mask(roles, c) for c in candidates)
    return any(roles.names & _as_names(roles, c) for c in candidates)


def has_all_roles(roles: RoleSet, candidates: Iterable[RoleArg]) -> bool:
    if isinstance(roles, BitwiseRoles):
        for c in candidates:
            wanted = _as_mask(roles, c)
            if roles.mask & wanted != wanted:
                return False
        return True
    for c in candidates:
        if not _as_names(roles, c) <= roles.names:
            return False
    return True


def union_roles(a: RoleSet, b: RoleSet) -> RoleSet:
    if a.encoding is not b.encoding:
        raise EncodingMismatch(f"Cannot combine {a.encoding.value} and {b.encoding.value} roles")
    if isinstance(a, BitwiseRoles) and isinstance(b, BitwiseRoles):
        return BitwiseRoles(a.mask | b.mask)
    assert isinstance(a, StringRoles) and isinstance(b, StringRoles)
    return StringRoles(a.names | b.names)


def roles_equal(a: RoleSet, b: RoleSet) -> bool:
    if a.encoding is not b.encoding:
        raise EncodingMismatch(f"Cannot compare {a.encoding.value} and {b.encoding.value} roles")
    return a == b


def role_arg(name: str, encoding: RoleEncoding, registry: RoleRegistry) -> RoleArg:
    """Translate a role name into the argument type the encoding compares against."""
    if encoding is RoleEncoding.STRING:
        return name
    return registry.flag(name)
