"""
auth/catalog.py -- Role catalog: rank and permission record for every role.

The catalog is configuration, not code. It is loaded once at startup from a
JSON file (auth/roles.json unless ROLE_CATALOG_PATH points elsewhere) and is
then shared, read-only, by every request. Nothing mutates it after load.

File format:
    {
      "default_role": "customer",
      "top_tier_role": "owner",
      "roles": {
        "technician": {"rank": 3, "permissions": ["can_manage_work_orders", ...]},
        "owner":      {"rank": 8, "permissions": ["*"]}
      }
    }

"*" grants every capability. Capabilities not listed are False.

Failure policy: a role name the catalog does not know is a configuration
error. lookups raise UnknownRoleError instead of quietly answering "no
permissions", because a silent default would hide a misconfigured deployment
behind what looks like ordinary denials.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import json
import re
from collections.abc import Iterable, Mapping
from dataclasses import asdict, dataclass, fields
from pathlib import Path

from auth.errors import CatalogError, UnknownCapabilityError, UnknownRoleError

BUNDLED_CATALOG = Path(__file__).parent / "roles.json"

_WILDCARD = "*"
_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")


@dataclass(frozen=True)
class PermissionSet:
    """Fixed-size record of boolean capability flags."""

    can_view_users: bool = False
    can_manage_users: bool = False
    can_assign_roles: bool = False
    can_view_inventory: bool = False
    can_manage_inventory: bool = False
    can_view_work_orders: bool = False
    can_manage_work_orders: bool = False
    can_view_reports: bool = False
    can_manage_settings: bool = False

    @classmethod
    def all(cls) -> PermissionSet:
        return cls(**{name: True for name in CAPABILITIES})

    @classmethod
    def from_names(cls, names: Iterable[str]) -> PermissionSet:
        """Build a record with the named capabilities set. Raises on unknown names."""
        names = list(names)
        if _WILDCARD in names:
            return cls.all()
        return cls(**{normalize_capability(n): True for n in names})

    def grants(self, capability: str) -> bool:
        return getattr(self, normalize_capability(capability))

    def granted(self) -> list[str]:
        return [name for name in CAPABILITIES if getattr(self, name)]

    def as_dict(self) -> dict[str, bool]:
        return asdict(self)


CAPABILITIES: tuple[str, ...] = tuple(f.name for f in fields(PermissionSet))


def normalize_capability(name: str) -> str:
    """Map 'canManageInventory' / 'can-manage-inventory' to 'can_manage_inventory'."""
    snake = _CAMEL_RE.sub("_", name.strip()).replace("-", "_").lower()
    if snake not in CAPABILITIES:
        raise UnknownCapabilityError(name)
    return snake


@dataclass(frozen=True)
class RoleDefinition:
    name: str
    rank: int
    permissions: PermissionSet


class PermissionCatalog:
    """Immutable lookup of role name -> RoleDefinition.

    Usage:
        catalog = PermissionCatalog.from_file(BUNDLED_CATALOG)
        catalog.rank("technician")          # 3
        catalog.permissions("technician")   # PermissionSet(...)
        catalog.rank("pirate")              # raises UnknownRoleError
    """

    def __init__(self, roles: Iterable[RoleDefinition], default_role: str, top_tier_role: str) -> None:
        by_name: dict[str, RoleDefinition] = {}
        for role in roles:
            if role.name in by_name:
                raise CatalogError(f"Duplicate role in catalog: {role.name!r}")
            if isinstance(role.rank, bool) or not isinstance(role.rank, int):
                raise CatalogError(f"Role {role.name!r} has a non-integer rank: {role.rank!r}")
            by_name[role.name] = role
        if not by_name:
            raise CatalogError("Role catalog is empty.")
        for label, name in (("default_role", default_role), ("top_tier_role", top_tier_role)):
            if name not in by_name:
                raise CatalogError(f"{label} {name!r} is not defined in the role catalog.")
        self._roles = by_name
        self.default_role = default_role
        self.top_tier_role = top_tier_role
        self.top_rank = max(r.rank for r in by_name.values())

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    @classmethod
    def from_mapping(cls, data: Mapping) -> PermissionCatalog:
        """Build a catalog from the parsed JSON document. Raises CatalogError on bad shape."""
        try:
            raw_roles = data["roles"]
            roles = [
                RoleDefinition(
                    name=name,
                    rank=entry["rank"],
                    permissions=PermissionSet.from_names(entry.get("permissions", [])),
                )
                for name, entry in raw_roles.items()
            ]
            return cls(roles, default_role=data["default_role"], top_tier_role=data["top_tier_role"])
        except (KeyError, TypeError, AttributeError) as exc:
            raise CatalogError(f"Malformed role catalog: {exc!r}") from exc

    @classmethod
    def from_file(cls, path: str | Path) -> PermissionCatalog:
        try:
            data = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise CatalogError(f"Cannot read role catalog {str(path)!r}: {exc}") from exc
        return cls.from_mapping(data)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get(self, role: str) -> RoleDefinition:
        try:
            return self._roles[role]
        except KeyError:
            raise UnknownRoleError([role]) from None

    def rank(self, role: str) -> int:
        return self.get(role).rank

    def permissions(self, role: str) -> PermissionSet:
        return self.get(role).permissions

    def names(self) -> list[str]:
        """Role names ordered from most to least privileged, ties by name."""
        return [r.name for r in sorted(self._roles.values(), key=lambda r: (-r.rank, r.name))]

    def validate(self, names: Iterable[str]) -> None:
        """Raise UnknownRoleError naming every role the catalog does not define."""
        unknown = [n for n in names if n not in self._roles]
        if unknown:
            raise UnknownRoleError(unknown)

    def __contains__(self, role: object) -> bool:
        return role in self._roles

    def __len__(self) -> int:
        return len(self._roles)


def load_catalog(path: str = "") -> PermissionCatalog:
    """Load the configured catalog, falling back to the bundled auth/roles.json."""
    return PermissionCatalog.from_file(path or BUNDLED_CATALOG)
