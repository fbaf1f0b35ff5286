"""
Entitlement accumulators.

An EntitlementCollection holds attribute values and permission rights
keyed by account (application, instance, native identity). It represents
both what an identity holds and what a role detection consumed, and
supports additive merge and subtractive removal.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterator, List, Optional, Tuple

from .conditions import as_values


AccountKey = Tuple[str, Optional[str], str]


@dataclass
class Permission:
    """A set of rights on a target."""
    target: str
    rights: List[str] = field(default_factory=list)

    def __post_init__(self):
        # Rights may arrive as a CSV string from connector data
        if isinstance(self.rights, str):
            self.rights = [r.strip() for r in self.rights.split(",") if r.strip()]
        else:
            self.rights = list(self.rights)


def _union(current: List[Any], values: List[Any]) -> None:
    for value in values:
        if value not in current:
            current.append(value)


def _subtract(current: List[Any], values: List[Any]) -> List[Any]:
    return [v for v in current if v not in values]


def _freeze(value: Any) -> Any:
    """Hashable form of an attribute value, for order-insensitive comparison."""
    if isinstance(value, dict):
        return frozenset((k, _freeze(v)) for k, v in value.items())
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(v) for v in value)
    if isinstance(value, (set, frozenset)):
        return frozenset(_freeze(v) for v in value)
    return value


@dataclass
class AccountEntitlements:
    """Entitlements held on, or consumed from, a single account."""
    application: str
    native_identity: str
    instance: Optional[str] = None
    display_name: Optional[str] = None
    attributes: Dict[str, List[Any]] = field(default_factory=dict)
    permissions: Dict[str, List[str]] = field(default_factory=dict)

    @property
    def key(self) -> AccountKey:
        return (self.application, self.instance, self.native_identity)

    def is_empty(self) -> bool:
        return not self.attributes and not self.permissions

    def add_attribute(self, name: str, values: Any):
        values = as_values(values)
        if not values:
            return
        _union(self.attributes.setdefault(name, []), values)

    def remove_attribute(self, name: str, values: Any):
        if name not in self.attributes:
            return
        remaining = _subtract(self.attributes[name], as_values(values))
        if remaining:
            self.attributes[name] = remaining
        else:
            del self.attributes[name]

    def add_permission(self, target: str, rights: List[str]):
        if not rights:
            return
        _union(self.permissions.setdefault(target, []), rights)

    def remove_permission(self, target: str, rights: List[str]):
        if target not in self.permissions:
            return
        remaining = _subtract(self.permissions[target], rights)
        if remaining:
            self.permissions[target] = remaining
        else:
            del self.permissions[target]

    def get_permissions(self) -> List[Permission]:
        return [Permission(target, list(rights)) for target, rights in self.permissions.items()]

    def copy(self) -> "AccountEntitlements":
        return AccountEntitlements(
            application=self.application,
            native_identity=self.native_identity,
            instance=self.instance,
            display_name=self.display_name,
            attributes={name: list(values) for name, values in self.attributes.items()},
            permissions={target: list(rights) for target, rights in self.permissions.items()},
        )


class EntitlementCollection:
    """Accumulator of attribute values and permissions keyed by account."""

    def __init__(self):
        self._entries: Dict[AccountKey, AccountEntitlements] = {}

    @classmethod
    def from_accounts(cls, accounts) -> "EntitlementCollection":
        """Build the collection of everything the given accounts hold."""
        collection = cls()
        for account in accounts:
            collection.add_account(account)
        return collection

    def _entry(self, application: str, instance: Optional[str], native_identity: str,
               display_name: Optional[str] = None) -> AccountEntitlements:
        key = (application, instance, native_identity)
        entry = self._entries.get(key)
        if entry is None:
            entry = AccountEntitlements(application, native_identity, instance, display_name)
            self._entries[key] = entry
        elif display_name and not entry.display_name:
            entry.display_name = display_name
        return entry

    def add_attribute(self, application: str, instance: Optional[str], native_identity: str,
                      name: str, values: Any, display_name: Optional[str] = None):
        """Record attribute values held on an account."""
        if not as_values(values):
            return
        self._entry(application, instance, native_identity, display_name).add_attribute(name, values)

    def add_permission(self, application: str, instance: Optional[str], native_identity: str,
                       permission: Permission, display_name: Optional[str] = None):
        """Record permission rights held on an account."""
        if not permission.rights:
            return
        self._entry(application, instance, native_identity, display_name).add_permission(
            permission.target, permission.rights)

    def add_account(self, account):
        """Add every entitlement held by an account."""
        for name, values in account.get_entitlement_attributes().items():
            self.add_attribute(account.application, account.instance, account.native_identity,
                               name, values, account.display_name)
        for permission in account.permissions:
            self.add_permission(account.application, account.instance, account.native_identity,
                                permission, account.display_name)

    def add(self, other: Optional["EntitlementCollection"]) -> "EntitlementCollection":
        """Union another collection into this one."""
        if other is None:
            return self
        for entry in other:
            target = self._entry(entry.application, entry.instance, entry.native_identity,
                                 entry.display_name)
            for name, values in entry.attributes.items():
                target.add_attribute(name, values)
            for perm_target, rights in entry.permissions.items():
                target.add_permission(perm_target, rights)
        return self

    def remove(self, other: Optional["EntitlementCollection"]) -> "EntitlementCollection":
        """Subtract another collection from this one, pruning empty accounts."""
        if other is None:
            return self
        for entry in other:
            current = self._entries.get(entry.key)
            if current is None:
                continue
            for name, values in entry.attributes.items():
                current.remove_attribute(name, values)
            for perm_target, rights in entry.permissions.items():
                current.remove_permission(perm_target, rights)
            if current.is_empty():
                del self._entries[entry.key]
        return self

    def get(self, application: str, instance: Optional[str], native_identity: str) -> Optional[AccountEntitlements]:
        return self._entries.get((application, instance, native_identity))

    def keys(self) -> List[AccountKey]:
        return list(self._entries.keys())

    def applications(self) -> List[str]:
        seen: List[str] = []
        for application, _, _ in self._entries:
            if application not in seen:
                seen.append(application)
        return seen

    def is_empty(self) -> bool:
        return not self._entries

    def copy(self) -> "EntitlementCollection":
        collection = EntitlementCollection()
        for key, entry in self._entries.items():
            collection._entries[key] = entry.copy()
        return collection

    def to_dict(self) -> Dict[str, Any]:
        """Plain representation for logging and reporting."""
        result: Dict[str, Any] = {}
        for entry in self:
            name = "/".join(p for p in (entry.application, entry.instance, entry.native_identity) if p)
            result[name] = {
                "attributes": {k: list(v) for k, v in entry.attributes.items()},
                "permissions": {k: list(v) for k, v in entry.permissions.items()},
            }
        return result

    def _normalized(self) -> Dict[AccountKey, Tuple[Dict[str, FrozenSet], Dict[str, FrozenSet]]]:
        return {
            key: ({n: frozenset(_freeze(x) for x in v) for n, v in entry.attributes.items()},
                  {t: frozenset(r) for t, r in entry.permissions.items()})
            for key, entry in self._entries.items()
        }

    def __eq__(self, other) -> bool:
        if not isinstance(other, EntitlementCollection):
            return NotImplemented
        return self._normalized() == other._normalized()

    def __iter__(self) -> Iterator[AccountEntitlements]:
        return iter(list(self._entries.values()))

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"EntitlementCollection({self.to_dict()!r})"
