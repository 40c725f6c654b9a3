"""Typed views over the loosely-typed records returned by the Permit API.

Each record keeps the fields the exporter understands and stashes everything
else in ``extra``. Parsing never fails on missing fields; required fields are
checked by the generators that consume the records.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

USERSET = "userset"
RESOURCESET = "resourceset"


def _split(data: Any, known: Iterable[str]) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    if not isinstance(data, dict):
        data = {}
    known = set(known)
    extra = {k: v for k, v in data.items() if k not in known}
    return data, extra


def _str(d: Dict[str, Any], key: str) -> str:
    """String value of a field, "" when missing or null."""
    v = d.get(key)
    if v is None:
        return ""
    return str(v)


def _opt_str(d: Dict[str, Any], key: str) -> Optional[str]:
    """String value of an optional field, None when missing or empty."""
    return _str(d, key) or None


def _str_list(d: Dict[str, Any], key: str) -> List[str]:
    v = d.get(key)
    if not isinstance(v, list):
        return []
    return [str(item) for item in v if item is not None and item != ""]


@dataclass
class ActionBlock:
    name: str = ""
    description: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> "ActionBlock":
        data, _ = _split(data, ())
        return cls(name=_str(data, "name"), description=_opt_str(data, "description"))


@dataclass
class AttributeBlock:
    type: str = ""
    description: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> "AttributeBlock":
        data, _ = _split(data, ())
        return cls(type=_str(data, "type"), description=_opt_str(data, "description"))


@dataclass
class Resource:
    key: str = ""
    name: str = ""
    description: Optional[str] = None
    urn: Optional[str] = None
    actions: Dict[str, ActionBlock] = field(default_factory=dict)
    attributes: Dict[str, AttributeBlock] = field(default_factory=dict)
    extra: Dict[str, Any] = field(default_factory=dict)

    FIELDS = ("key", "name", "description", "urn", "actions", "attributes")

    @classmethod
    def from_dict(cls, data: Any) -> "Resource":
        data, extra = _split(data, cls.FIELDS)
        actions = data.get("actions")
        attributes = data.get("attributes")
        return cls(
            key=_str(data, "key"),
            name=_str(data, "name"),
            description=_opt_str(data, "description"),
            urn=_opt_str(data, "urn"),
            actions={str(k): ActionBlock.from_dict(v) for k, v in actions.items()}
            if isinstance(actions, dict) else {},
            attributes={str(k): AttributeBlock.from_dict(v) for k, v in attributes.items()}
            if isinstance(attributes, dict) else {},
            extra=extra,
        )


@dataclass
class Relation:
    key: str = ""
    name: str = ""
    description: Optional[str] = None
    subject_resource: str = ""
    object_resource: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)

    FIELDS = ("key", "name", "description", "subject_resource", "object_resource")

    @classmethod
    def from_dict(cls, data: Any, object_resource: str = "") -> "Relation":
        """Parse a relation listed under object_resource.

        Relations are listed on their object resource, so the listing key
        fills in a record that does not name it.
        """
        data, extra = _split(data, cls.FIELDS)
        return cls(
            key=_str(data, "key"),
            name=_str(data, "name"),
            description=_opt_str(data, "description"),
            subject_resource=_str(data, "subject_resource"),
            object_resource=_str(data, "object_resource") or object_resource,
            extra=extra,
        )


@dataclass
class GrantRule:
    """Role `role` on `on_resource` derives the owning role via a relation."""
    role: str = ""
    on_resource: str = ""
    linked_by_relation: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> "GrantRule":
        data, _ = _split(data, ())
        return cls(
            role=_str(data, "role"),
            on_resource=_str(data, "on_resource"),
            linked_by_relation=_str(data, "linked_by_relation"),
        )

    @property
    def complete(self) -> bool:
        return bool(self.role and self.on_resource and self.linked_by_relation)


@dataclass
class Role:
    key: str = ""
    name: str = ""
    description: Optional[str] = None
    permissions: List[str] = field(default_factory=list)
    extends: List[str] = field(default_factory=list)
    granted_to: List[GrantRule] = field(default_factory=list)
    extra: Dict[str, Any] = field(default_factory=dict)

    FIELDS = ("key", "name", "description", "permissions", "extends", "granted_to")

    @classmethod
    def from_dict(cls, data: Any) -> "Role":
        data, extra = _split(data, cls.FIELDS)
        granted_to = data.get("granted_to")
        users_with_role = granted_to.get("users_with_role") if isinstance(granted_to, dict) else None
        return cls(
            key=_str(data, "key"),
            name=_str(data, "name"),
            description=_opt_str(data, "description"),
            permissions=_str_list(data, "permissions"),
            extends=_str_list(data, "extends"),
            granted_to=[GrantRule.from_dict(g) for g in users_with_role or []
                        if isinstance(g, dict)],
            extra=extra,
        )


@dataclass
class ConditionSet:
    key: str = ""
    name: str = ""
    description: Optional[str] = None
    type: str = ""
    conditions: Any = None
    resource_id: str = ""
    resource_key: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)

    FIELDS = ("key", "name", "description", "type", "conditions", "resource_id", "resource")

    @classmethod
    def from_dict(cls, data: Any) -> "ConditionSet":
        data, extra = _split(data, cls.FIELDS)
        resource = data.get("resource")
        return cls(
            key=_str(data, "key"),
            name=_str(data, "name"),
            description=_opt_str(data, "description"),
            type=_str(data, "type"),
            conditions=data.get("conditions"),
            resource_id=_str(data, "resource_id"),
            resource_key=_str(resource, "key") if isinstance(resource, dict) else "",
            extra=extra,
        )

    @property
    def label(self) -> str:
        """Something to name the set by in messages, even when key is missing."""
        return self.key or self.name or _str(self.extra, "id") or "<unknown>"

    def missing_fields(self) -> List[str]:
        required = ["key", "name"]
        if self.type == RESOURCESET:
            required.append("resource_id")
        return [f for f in required if not getattr(self, f)]


@dataclass
class ConditionSetRule:
    user_set: str = ""
    resource_set: str = ""
    permission: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)

    FIELDS = ("user_set", "resource_set", "permission")

    @classmethod
    def from_dict(cls, data: Any) -> "ConditionSetRule":
        data, extra = _split(data, cls.FIELDS)
        return cls(
            user_set=_str(data, "user_set"),
            resource_set=_str(data, "resource_set"),
            permission=_str(data, "permission"),
            extra=extra,
        )


@dataclass
class RoleDerivation:
    """Role `role` on `on_resource` grants `to_role` on `resource` via `linked_by`."""
    id: str
    role: str
    on_resource: str
    to_role: str
    resource: str
    linked_by: str
    relation_id: str
    dependencies: List[str] = field(default_factory=list)
