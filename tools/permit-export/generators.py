"""Generators turning a Permit environment into permitio_* Terraform blocks.

Every generator has the signature ``generate_x(client, warnings) -> str`` and
returns one HCL section, or "" when there is nothing to export. Generators
never raise: a failure is recorded on the WarningCollector and the run moves
on to the next generator.
"""

import functools
import json
import logging
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from hcl_format import (
    HCLExpression,
    jsonencode,
    make_unique_ids,
    reference,
    render_resource,
    render_section,
    sanitize,
)
from permit_client import ExportCancelled, PermitClient, error_message
from records import (
    RESOURCESET,
    USERSET,
    ConditionSet,
    ConditionSetRule,
    Relation,
    Resource,
    Role,
    RoleDerivation,
)

logger = logging.getLogger(__name__)

USER_RESOURCE_KEY = "__user"
AUTOGEN_PREFIX = "__autogen_"

BUILTIN_USER_ATTRIBUTES = ("key", "roles", "email", "first_name", "last_name")
BUILTIN_DESCRIPTION_MARKERS = ("built in attribute", "built-in attribute")

USER_ATTRIBUTE_TYPES = {
    "string": "string",
    "number": "number",
    "boolean": "bool",
    "bool": "bool",
    "array": "array",
    "object": "json",
    "json": "json",
    "time": "string",
}


class WarningCollector:
    """Append-only list of non-fatal problems hit during one export run."""

    def __init__(self):
        self._warnings: List[str] = []

    def add_warning(self, message: str):
        logger.debug(f"warning: {message}")
        self._warnings.append(message)

    @property
    def warnings(self) -> List[str]:
        return list(self._warnings)

    def __len__(self) -> int:
        return len(self._warnings)

    def __iter__(self):
        return iter(list(self._warnings))


Generator = Callable[[PermitClient, WarningCollector], str]


def exports(label: str) -> Callable[[Generator], Generator]:
    """Turn any failure of the wrapped generator into a single warning."""
    def decorate(fn: Generator) -> Generator:
        @functools.wraps(fn)
        def run(client: PermitClient, warnings: WarningCollector) -> str:
            try:
                return fn(client, warnings)
            except ExportCancelled:
                logger.info(f"Export of {label} cancelled")
                return ""
            except Exception as e:
                logger.debug(f"Error exporting {label}", exc_info=True)
                warnings.add_warning(f"Failed to export {label}: {error_message(e)}")
                return ""
        return run
    return decorate


# --- shared lookups ---

def relation_id(relation: Relation) -> str:
    """Block identifier of a relation, derived from its endpoints and key."""
    return sanitize(relation.subject_resource, relation.key, relation.object_resource)


def role_id(role_key: str, resource_key: str = "") -> str:
    """Block identifier of a role; resource roles are prefixed with their resource."""
    return sanitize(resource_key, role_key)


def claim_id(claimed: Dict[str, str], tf_id: str, key: str, kind: str,
             warnings: Optional[WarningCollector] = None) -> bool:
    """Reserve tf_id for key. False if another key already sanitized to it."""
    owner = claimed.get(tf_id)
    if owner is None:
        claimed[tf_id] = key
        return True
    if warnings is not None:
        warnings.add_warning(
            f"Skipping {kind} '{key}': identifier '{tf_id}' is already used by '{owner}'")
    return False


def list_exportable_resources(client: PermitClient) -> List[Resource]:
    """All resources except the __user subject schema."""
    resources = [Resource.from_dict(r) for r in client.list_resources()]
    return [r for r in resources if r.key != USER_RESOURCE_KEY]


def unique_resources(resources: List[Resource],
                     warnings: Optional[WarningCollector] = None) -> List[Resource]:
    """Keyed resources that own their block identifier, in listing order."""
    claimed: Dict[str, str] = {}
    return [r for r in resources
            if r.key and claim_id(claimed, sanitize(r.key), r.key, "resource", warnings)]


def list_relations(client: PermitClient, resource_key: str) -> List[Relation]:
    return [Relation.from_dict(r, object_resource=resource_key)
            for r in client.list_resource_relations(resource_key)]


def resource_ref(resource_key: str, exported: Set[str]) -> Any:
    """Reference an exported resource block, or fall back to the plain key."""
    if resource_key in exported:
        return reference("permitio_resource", sanitize(resource_key), "key")
    return resource_key


# --- resources ---

def resource_attrs(resource: Resource) -> Dict[str, Any]:
    attrs: Dict[str, Any] = {
        "key": resource.key,
        "name": resource.name or resource.key,
        "description": resource.description,
        "urn": resource.urn,
        "actions": {
            action_key: {"name": action.name or action_key, "description": action.description}
            for action_key, action in resource.actions.items()
        },
    }
    if resource.attributes:
        attrs["attributes"] = {
            attr_key: {"type": attr.type or "string", "description": attr.description}
            for attr_key, attr in resource.attributes.items()
        }
    return attrs


@exports("resources")
def generate_resources(client: PermitClient, warnings: WarningCollector) -> str:
    resources = list_exportable_resources(client)
    for resource in resources:
        if not resource.key:
            warnings.add_warning(f"Skipping resource without a key (name: '{resource.name}')")
    blocks = [render_resource("permitio_resource", sanitize(resource.key), resource_attrs(resource))
              for resource in unique_resources(resources, warnings)]
    return render_section("Resources", blocks)


# --- relations ---

@exports("resource relations")
def generate_relations(client: PermitClient, warnings: WarningCollector) -> str:
    resources = unique_resources(list_exportable_resources(client))
    exported = {r.key for r in resources}
    claimed: Dict[str, str] = {}
    blocks = []
    for resource in resources:
        try:
            relations = list_relations(client, resource.key)
        except ExportCancelled:
            logger.info("Relation export cancelled, keeping relations fetched so far")
            break
        except Exception as e:
            warnings.add_warning(
                f"Failed to export relations for resource '{resource.key}': {error_message(e)}")
            continue

        for relation in relations:
            if not relation.key or not relation.subject_resource:
                warnings.add_warning(
                    f"Skipping incomplete relation '{relation.key}' on resource '{resource.key}'")
                continue
            tf_id = relation_id(relation)
            label = f"{relation.subject_resource}:{relation.key}:{relation.object_resource}"
            if not claim_id(claimed, tf_id, label, "relation", warnings):
                continue
            attrs = {
                "key": relation.key,
                "name": relation.name or relation.key,
                "description": relation.description,
                "subject_resource": resource_ref(relation.subject_resource, exported),
                "object_resource": resource_ref(relation.object_resource, exported),
            }
            blocks.append(render_resource("permitio_relation", tf_id, attrs))
    return render_section("Resource Relations", blocks)


# --- roles ---

def role_attrs(role: Role, resource_key: str = "") -> Dict[str, Any]:
    return {
        "key": role.key,
        "name": role.name or role.key,
        "description": role.description,
        "resource": reference("permitio_resource", sanitize(resource_key), "key")
        if resource_key else None,
        "permissions": role.permissions or None,
        "extends": role.extends or None,
    }


@exports("roles")
def generate_roles(client: PermitClient, warnings: WarningCollector) -> str:
    """Top-level roles, then the roles scoped to each exported resource."""
    claimed: Dict[str, str] = {}
    blocks = []
    for role in (Role.from_dict(r) for r in client.list_roles()):
        if not role.key:
            warnings.add_warning(f"Skipping role without a key (name: '{role.name}')")
            continue
        if claim_id(claimed, role_id(role.key), role.key, "role", warnings):
            blocks.append(render_resource("permitio_role", role_id(role.key), role_attrs(role)))

    for resource in unique_resources(list_exportable_resources(client)):
        try:
            roles = [Role.from_dict(r) for r in client.list_resource_roles(resource.key)]
        except ExportCancelled:
            logger.info("Role export cancelled, keeping roles fetched so far")
            break
        except Exception as e:
            warnings.add_warning(
                f"Failed to export roles for resource '{resource.key}': {error_message(e)}")
            continue

        for role in roles:
            if not role.key:
                warnings.add_warning(
                    f"Skipping role without a key on resource '{resource.key}' (name: '{role.name}')")
                continue
            tf_id = role_id(role.key, resource.key)
            if claim_id(claimed, tf_id, f"{resource.key}:{role.key}", "role", warnings):
                blocks.append(render_resource("permitio_role", tf_id,
                                              role_attrs(role, resource.key)))
    return render_section("Roles", blocks)


# --- role derivations ---

class ResourceData:
    """Roles and relations gathered for one resource."""

    def __init__(self, resource: Resource, roles: List[Role], relations: List[Relation]):
        self.resource = resource
        self.roles = roles
        self.relations = relations


def gather_resource_data(client: PermitClient,
                         warnings: WarningCollector) -> Dict[str, ResourceData]:
    resource_map: Dict[str, ResourceData] = {}
    for resource in unique_resources(list_exportable_resources(client)):
        try:
            roles = [Role.from_dict(r) for r in client.list_resource_roles(resource.key)]
            relations = list_relations(client, resource.key)
        except ExportCancelled:
            logger.info("Role derivation export cancelled while gathering resources")
            break
        except Exception as e:
            warnings.add_warning(
                f"Failed to gather data for resource '{resource.key}': {error_message(e)}")
            continue
        resource_map[resource.key] = ResourceData(resource, roles, relations)
    return resource_map


def build_relation_lookup(resource_map: Dict[str, ResourceData]) -> Dict[Tuple[str, str, str], Relation]:
    """Index relations by (subject resource, relation key, object resource)."""
    lookup = {}
    for data in resource_map.values():
        for relation in data.relations:
            if relation.key and relation.subject_resource and relation.object_resource:
                lookup[(relation.subject_resource, relation.key, relation.object_resource)] = relation
    return lookup


def build_role_derivations(resource_map: Dict[str, ResourceData],
                           warnings: WarningCollector) -> List[RoleDerivation]:
    """Resolve every grant rule found on resource roles into a role derivation.

    A grant whose relation is not among the gathered relations is skipped
    with a warning.
    """
    lookup = build_relation_lookup(resource_map)
    derivations = []
    for resource_key, data in resource_map.items():
        for role in data.roles:
            if not role.key:
                continue
            for grant in role.granted_to:
                if not grant.complete:
                    continue
                mapping_key = (grant.on_resource, grant.linked_by_relation, resource_key)
                relation = lookup.get(mapping_key)
                if relation is None:
                    warnings.add_warning(
                        f"Could not find relation mapping for {':'.join(mapping_key)} "
                        f"(role '{grant.role}' -> '{role.key}')")
                    continue

                rel_id = relation_id(relation)
                derivations.append(RoleDerivation(
                    id=f"{sanitize(grant.role)}_to_{sanitize(role.key)}",
                    role=grant.role,
                    on_resource=grant.on_resource,
                    to_role=role.key,
                    resource=resource_key,
                    linked_by=relation.key,
                    relation_id=rel_id,
                    dependencies=[
                        f"permitio_role.{role_id(grant.role, grant.on_resource)}",
                        f"permitio_resource.{sanitize(grant.on_resource)}",
                        f"permitio_role.{role_id(role.key, resource_key)}",
                        f"permitio_resource.{sanitize(resource_key)}",
                        f"permitio_relation.{rel_id}",
                    ],
                ))
    return derivations


def render_role_derivation(derivation: RoleDerivation, tf_id: str) -> str:
    attrs = {
        "role": derivation.role,
        "on_resource": derivation.on_resource,
        "to_role": derivation.to_role,
        "resource": derivation.resource,
        "linked_by": derivation.linked_by,
        "depends_on": [HCLExpression(dep) for dep in derivation.dependencies],
    }
    comment = (f"{derivation.role}@{derivation.on_resource} -> "
               f"{derivation.to_role}@{derivation.resource} via {derivation.linked_by}")
    return render_resource("permitio_role_derivation", tf_id, attrs, comments=[comment])


@exports("role derivations")
def generate_role_derivations(client: PermitClient, warnings: WarningCollector) -> str:
    resource_map = gather_resource_data(client, warnings)
    if not resource_map:
        return ""
    derivations = build_role_derivations(resource_map, warnings)
    ids = make_unique_ids([d.id for d in derivations])
    blocks = [render_role_derivation(d, tf_id) for d, tf_id in zip(derivations, ids)]
    return render_section("Role Derivations", blocks)


# --- user attributes ---

def is_builtin_user_attribute(key: str, description: Optional[str]) -> bool:
    if key in BUILTIN_USER_ATTRIBUTES:
        return True
    text = (description or "").lower()
    return any(marker in text for marker in BUILTIN_DESCRIPTION_MARKERS)


def normalize_attribute_type(attr_type: str, warnings: WarningCollector) -> str:
    normalized = USER_ATTRIBUTE_TYPES.get((attr_type or "").lower())
    if normalized is None:
        warnings.add_warning(f"Unknown attribute type: {attr_type}, using 'string' as default")
        return "string"
    return normalized


@exports("user attributes")
def generate_user_attributes(client: PermitClient, warnings: WarningCollector) -> str:
    user = Resource.from_dict(client.get_resource(USER_RESOURCE_KEY))
    claimed: Dict[str, str] = {}
    blocks = []
    for key, attr in user.attributes.items():
        if is_builtin_user_attribute(key, attr.description):
            continue
        if not claim_id(claimed, sanitize(key), key, "user attribute", warnings):
            continue
        attrs = {
            "key": key,
            "type": normalize_attribute_type(attr.type, warnings),
            "description": attr.description,
        }
        blocks.append(render_resource("permitio_user_attribute", sanitize(key), attrs))
    return render_section("User Attributes", blocks)


# --- condition sets ---

def conditions_expression(conditions: Any) -> HCLExpression:
    """jsonencode(...) of a condition tree, parsing it first if sent as text."""
    if conditions is None or conditions == "":
        conditions = {}
    elif isinstance(conditions, str):
        try:
            conditions = json.loads(conditions)
        except ValueError:
            pass
    return jsonencode(conditions)


def list_condition_sets(client: PermitClient, set_type: str) -> List[ConditionSet]:
    sets = [ConditionSet.from_dict(s) for s in client.list_condition_sets()]
    return [s for s in sets if s.type == set_type]


def _render_condition_sets(client: PermitClient, warnings: WarningCollector,
                           set_type: str, resource_type: str, title: str,
                           label: str) -> str:
    claimed: Dict[str, str] = {}
    blocks = []
    for cs in list_condition_sets(client, set_type):
        missing = cs.missing_fields()
        if missing:
            warnings.add_warning(
                f"Invalid {label} data for '{cs.label}': missing {', '.join(missing)}")
            continue
        if not claim_id(claimed, sanitize(cs.key), cs.key, label, warnings):
            continue
        attrs = {
            "key": cs.key,
            "name": cs.name,
            "description": cs.description,
            "resource": (cs.resource_key or cs.resource_id) or None,
            "conditions": conditions_expression(cs.conditions),
        }
        blocks.append(render_resource(resource_type, sanitize(cs.key), attrs))
    return render_section(title, blocks)


@exports("user sets")
def generate_user_sets(client: PermitClient, warnings: WarningCollector) -> str:
    return _render_condition_sets(client, warnings, USERSET, "permitio_user_set", "User Sets",
                                  "user set")


@exports("resource sets")
def generate_resource_sets(client: PermitClient, warnings: WarningCollector) -> str:
    return _render_condition_sets(client, warnings, RESOURCESET, "permitio_resource_set",
                                  "Resource Sets", "resource set")


# --- condition set rules ---

def is_stale_autogen(set_key: str, available: Set[str]) -> bool:
    """An autogenerated set that no longer exists in the environment."""
    return set_key.startswith(AUTOGEN_PREFIX) and set_key not in available


@exports("condition set rules")
def generate_condition_set_rules(client: PermitClient, warnings: WarningCollector) -> str:
    rules = [ConditionSetRule.from_dict(r) for r in client.list_condition_set_rules()]
    if not rules:
        return ""

    sets = [ConditionSet.from_dict(s) for s in client.list_condition_sets()]
    user_sets = {s.key for s in sets if s.type == USERSET and s.key}
    resource_sets = {s.key for s in sets if s.type == RESOURCESET and s.key}

    valid = []
    for rule in rules:
        if not (rule.user_set and rule.resource_set and rule.permission):
            warnings.add_warning(
                f"Invalid condition set rule: user_set='{rule.user_set}' "
                f"permission='{rule.permission}' resource_set='{rule.resource_set}'")
            continue
        if is_stale_autogen(rule.user_set, user_sets) or \
                is_stale_autogen(rule.resource_set, resource_sets):
            logger.info(f"Skipping rule {rule.user_set}/{rule.permission}/{rule.resource_set}: "
                        f"references a removed autogenerated set")
            continue
        valid.append(rule)

    ids = make_unique_ids([sanitize(r.user_set, r.resource_set, r.permission) for r in valid])
    blocks = []
    for rule, tf_id in zip(valid, ids):
        attrs = {
            "user_set": rule.user_set,
            "resource_set": rule.resource_set,
            "permission": rule.permission,
        }
        blocks.append(render_resource("permitio_condition_set_rule", tf_id, attrs))
    return render_section("Condition Set Rules", blocks)


# --- pipeline ---

# Order matters: later blocks reference the ones declared before them.
GENERATORS: List[Tuple[str, Generator]] = [
    ("resources", generate_resources),
    ("resource relations", generate_relations),
    ("roles", generate_roles),
    ("role derivations", generate_role_derivations),
    ("user attributes", generate_user_attributes),
    ("user sets", generate_user_sets),
    ("resource sets", generate_resource_sets),
    ("condition set rules", generate_condition_set_rules),
]
