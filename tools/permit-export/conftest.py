"""Shared fixtures for the permit-export tests."""

from unittest.mock import MagicMock

import pytest

from permit_client import PermitClient


def _lookup(table, key):
    value = table.get(key, [])
    if isinstance(value, Exception):
        raise value
    return value


@pytest.fixture
def make_client():
    """Build a PermitClient double serving the given records.

    relations and resource_roles map a resource key to a record list, or to
    an exception raised when that resource is queried.
    """
    def build(resources=(), relations=None, resource_roles=None, roles=(), user=None,
              condition_sets=(), rules=()):
        relations = relations or {}
        resource_roles = resource_roles or {}
        client = MagicMock(spec=PermitClient)
        client.cancelled = False
        client.list_resources.return_value = list(resources)
        client.list_resource_relations.side_effect = lambda key: _lookup(relations, key)
        client.list_resource_roles.side_effect = lambda key: _lookup(resource_roles, key)
        client.list_roles.return_value = list(roles)
        client.get_resource.return_value = user
        client.list_condition_sets.return_value = list(condition_sets)
        client.list_condition_set_rules.return_value = list(rules)
        return client
    return build
