"""
tests/test_principal_resolver.py -- Unit tests for resolve_principals().

Each selection variant is explicit, so a mismatch between the variant and
its contents is an error rather than a guess.
"""

from __future__ import annotations

import pytest

from core.config import ConfigurationError
from security.resolver import ByIds, Many, Matching, Single, resolve_principals


def test_single_returns_one_element_list(registry, make_principal) -> None:
    p = make_principal()
    assert resolve_principals(Single(p), registry) == [p]


def test_many_passes_through_unchanged(registry, make_principal) -> None:
    a, b = make_principal(), make_principal()
    assert resolve_principals(Many([b, a]), registry) == [b, a]


def test_by_ids_keeps_order_and_skips_missing(registry, make_principal) -> None:
    a, b, c = make_principal(), make_principal(), make_principal()
    result = resolve_principals(ByIds([c.id, 999, a.id]), registry)
    assert [p.id for p in result] == [c.id, a.id]


def test_by_ids_uses_requested_principal_type(registry, make_principal) -> None:
    make_principal()
    staff = make_principal(principal_type="staff")
    result = resolve_principals(ByIds([staff.id], principal_type="staff"), registry)
    assert [(p.principal_type, p.id) for p in result] == [("staff", staff.id)]


def test_by_ids_falls_back_to_default_type_argument(registry, make_principal) -> None:
    staff = make_principal(principal_type="staff", email="ops@example.com")
    result = resolve_principals(ByIds([staff.id]), registry, default_type="staff")
    assert [p.email for p in result] == ["ops@example.com"]


def test_matching_runs_criteria_against_table(registry, make_principal) -> None:
    make_principal(role="member")
    admin = make_principal(role="admin")
    result = resolve_principals(Matching(lambda t: t.c.role == "admin"), registry)
    assert [p.id for p in result] == [admin.id]


def test_empty_selection_is_not_an_error(registry) -> None:
    assert resolve_principals(ByIds([]), registry) == []
    assert resolve_principals(Many([]), registry) == []


def test_ids_inside_many_rejected(registry) -> None:
    with pytest.raises(ValueError):
        resolve_principals(Many([1, 2]), registry)


def test_principals_inside_by_ids_rejected(registry, make_principal) -> None:
    with pytest.raises(ValueError):
        resolve_principals(ByIds([make_principal()]), registry)


def test_bare_list_rejected(registry, make_principal) -> None:
    with pytest.raises(TypeError):
        resolve_principals([make_principal()], registry)


def test_unknown_principal_type_is_configuration_error(registry) -> None:
    with pytest.raises(ConfigurationError):
        resolve_principals(ByIds([1], principal_type="robot"), registry)
