"""
security/resolver.py -- Turn a caller's selection into concrete principals.

Bulk operations accept "who" in four shapes. The caller names the shape
explicitly instead of the resolver guessing from the runtime type of a list
(a list of IDs and a list of principals look alike once IDs stop being
integers):

    Single(principal)                   -> [principal]
    Matching(criteria, principal_type)  -> run criteria(table) against that type
    ByIds([1, 2, 3], principal_type)    -> load those IDs (missing ones skipped)
    Many([p1, p2])                      -> passed through unchanged

An empty result is not an error: bulk operations over nothing are no-ops.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Union

from auth.models import Principal
from auth.registry import PrincipalRegistry
from auth.store import Criteria


@dataclass(frozen=True)
class Single:
    principal: Principal


@dataclass(frozen=True)
class Many:
    principals: Sequence[Principal]


@dataclass(frozen=True)
class ByIds:
    ids: Sequence[int]
    principal_type: str | None = None


@dataclass(frozen=True)
class Matching:
    """A deferred query: criteria receives the principal table, returns a SQL clause.

    Matching(lambda t: t.c.role == "admin")
    Matching(lambda t: t.c.email.like("%@example.com"), principal_type="staff")
    """

    criteria: Criteria
    principal_type: str | None = None


PrincipalSelection = Union[Single, Many, ByIds, Matching]


def resolve_principals(
    selection: PrincipalSelection,
    registry: PrincipalRegistry,
    default_type: str | None = None,
) -> list[Principal]:
    """Materialize selection into a list of principals.

    Matching and ByIds without a principal_type use default_type, falling
    back to the registry default.

    Raises ValueError when a variant's contents do not match its shape (IDs
    inside Many, principals inside ByIds), TypeError for anything that is not
    one of the four variants, and ConfigurationError for an unknown
    principal_type.
    """
    if isinstance(selection, Single):
        if not isinstance(selection.principal, Principal):
            raise ValueError(f"Single expects a Principal, got {type(selection.principal).__name__}.")
        return [selection.principal]

    if isinstance(selection, Matching):
        return registry.get(selection.principal_type or default_type).find(selection.criteria)

    if isinstance(selection, ByIds):
        ids = list(selection.ids)
        bad = [i for i in ids if isinstance(i, bool) or not isinstance(i, int)]
        if bad:
            raise ValueError(f"ByIds expects integer identifiers, got {bad[:3]!r}.")
        return registry.get(selection.principal_type or default_type).get_many(ids)

    if isinstance(selection, Many):
        principals = list(selection.principals)
        bad = [p for p in principals if not isinstance(p, Principal)]
        if bad:
            raise ValueError(
                f"Many expects Principal instances, got {type(bad[0]).__name__}. Use ByIds for identifiers."
            )
        return principals

    raise TypeError(f"Unsupported principal selection: {type(selection).__name__}")
