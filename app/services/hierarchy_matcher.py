"""
Hierarchy scope matching.

A scope is a partially specified (plant, area, line, machine) tuple. A grant
scope matches a unit scope when every field the grant specifies equals the
unit's field; unspecified grant fields match anything. Plant is always
specified.

    grant (DJ, -, -, -)      matches unit (DJ, DMH, L01, M03)
    grant (DJ, DMH, -, -)    matches unit (DJ, DMH, L01, M03)
    grant (DJ, DMH, L02, -)  does not match unit (DJ, DMH, L01, M03)
"""
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple, TypeVar


SCOPE_FIELDS: Tuple[str, ...] = ("plant", "area", "line", "machine")

SCOPE_LABELS = {
    "plant": "Plant",
    "area": "Area",
    "line": "Line",
    "machine": "Machine",
}


@dataclass(frozen=True)
class HierarchyScope:
    """Partially specified position in the plant/area/line/machine hierarchy."""

    plant: str
    area: Optional[str] = None
    line: Optional[str] = None
    machine: Optional[str] = None

    @classmethod
    def of_unit(cls, unit) -> "HierarchyScope":
        """Scope of a ProductionUnit row."""
        return cls(
            plant=unit.plant_code,
            area=unit.area_code,
            line=unit.line_code,
            machine=unit.machine_code,
        )

    @classmethod
    def of_grant(cls, grant) -> "HierarchyScope":
        """Scope of an ApprovalGrant row."""
        return cls(
            plant=grant.plant_code,
            area=grant.area_code,
            line=grant.line_code,
            machine=grant.machine_code,
        )

    def values(self) -> Tuple[Optional[str], ...]:
        return (self.plant, self.area, self.line, self.machine)

    @property
    def specificity(self) -> int:
        """Number of specified fields (1 = plant only, 4 = machine)."""
        return sum(1 for value in self.values() if value)

    @property
    def label(self) -> str:
        """Display label of the deepest specified field, e.g. 'Area: DMH'."""
        deepest = "plant"
        for field, value in zip(SCOPE_FIELDS, self.values()):
            if value:
                deepest = field
        return f"{SCOPE_LABELS[deepest]}: {getattr(self, deepest)}"

    def has_gaps(self) -> bool:
        """True when a deeper field is set while a shallower one is not."""
        seen_empty = False
        for value in self.values():
            if not value:
                seen_empty = True
            elif seen_empty:
                return True
        return False

    def covers(self, unit_scope: "HierarchyScope") -> bool:
        """True when this (grant) scope applies to ``unit_scope``."""
        return scope_matches(self, unit_scope)


def scope_matches(grant_scope: HierarchyScope, unit_scope: HierarchyScope) -> bool:
    """Field-by-field partial match of a grant scope against a unit scope."""
    if not grant_scope.plant or grant_scope.plant != unit_scope.plant:
        return False
    for grant_value, unit_value in zip(grant_scope.values()[1:], unit_scope.values()[1:]):
        if grant_value and grant_value != unit_value:
            return False
    return True


T = TypeVar("T")


def matching(items: Iterable[T], unit_scope: HierarchyScope, scope_of=HierarchyScope.of_grant) -> List[T]:
    """Filter ``items`` (grants by default) to those whose scope covers ``unit_scope``."""
    return [item for item in items if scope_matches(scope_of(item), unit_scope)]


def most_specific_first(items: Sequence[T], scope_of=HierarchyScope.of_grant) -> List[T]:
    """Order items by descending scope specificity (machine before plant); stable."""
    return sorted(items, key=lambda item: -scope_of(item).specificity)


def combined_label(scopes: Iterable[HierarchyScope]) -> str:
    """Union of scope labels in hierarchy order (plant first), without repeats."""
    labels: List[str] = []
    for scope in sorted(scopes, key=lambda s: s.specificity):
        if scope.label not in labels:
            labels.append(scope.label)
    return ", ".join(labels)
