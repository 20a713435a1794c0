from types import SimpleNamespace

import pytest

from app.services.hierarchy_matcher import (
    HierarchyScope,
    combined_label,
    matching,
    most_specific_first,
    scope_matches,
)

UNIT = HierarchyScope("DJ", "DMH", "L01", "M03")


@pytest.mark.parametrize("grant,expected", [
    (HierarchyScope("DJ"), True),
    (HierarchyScope("DJ", "DMH"), True),
    (HierarchyScope("DJ", "DMH", "L01"), True),
    (HierarchyScope("DJ", "DMH", "L01", "M03"), True),
    (HierarchyScope("DJ", "DMH", "L02"), False),
    (HierarchyScope("DJ", "PKG"), False),
    (HierarchyScope("KR"), False),
    (HierarchyScope("DJ", "DMH", "L01", "M04"), False),
])
def test_partial_match(grant, expected):
    assert scope_matches(grant, UNIT) is expected
    assert grant.covers(UNIT) is expected


def test_grant_deeper_than_unit_does_not_match():
    line_unit = HierarchyScope("DJ", "DMH", "L01")
    assert not scope_matches(HierarchyScope("DJ", "DMH", "L01", "M03"), line_unit)
    assert scope_matches(HierarchyScope("DJ", "DMH", "L01"), line_unit)


def test_empty_string_is_unspecified():
    assert scope_matches(HierarchyScope("DJ", "", ""), UNIT)


def test_label_and_specificity():
    assert HierarchyScope("DJ").label == "Plant: DJ"
    assert HierarchyScope("DJ", "DMH", "L01").label == "Line: L01"
    assert HierarchyScope("DJ", "DMH", "L01", "M03").specificity == 4


def test_has_gaps():
    assert HierarchyScope("DJ", None, "L01").has_gaps()
    assert HierarchyScope("DJ", "DMH", None, "M03").has_gaps()
    assert not HierarchyScope("DJ", "DMH").has_gaps()


def test_combined_label_is_plant_first_without_repeats():
    scopes = [HierarchyScope("DJ", "DMH"), HierarchyScope("DJ"), HierarchyScope("DJ", "DMH")]
    assert combined_label(scopes) == "Plant: DJ, Area: DMH"


def grant(level, plant, area=None, line=None, machine=None):
    return SimpleNamespace(approval_level=level, plant_code=plant, area_code=area,
                           line_code=line, machine_code=machine)


def test_matching_and_ordering():
    grants = [grant(2, "DJ"), grant(2, "DJ", "DMH", "L02"), grant(3, "DJ", "DMH", "L01"), grant(4, "KR")]

    matched = matching(grants, UNIT)
    assert [g.approval_level for g in matched] == [2, 3]
    assert most_specific_first(matched)[0].line_code == "L01"

