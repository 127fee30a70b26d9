# tests/test_triggers.py

import pytest

from verdictci.model import FORCE_ALL
from verdictci.triggers import TriggerRuleEngine

AREAS = {
    "backend": ["backend", "infra"],
    "frontend": ["frontend"],
    "docs": ["docs"],
}


def test_area_enabled_by_any_of_its_categories():
    flags = TriggerRuleEngine(AREAS).evaluate({"infra"})
    assert flags.as_dict() == {"backend": True, "frontend": False, "docs": False}


def test_force_all_enables_every_area():
    flags = TriggerRuleEngine(AREAS).evaluate({FORCE_ALL})
    assert all(flags.as_dict().values())


def test_fallback_area_when_nothing_matched():
    flags = TriggerRuleEngine(AREAS, fallback_area="docs").evaluate(set())
    assert flags.as_dict() == {"backend": False, "frontend": False, "docs": True}


def test_fallback_not_used_when_something_matched():
    flags = TriggerRuleEngine(AREAS, fallback_area="docs").evaluate({"frontend"})
    assert flags.enabled("frontend")
    assert not flags.enabled("docs")


def test_no_fallback_means_all_false():
    flags = TriggerRuleEngine(AREAS).evaluate({"unknown"})
    assert not any(flags.as_dict().values())


def test_unknown_fallback_is_rejected():
    with pytest.raises(ValueError):
        TriggerRuleEngine(AREAS, fallback_area="nope")


def test_undeclared_area_reads_false():
    flags = TriggerRuleEngine(AREAS).evaluate({"backend"})
    assert flags.enabled("mobile") is False
