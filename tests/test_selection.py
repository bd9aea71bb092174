"""Tests for the agent catalogue and tier-gated selection."""

import pytest

from aida.agents import AGENT_CATALOG, AgentKind, get_profile, list_agents, slugify
from aida.errors import ConsultationValidationError
from aida.selection import can_select, count_free_agents, toggle_agent, validate_selection


class TestCatalog:
    def test_every_kind_has_profile(self):
        for kind in AgentKind:
            assert AGENT_CATALOG[kind].id == kind.value

    def test_premium_agents(self):
        premium = {p.id for p in AGENT_CATALOG.values() if p.is_premium}
        assert premium == {"radiology", "pediatrics", "dermatology", "psychiatry"}

    def test_unknown_agent(self):
        with pytest.raises(KeyError):
            get_profile("astrology")

    def test_external_specialty_listed_once(self):
        agents = list_agents(["Infectious Disease", "infectious disease"])
        ids = [a.id for a in agents]
        assert ids.count("infectious_disease") == 1
        assert get_profile("infectious_disease", ["Infectious Disease"]).is_premium

    def test_slugify(self):
        assert slugify("  Infectious Disease ") == "infectious_disease"
        assert slugify("Ear, Nose & Throat") == "ear_nose_throat"


class TestCanSelect:
    def test_free_tier_blocks_premium(self):
        assert not can_select([], "free", get_profile("radiology"))

    def test_premium_tier_allows_premium(self):
        assert can_select([], "premium", get_profile("radiology"))

    def test_free_quota(self):
        selection = ["central", "cardiology", "neurology"]
        assert not can_select(selection, "free", get_profile("general"), max_free_agents=3)
        assert can_select(selection[:2], "free", get_profile("general"), max_free_agents=3)

    def test_premium_tier_ignores_quota(self):
        selection = ["central", "cardiology", "neurology"]
        assert can_select(selection, "premium", get_profile("general"), max_free_agents=3)

    def test_reselect_is_allowed(self):
        selection = ["central", "cardiology", "neurology"]
        assert can_select(selection, "free", get_profile("central"), max_free_agents=3)


class TestToggleAgent:
    def test_select(self):
        assert toggle_agent(["central"], "free", "cardiology") == (["central", "cardiology"], True)

    def test_deselect_always_allowed(self):
        selection, allowed = toggle_agent(["central", "radiology"], "free", "radiology")
        assert allowed
        assert selection == ["central"]

    def test_denied_leaves_selection_unchanged(self):
        selection = ["central", "cardiology", "neurology"]
        assert toggle_agent(selection, "free", "general", max_free_agents=3) == (selection, False)

    def test_premium_denied_on_free(self):
        assert toggle_agent([], "free", "psychiatry") == ([], False)

    def test_unknown_agent_raises(self):
        with pytest.raises(KeyError):
            toggle_agent([], "free", "astrology")

    def test_count_free_agents(self):
        assert count_free_agents(["central", "radiology", "general", "unknown"]) == 2


class TestValidateSelection:
    def test_empty(self):
        with pytest.raises(ConsultationValidationError):
            validate_selection([], "free")

    def test_unknown(self):
        with pytest.raises(ConsultationValidationError):
            validate_selection(["astrology"], "premium")

    def test_premium_on_free(self):
        with pytest.raises(ConsultationValidationError, match="premium"):
            validate_selection(["central", "dermatology"], "free")

    def test_over_quota(self):
        with pytest.raises(ConsultationValidationError, match="at most 2"):
            validate_selection(["central", "cardiology", "neurology"], "free", max_free_agents=2)

    def test_duplicates_skipped(self):
        profiles = validate_selection(["central", "central", "general"], "free", max_free_agents=2)
        assert [p.id for p in profiles] == ["central", "general"]
