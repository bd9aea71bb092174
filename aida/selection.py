"""Agent selection policy gated by subscription tier."""

import os

from aida.agents import AgentProfile, get_profile
from aida.errors import ConsultationValidationError

MAX_FREE_AGENTS = int(os.environ.get("MAX_FREE_AGENTS", "3"))


def count_free_agents(selection: list[str], external_specialties: list[str] | None = None) -> int:
    count = 0
    for agent_id in selection:
        try:
            if not get_profile(agent_id, external_specialties).is_premium:
                count += 1
        except KeyError:
            continue
    return count


def can_select(
    selection: list[str],
    tier: str,
    agent: AgentProfile,
    max_free_agents: int = MAX_FREE_AGENTS,
    external_specialties: list[str] | None = None,
) -> bool:
    """Whether `agent` may be added to `selection` on `tier`.

    Already-selected agents are always allowed (a no-op re-select).
    """
    if agent.id in selection:
        return True
    if agent.is_premium:
        return tier == "premium"
    if tier == "premium":
        return True
    return count_free_agents(selection, external_specialties) < max_free_agents


def toggle_agent(
    selection: list[str],
    tier: str,
    agent_id: str,
    max_free_agents: int = MAX_FREE_AGENTS,
    external_specialties: list[str] | None = None,
) -> tuple[list[str], bool]:
    """Select or deselect one agent; returns (new_selection, allowed).

    A denied toggle returns the selection unchanged. Raises KeyError for an
    unknown agent id.
    """
    if agent_id in selection:
        return [a for a in selection if a != agent_id], True

    agent = get_profile(agent_id, external_specialties)
    if not can_select(selection, tier, agent, max_free_agents, external_specialties):
        return list(selection), False
    return [*selection, agent_id], True


def validate_selection(
    selection: list[str],
    tier: str,
    max_free_agents: int = MAX_FREE_AGENTS,
    external_specialties: list[str] | None = None,
) -> list[AgentProfile]:
    if not selection:
        raise ConsultationValidationError("At least one agent must be selected")

    profiles = []
    chosen: list[str] = []
    for agent_id in selection:
        if agent_id in chosen:
            continue
        try:
            profile = get_profile(agent_id, external_specialties)
        except KeyError:
            raise ConsultationValidationError(f"Unknown agent {agent_id}")
        if not can_select(chosen, tier, profile, max_free_agents, external_specialties):
            if profile.is_premium:
                raise ConsultationValidationError(
                    f"{profile.display_name} requires a premium subscription"
                )
            raise ConsultationValidationError(
                f"The free tier allows at most {max_free_agents} agents"
            )
        chosen.append(agent_id)
        profiles.append(profile)
    return profiles
