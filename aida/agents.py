"""Specialist agent catalogue: the one place agent ids map to labels and tiers."""

import re
from dataclasses import dataclass
from enum import Enum

from aida.models import AgentInfo


class AgentKind(str, Enum):
    CENTRAL = "central"
    CARDIOLOGY = "cardiology"
    NEUROLOGY = "neurology"
    RADIOLOGY = "radiology"
    GENERAL = "general"
    PEDIATRICS = "pediatrics"
    DERMATOLOGY = "dermatology"
    PSYCHIATRY = "psychiatry"


@dataclass(frozen=True)
class AgentProfile:
    id: str
    display_name: str
    specialty: str
    prompt_label: str
    is_premium: bool = False

    def info(self) -> AgentInfo:
        return AgentInfo(
            id=self.id,
            display_name=self.display_name,
            specialty=self.specialty,
            is_premium=self.is_premium,
        )


AGENT_CATALOG: dict[AgentKind, AgentProfile] = {
    AgentKind.CENTRAL: AgentProfile(
        id="central",
        display_name="Central AI Orchestrator",
        specialty="Multi-specialty coordination",
        prompt_label="general medicine with a focus on coordinating care",
    ),
    AgentKind.CARDIOLOGY: AgentProfile(
        id="cardiology",
        display_name="Cardiology AI",
        specialty="Heart & Circulatory System",
        prompt_label="cardiology",
    ),
    AgentKind.NEUROLOGY: AgentProfile(
        id="neurology",
        display_name="Neurology AI",
        specialty="Brain & Nervous System",
        prompt_label="neurology",
    ),
    AgentKind.RADIOLOGY: AgentProfile(
        id="radiology",
        display_name="Radiology AI",
        specialty="Medical Imaging",
        prompt_label="radiology and medical imaging",
        is_premium=True,
    ),
    AgentKind.GENERAL: AgentProfile(
        id="general",
        display_name="General Medicine AI",
        specialty="Primary Care",
        prompt_label="general medicine and primary care",
    ),
    AgentKind.PEDIATRICS: AgentProfile(
        id="pediatrics",
        display_name="Pediatrics AI",
        specialty="Child & Adolescent Health",
        prompt_label="pediatrics",
        is_premium=True,
    ),
    AgentKind.DERMATOLOGY: AgentProfile(
        id="dermatology",
        display_name="Dermatology AI",
        specialty="Skin Conditions",
        prompt_label="dermatology",
        is_premium=True,
    ),
    AgentKind.PSYCHIATRY: AgentProfile(
        id="psychiatry",
        display_name="Psychiatry AI",
        specialty="Mental Health",
        prompt_label="psychiatry and mental health",
        is_premium=True,
    ),
}


def slugify(label: str) -> str:
    """'Infectious Disease' -> 'infectious_disease'."""
    return re.sub(r"[^a-z0-9]+", "_", label.strip().lower()).strip("_")


def external_profile(specialty: str) -> AgentProfile:
    # Externally configured specialties are billed like premium agents.
    return AgentProfile(
        id=slugify(specialty),
        display_name=f"{specialty} AI",
        specialty=specialty,
        prompt_label=specialty.lower(),
        is_premium=True,
    )


def get_profile(agent_id: str, external_specialties: list[str] | None = None) -> AgentProfile:
    try:
        return AGENT_CATALOG[AgentKind(agent_id)]
    except ValueError:
        pass
    for specialty in external_specialties or []:
        if slugify(specialty) == agent_id:
            return external_profile(specialty)
    raise KeyError(f"Unknown agent {agent_id}")


def list_agents(external_specialties: list[str] | None = None) -> list[AgentProfile]:
    profiles = list(AGENT_CATALOG.values())
    known = {p.id for p in profiles}
    for specialty in external_specialties or []:
        profile = external_profile(specialty)
        if profile.id not in known:
            profiles.append(profile)
            known.add(profile.id)
    return profiles
