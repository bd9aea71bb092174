"""Pydantic models for consultations, contributions and request/response schemas."""

from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field, field_validator

ConsultationStatus = Literal["in-progress", "completed"]
Sender = Literal["user", "ai"]
Tier = Literal["free", "premium"]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def clamp_confidence(value) -> int:
    """Coerce a model-reported confidence into an int in [0, 100]."""
    try:
        value = round(float(value))
    except (TypeError, ValueError, OverflowError):
        return 0
    return max(0, min(100, value))


class PatientRef(BaseModel):
    id: str
    name: str


class PatientInfo(BaseModel):
    patient_id: str
    name: str
    age: int
    gender: str
    condition: str | None = None
    status: Literal["active", "scheduled", "completed"] = "active"
    last_visit: str | None = None


class User(BaseModel):
    id: str
    email: str | None = None


class SessionContext(BaseModel):
    """Who is calling and what their subscription allows."""

    user: User | None = None
    tier: Tier = "free"


class Source(BaseModel):
    title: str
    url: str | None = None


class Consultation(BaseModel):
    id: str
    user_id: str
    patient_id: str
    patient_name: str
    query: str
    status: ConsultationStatus = "in-progress"
    consensus_level: int | None = Field(default=None, ge=0, le=100)
    final_recommendation: str | None = None
    symptoms: list[str] = []
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class ConsultationMessage(BaseModel):
    id: str | None = None
    consultation_id: str
    sender: Sender
    content: str
    ai_type: str | None = None
    created_at: datetime = Field(default_factory=_now)


class AgentContribution(BaseModel):
    id: str | None = None
    consultation_id: str
    agent_id: str
    opinion: str
    reasoning: str = ""
    confidence: int = 0
    sources: list[Source] = []
    created_at: datetime = Field(default_factory=_now)

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp(cls, value) -> int:
        return clamp_confidence(value)


class ConsultationFile(BaseModel):
    id: str
    consultation_id: str
    file_name: str
    file_path: str
    file_type: str
    file_size: int
    is_image: bool = False
    created_at: datetime = Field(default_factory=_now)


class Consensus(BaseModel):
    level: int
    recommendation: str
    contributions: int = 0


class ConsultationHandle(BaseModel):
    consultation_id: str
    patient: PatientRef
    query: str


class ConsultationResult(BaseModel):
    consultation: Consultation
    contributions: list[AgentContribution] = []
    consensus: Consensus
    warnings: list[str] = []


class ConsultationDetail(BaseModel):
    consultation: Consultation
    messages: list[ConsultationMessage] = []
    contributions: list[AgentContribution] = []
    files: list[ConsultationFile] = []


class AgentOpinion(BaseModel):
    """One specialty's view as returned by the collaborative generation call."""

    specialty: str
    opinion: str
    reasoning: str = ""
    confidence: int = 0
    sources: list[Source] = []

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp(cls, value) -> int:
        return clamp_confidence(value)


class AgentInfo(BaseModel):
    id: str
    display_name: str
    specialty: str
    is_premium: bool


# -- HTTP request/response schemas --


class ConsultationRequest(BaseModel):
    patient_id: str
    patient_name: str | None = None
    query: str = ""
    symptoms: list[str] = []
    agent_ids: list[str]


class FollowUpRequest(BaseModel):
    agent_id: str
    message: str


class FollowUpResponse(BaseModel):
    consultation_id: str
    reply: ConsultationMessage
    warnings: list[str] = []


class SelectionRequest(BaseModel):
    selection: list[str] = []
    agent_id: str


class SelectionResponse(BaseModel):
    selection: list[str]
    allowed: bool
    free_agents_selected: int
    max_free_agents: int


class CollaborativeRequest(BaseModel):
    query: str
    agent_ids: list[str]


class CollaborativeResponse(BaseModel):
    opinions: list[AgentOpinion]
    consensus: Consensus
