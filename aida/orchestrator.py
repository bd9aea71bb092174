"""Consultation orchestrator: from a doctor's question to a consensus-scored recommendation.

The workflow is: open a consultation record, record the user's turn, ask each
selected specialist agent, score the consensus, then mark the consultation
completed. Failures of individual agents or of follow-up writes degrade the
result instead of aborting it; only authentication, validation and the
initial record creation abort the run.
"""

import logging

from aida.agents import AgentKind, AgentProfile, get_profile
from aida.errors import (
    ConsultationNotFound,
    ConsultationValidationError,
    PersistenceError,
    Unauthenticated,
)
from aida.generation import parse_json, parse_sources
from aida.models import (
    AgentContribution,
    AgentOpinion,
    Consensus,
    Consultation,
    ConsultationDetail,
    ConsultationFile,
    ConsultationHandle,
    ConsultationMessage,
    ConsultationResult,
    PatientRef,
    SessionContext,
    Source,
)
from aida.selection import MAX_FREE_AGENTS, validate_selection
from aida.store import ConsultationStore

logger = logging.getLogger(__name__)

AGENT_PROMPT = """You are a medical AI assistant specializing in {specialty}.
You are analyzing a patient named {patient_name} (ID: {patient_id}).
{history}The user has asked: "{question}"

Provide a professional medical response from the perspective of a {specialty} specialist.
Include relevant medical insights, potential diagnoses, and recommendations for further
evaluation or treatment if appropriate. Keep your response concise and focused on the
aspects of the case that fall within {specialty}.

## Output Format:
Respond with ONLY this JSON (no markdown, no extra text):
{{
  "opinion": "<your answer to the user's question>",
  "reasoning": "<the clinical reasoning that supports it>",
  "confidence": <integer 0-100, how confident you are in the opinion>,
  "sources": [{{"title": "<guideline or reference>", "url": "<optional URL>"}}]
}}
"""

FALLBACK_OPINION = (
    "An error occurred while processing this agent's analysis. "
    "Please try again later."
)
FOLLOW_UP_FALLBACK = (
    "I'm sorry, I encountered an error while processing your request. "
    "Please try again later."
)
EMPTY_RECOMMENDATION = "No agent opinions were available for this consultation."
DEFAULT_SOURCES = [Source(title="AI Generated Analysis")]

# Used when a reply is readable text but not the requested JSON.
UNPARSED_CONFIDENCE = 50
HISTORY_TURNS = 10


def effective_query(patient: PatientRef | None, query: str = "", symptoms: list[str] | None = None) -> str:
    if query and query.strip():
        return query.strip()

    symptoms = [s.strip() for s in symptoms or [] if s and s.strip()]
    if symptoms:
        return f"Patient with the following symptoms: {', '.join(symptoms)}"

    if patient is not None and patient.id.strip():
        return f"Analyze patient {patient.name} ({patient.id})"

    raise ConsultationValidationError("Enter a question or at least one symptom")


def build_agent_prompt(
    profile: AgentProfile,
    patient: PatientRef,
    question: str,
    history: list[ConsultationMessage] | None = None,
) -> str:
    history_text = ""
    if history:
        lines = []
        for m in history[-HISTORY_TURNS:]:
            speaker = "User" if m.sender == "user" else f"AI ({m.ai_type or 'assistant'})"
            lines.append(f"{speaker}: {m.content}")
        history_text = "Conversation so far:\n" + "\n".join(lines) + "\n\n"

    return AGENT_PROMPT.format(
        specialty=profile.prompt_label,
        patient_name=patient.name,
        patient_id=patient.id,
        question=question,
        history=history_text,
    )


def parse_agent_reply(consultation_id: str, agent_id: str, raw_text: str) -> AgentContribution:
    try:
        parsed = parse_json(raw_text)
        if not isinstance(parsed, dict) or not parsed.get("opinion"):
            raise ValueError("reply has no opinion")
        return AgentContribution(
            consultation_id=consultation_id,
            agent_id=agent_id,
            opinion=str(parsed["opinion"]).strip(),
            reasoning=str(parsed.get("reasoning") or "").strip(),
            confidence=parsed.get("confidence", UNPARSED_CONFIDENCE),
            sources=parse_sources(parsed.get("sources")) or DEFAULT_SOURCES,
        )
    except ValueError:
        return AgentContribution(
            consultation_id=consultation_id,
            agent_id=agent_id,
            opinion=raw_text.strip(),
            reasoning="",
            confidence=UNPARSED_CONFIDENCE,
            sources=DEFAULT_SOURCES,
        )


def fallback_contribution(consultation_id: str, agent_id: str) -> AgentContribution:
    return AgentContribution(
        consultation_id=consultation_id,
        agent_id=agent_id,
        opinion=FALLBACK_OPINION,
        reasoning="",
        confidence=0,
        sources=[],
    )


def compute_consensus(contributions: list[AgentContribution]) -> Consensus:
    """Average confidence (rounded half up) plus the recommendation to surface.

    A later contribution from the same agent supersedes an earlier one. The
    recommendation is the central agent's opinion when there is one, otherwise
    the opinion of the first contribution with the highest confidence.
    """
    latest: dict[str, AgentContribution] = {}
    for c in contributions:
        latest[c.agent_id] = c
    unique = list(latest.values())

    if not unique:
        return Consensus(level=0, recommendation=EMPTY_RECOMMENDATION, contributions=0)

    total = sum(c.confidence for c in unique)
    n = len(unique)
    level = (2 * total + n) // (2 * n)

    central = latest.get(AgentKind.CENTRAL.value)
    if central is not None:
        recommendation = central.opinion
    else:
        recommendation = max(unique, key=lambda c: c.confidence).opinion

    return Consensus(level=level, recommendation=recommendation, contributions=n)


class ConsultationOrchestrator:
    def __init__(
        self,
        store: ConsultationStore,
        generator,
        integrations=None,
        max_free_agents: int = MAX_FREE_AGENTS,
    ):
        self.store = store
        self.generator = generator
        self.integrations = integrations
        self.max_free_agents = max_free_agents

    def external_specialties(self) -> list[str]:
        return self.integrations.specialties() if self.integrations is not None else []

    def _generator_for(self, profile: AgentProfile):
        if self.integrations is not None:
            external = self.integrations.generator_for(profile.id)
            if external is not None:
                return external
        return self.generator

    def _require(self, consultation_id: str) -> None:
        """Referential check before writing anything that points at the consultation.

        Raises ConsultationNotFound, or PersistenceError when the store cannot
        answer; nothing proceeds against an unverified consultation.
        """
        try:
            self.store.get_consultation(consultation_id)
        except PersistenceError as e:
            logger.warning("Could not verify consultation %s: %s", consultation_id, e)
            raise

    def _owned(self, session: SessionContext, consultation_id: str) -> Consultation:
        if session.user is None:
            raise Unauthenticated("Please sign in to view consultations")
        consultation = self.store.get_consultation(consultation_id)
        if consultation.user_id != session.user.id:
            raise ConsultationNotFound(consultation_id)
        return consultation

    # -- lifecycle --

    def start_consultation(
        self,
        session: SessionContext,
        patient: PatientRef,
        query: str = "",
        symptoms: list[str] | None = None,
        agent_ids: list[str] | None = None,
    ) -> ConsultationHandle:
        if session.user is None:
            raise Unauthenticated("Please sign in to start an AI consultation")

        validate_selection(agent_ids or [], session.tier, self.max_free_agents, self.external_specialties())
        question = effective_query(patient, query, symptoms)

        try:
            consultation = self.store.create_consultation(
                user_id=session.user.id,
                patient_id=patient.id,
                patient_name=patient.name,
                query=question,
                symptoms=[s.strip() for s in symptoms or [] if s and s.strip()],
                status="in-progress",
            )
        except PersistenceError:
            logger.exception("Could not create consultation for patient %s", patient.id)
            raise

        logger.info("Started consultation %s for patient %s", consultation.id, patient.id)
        return ConsultationHandle(consultation_id=consultation.id, patient=patient, query=question)

    def record_user_turn(self, handle: ConsultationHandle, text: str) -> str | None:
        """Append the user's message; returns a warning instead of raising if it was not saved.

        An unknown consultation still raises ConsultationNotFound.
        """
        try:
            self._require(handle.consultation_id)
            self.store.add_message(handle.consultation_id, "user", text)
        except PersistenceError as e:
            logger.warning("Could not save user message for %s: %s", handle.consultation_id, e)
            return "Your message could not be saved. The consultation will continue but may not be saved."
        return None

    def collect_agent_opinions(
        self,
        handle: ConsultationHandle,
        agent_ids: list[str],
        warnings: list[str] | None = None,
    ) -> list[AgentContribution]:
        self._require(handle.consultation_id)
        return self._collect(handle, agent_ids, warnings)

    def _collect(
        self,
        handle: ConsultationHandle,
        agent_ids: list[str],
        warnings: list[str] | None = None,
    ) -> list[AgentContribution]:
        externals = self.external_specialties()
        profiles = []
        for agent_id in agent_ids:
            try:
                profiles.append(get_profile(agent_id, externals))
            except KeyError:
                raise ConsultationValidationError(f"Unknown agent {agent_id}")

        contributions = []
        for profile in profiles:
            prompt = build_agent_prompt(profile, handle.patient, handle.query)
            try:
                raw_text = self._generator_for(profile).generate(prompt, profile.prompt_label)
                if not raw_text or not raw_text.strip():
                    raise ValueError("empty reply")
                contribution = parse_agent_reply(handle.consultation_id, profile.id, raw_text)
            except Exception as e:
                logger.warning("Agent %s failed for consultation %s: %s", profile.id, handle.consultation_id, e)
                contributions.append(fallback_contribution(handle.consultation_id, profile.id))
                continue

            contributions.append(self._persist_contribution(contribution, warnings))
        return contributions

    def _persist_contribution(self, contribution: AgentContribution, warnings: list[str] | None) -> AgentContribution:
        try:
            stored = self.store.add_agent_contribution(contribution)
            self.store.add_message(contribution.consultation_id, "ai", contribution.opinion, ai_type=contribution.agent_id)
            return stored
        except PersistenceError as e:
            logger.warning(
                "Could not save %s contribution for %s: %s", contribution.agent_id, contribution.consultation_id, e
            )
            if warnings is not None:
                warnings.append(f"The {contribution.agent_id} opinion could not be saved.")
            return contribution

    def finalize_consultation(self, handle: ConsultationHandle, consensus: Consensus) -> Consultation:
        if consensus.contributions == 0:
            raise ConsultationValidationError("A consultation cannot be completed without agent contributions")

        try:
            consultation = self.store.update_consultation(
                handle.consultation_id,
                status="completed",
                consensus_level=consensus.level,
                final_recommendation=consensus.recommendation,
            )
        except PersistenceError:
            logger.exception("Could not finalize consultation %s", handle.consultation_id)
            raise

        logger.info("Completed consultation %s with consensus %d", handle.consultation_id, consensus.level)
        return consultation

    def run_consultation(
        self,
        session: SessionContext,
        patient: PatientRef,
        query: str = "",
        symptoms: list[str] | None = None,
        agent_ids: list[str] | None = None,
    ) -> ConsultationResult:
        handle = self.start_consultation(session, patient, query, symptoms, agent_ids)
        warnings: list[str] = []

        warning = self.record_user_turn(handle, handle.query)
        if warning:
            warnings.append(warning)

        # The record was created above; a store outage now only degrades the run.
        contributions = self._collect(handle, list(dict.fromkeys(agent_ids or [])), warnings)
        consensus = compute_consensus(contributions)

        try:
            consultation = self.finalize_consultation(handle, consensus)
        except PersistenceError:
            warnings.append("The final recommendation could not be saved.")
            consultation = Consultation(
                id=handle.consultation_id,
                user_id=session.user.id,
                patient_id=handle.patient.id,
                patient_name=handle.patient.name,
                query=handle.query,
                status="completed",
                consensus_level=consensus.level,
                final_recommendation=consensus.recommendation,
                symptoms=[s.strip() for s in symptoms or [] if s and s.strip()],
            )

        return ConsultationResult(
            consultation=consultation,
            contributions=contributions,
            consensus=consensus,
            warnings=warnings,
        )

    def preview_collaborative(
        self, session: SessionContext, query: str, agent_ids: list[str]
    ) -> tuple[list[AgentOpinion], Consensus]:
        """One panel request for all agents; nothing is persisted.

        The panel's own view of consensus is not used: the level is recomputed
        from the per-agent confidences so there is a single definition.
        """
        if session.user is None:
            raise Unauthenticated("Please sign in to run an analysis")
        if not query or not query.strip():
            raise ConsultationValidationError("Enter a question for the panel")
        profiles = validate_selection(
            list(dict.fromkeys(agent_ids)), session.tier, self.max_free_agents, self.external_specialties()
        )

        opinions = self.generator.generate_collaborative(query.strip(), [p.display_name for p in profiles])
        contributions = [
            AgentContribution(
                consultation_id="preview",
                agent_id=profile.id,
                opinion=opinion.opinion,
                reasoning=opinion.reasoning,
                confidence=opinion.confidence,
                sources=opinion.sources,
            )
            for profile, opinion in zip(profiles, opinions)
        ]
        return opinions, compute_consensus(contributions)

    # -- follow-up chat, files and history --

    def ask_agent(
        self, session: SessionContext, consultation_id: str, agent_id: str, text: str
    ) -> tuple[ConsultationMessage, list[str]]:
        """Single-agent follow-up question on an existing consultation."""
        consultation = self._owned(session, consultation_id)
        profile = validate_selection([agent_id], session.tier, self.max_free_agents, self.external_specialties())[0]
        if not text or not text.strip():
            raise ConsultationValidationError("Message must not be empty")

        try:
            history = self.store.list_messages(consultation_id)
        except PersistenceError as e:
            logger.warning("Could not load history for %s: %s", consultation_id, e)
            history = []

        handle = ConsultationHandle(
            consultation_id=consultation_id,
            patient=PatientRef(id=consultation.patient_id, name=consultation.patient_name),
            query=text.strip(),
        )
        warnings = []
        warning = self.record_user_turn(handle, handle.query)
        if warning:
            warnings.append(warning)

        prompt = build_agent_prompt(profile, handle.patient, handle.query, history)
        try:
            raw_text = self._generator_for(profile).generate(prompt, profile.prompt_label)
            content = parse_agent_reply(consultation_id, profile.id, raw_text).opinion or FOLLOW_UP_FALLBACK
        except Exception as e:
            logger.warning("Agent %s failed on follow-up for %s: %s", profile.id, consultation_id, e)
            reply = ConsultationMessage(consultation_id=consultation_id, sender="ai", content=FOLLOW_UP_FALLBACK, ai_type=profile.id)
            return reply, warnings

        try:
            reply = self.store.add_message(consultation_id, "ai", content, ai_type=profile.id)
        except PersistenceError as e:
            logger.warning("Could not save AI reply for %s: %s", consultation_id, e)
            warnings.append("The reply could not be saved.")
            reply = ConsultationMessage(consultation_id=consultation_id, sender="ai", content=content, ai_type=profile.id)
        return reply, warnings

    def attach_file(
        self,
        session: SessionContext,
        consultation_id: str,
        file_name: str,
        content: bytes,
        content_type: str | None = None,
        is_image: bool | None = None,
    ) -> ConsultationFile:
        self._owned(session, consultation_id)
        content_type = content_type or "application/octet-stream"
        if is_image is None:
            is_image = content_type.startswith("image/")
        record = self.store.upload_file(consultation_id, file_name, content, content_type, is_image)
        logger.info("Attached %s to consultation %s", file_name, consultation_id)
        return record

    def list_files(self, session: SessionContext, consultation_id: str, images_only: bool = False) -> list[ConsultationFile]:
        self._owned(session, consultation_id)
        return self.store.list_files(consultation_id, images_only=images_only)

    def list_consultations(self, session: SessionContext) -> list[Consultation]:
        if session.user is None:
            raise Unauthenticated("Please sign in to view consultations")
        return self.store.list_consultations(session.user.id)

    def get_detail(self, session: SessionContext, consultation_id: str) -> ConsultationDetail:
        consultation = self._owned(session, consultation_id)
        return ConsultationDetail(
            consultation=consultation,
            messages=self.store.list_messages(consultation_id),
            contributions=self.store.list_agent_contributions(consultation_id),
            files=self.store.list_files(consultation_id),
        )
