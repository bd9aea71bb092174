"""FastAPI service for AIDA Medical multi-agent consultations."""

from dotenv import load_dotenv

load_dotenv()

import logging
import os

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware

from aida.agents import list_agents
from aida.errors import (
    ConsultationNotFound,
    ConsultationValidationError,
    GenerationError,
    PersistenceError,
    Unauthenticated,
)
from aida.generation import GeminiGenerator
from aida.integrations import ExternalIntegration, IntegrationRegistry, get_integrations
from aida.models import (
    CollaborativeRequest,
    CollaborativeResponse,
    ConsultationDetail,
    ConsultationRequest,
    ConsultationResult,
    FollowUpRequest,
    FollowUpResponse,
    SelectionRequest,
    SelectionResponse,
    SessionContext,
    User,
)
from aida.orchestrator import ConsultationOrchestrator
from aida.patients import get_patient, patient_ref, search_patients
from aida.selection import count_free_agents, toggle_agent
from aida.store import STORE_BACKEND, get_store

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="AIDA Medical",
    description="Multi-agent AI consultations for clinicians, powered by Google Gemini",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_orchestrator: ConsultationOrchestrator | None = None
_identity = None


def get_orchestrator() -> ConsultationOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = ConsultationOrchestrator(get_store(), GeminiGenerator(), get_integrations())
    return _orchestrator


def get_session(
    authorization: str | None = Header(None),
    x_user_id: str | None = Header(None),
    x_user_email: str | None = Header(None),
    x_subscription_tier: str | None = Header(None),
) -> SessionContext:
    global _identity
    tier = "premium" if x_subscription_tier == "premium" else "free"

    if STORE_BACKEND == "supabase":
        from aida.supabase_store import SupabaseIdentity

        if _identity is None:
            _identity = SupabaseIdentity.from_env()
        token = authorization.removeprefix("Bearer ").strip() if authorization else None
        return SessionContext(user=_identity.current_user(token), tier=tier)

    if x_user_id:
        return SessionContext(user=User(id=x_user_id, email=x_user_email), tier=tier)
    return SessionContext(user=None, tier=tier)


def _require_user(session: SessionContext) -> None:
    if session.user is None:
        raise HTTPException(status_code=401, detail="Authentication required")


@app.get("/health")
def health_check():
    return {"status": "healthy", "service": "aida-medical"}


@app.get("/patients")
def get_patients(q: str = ""):
    patients = search_patients(q)
    return {
        "patient_ids": [p.patient_id for p in patients],
        "patients": [p.model_dump() for p in patients],
    }


@app.get("/patients/{patient_id}")
def get_patient_detail(patient_id: str):
    try:
        patient = get_patient(patient_id)
        return patient.model_dump()
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Patient {patient_id} not found")


@app.get("/agents")
def get_agents(integrations: IntegrationRegistry = Depends(get_integrations)):
    return {"agents": [p.info().model_dump() for p in list_agents(integrations.specialties())]}


@app.post("/agents/selection", response_model=SelectionResponse)
def toggle_selection(
    request: SelectionRequest,
    session: SessionContext = Depends(get_session),
    orchestrator: ConsultationOrchestrator = Depends(get_orchestrator),
):
    limit = orchestrator.max_free_agents
    externals = orchestrator.external_specialties()
    try:
        selection, allowed = toggle_agent(
            request.selection, session.tier, request.agent_id, limit, externals
        )
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Agent {request.agent_id} not found")
    return SelectionResponse(
        selection=selection,
        allowed=allowed,
        free_agents_selected=count_free_agents(selection, externals),
        max_free_agents=limit,
    )


@app.post("/consultations", response_model=ConsultationResult)
def create_consultation(
    request: ConsultationRequest,
    session: SessionContext = Depends(get_session),
    orchestrator: ConsultationOrchestrator = Depends(get_orchestrator),
):
    _require_user(session)
    try:
        patient = patient_ref(request.patient_id, request.patient_name)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Patient {request.patient_id} not found")

    try:
        return orchestrator.run_consultation(
            session,
            patient,
            query=request.query,
            symptoms=request.symptoms,
            agent_ids=request.agent_ids,
        )
    except Unauthenticated as e:
        raise HTTPException(status_code=401, detail=str(e))
    except ConsultationValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=f"Consultation could not be saved: {str(e)}")


@app.get("/consultations")
def get_consultations(
    session: SessionContext = Depends(get_session),
    orchestrator: ConsultationOrchestrator = Depends(get_orchestrator),
):
    _require_user(session)
    try:
        consultations = orchestrator.list_consultations(session)
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=f"Consultations unavailable: {str(e)}")
    return {"consultations": [c.model_dump(mode="json") for c in consultations]}


@app.get("/consultations/{consultation_id}", response_model=ConsultationDetail)
def get_consultation_detail(
    consultation_id: str,
    session: SessionContext = Depends(get_session),
    orchestrator: ConsultationOrchestrator = Depends(get_orchestrator),
):
    _require_user(session)
    try:
        return orchestrator.get_detail(session, consultation_id)
    except ConsultationNotFound:
        raise HTTPException(status_code=404, detail=f"Consultation {consultation_id} not found")
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=f"Consultation unavailable: {str(e)}")


@app.post("/consultations/{consultation_id}/messages", response_model=FollowUpResponse)
def ask_follow_up(
    consultation_id: str,
    request: FollowUpRequest,
    session: SessionContext = Depends(get_session),
    orchestrator: ConsultationOrchestrator = Depends(get_orchestrator),
):
    _require_user(session)
    try:
        reply, warnings = orchestrator.ask_agent(session, consultation_id, request.agent_id, request.message)
    except ConsultationNotFound:
        raise HTTPException(status_code=404, detail=f"Consultation {consultation_id} not found")
    except ConsultationValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=f"Consultation unavailable: {str(e)}")
    return FollowUpResponse(consultation_id=consultation_id, reply=reply, warnings=warnings)


@app.post("/consultations/{consultation_id}/files")
def upload_file(
    consultation_id: str,
    file: UploadFile = File(...),
    is_image: bool | None = Form(None),
    session: SessionContext = Depends(get_session),
    orchestrator: ConsultationOrchestrator = Depends(get_orchestrator),
):
    _require_user(session)
    content = file.file.read()
    try:
        record = orchestrator.attach_file(
            session,
            consultation_id,
            file.filename or "upload",
            content,
            content_type=file.content_type,
            is_image=is_image,
        )
    except ConsultationNotFound:
        raise HTTPException(status_code=404, detail=f"Consultation {consultation_id} not found")
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=f"Upload failed: {str(e)}")
    return record.model_dump(mode="json")


@app.get("/consultations/{consultation_id}/files")
def get_files(
    consultation_id: str,
    images_only: bool = False,
    session: SessionContext = Depends(get_session),
    orchestrator: ConsultationOrchestrator = Depends(get_orchestrator),
):
    _require_user(session)
    try:
        files = orchestrator.list_files(session, consultation_id, images_only=images_only)
    except ConsultationNotFound:
        raise HTTPException(status_code=404, detail=f"Consultation {consultation_id} not found")
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=f"Files unavailable: {str(e)}")
    return {"consultation_id": consultation_id, "files": [f.model_dump(mode="json") for f in files]}


@app.post("/analysis/collaborative", response_model=CollaborativeResponse)
def collaborative_analysis(
    request: CollaborativeRequest,
    session: SessionContext = Depends(get_session),
    orchestrator: ConsultationOrchestrator = Depends(get_orchestrator),
):
    """Panel-style preview; nothing is persisted and consensus is recomputed locally."""
    _require_user(session)
    try:
        opinions, consensus = orchestrator.preview_collaborative(session, request.query, request.agent_ids)
    except ConsultationValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except GenerationError as e:
        raise HTTPException(status_code=502, detail=f"Collaborative analysis failed: {str(e)}")
    return CollaborativeResponse(opinions=opinions, consensus=consensus)


@app.get("/integrations")
def get_integration_list(
    session: SessionContext = Depends(get_session),
    integrations: IntegrationRegistry = Depends(get_integrations),
):
    _require_user(session)
    return {"integrations": [i.public() for i in integrations.list_integrations()]}


@app.post("/integrations")
def add_integration(
    integration: ExternalIntegration,
    session: SessionContext = Depends(get_session),
    integrations: IntegrationRegistry = Depends(get_integrations),
):
    _require_user(session)
    return integrations.add(integration).public()
