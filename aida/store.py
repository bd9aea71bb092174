"""Consultation store: durable state for consultations, messages, contributions and files.

Every backend exposes the same methods; the orchestrator only relies on this
contract. The in-memory backend is the default and is what the tests run
against. See ``aida.supabase_store`` for the hosted backend.
"""

import logging
import os
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Protocol

from aida.errors import ConsultationNotFound
from aida.models import AgentContribution, Consultation, ConsultationFile, ConsultationMessage

logger = logging.getLogger(__name__)

STORE_BACKEND = os.environ.get("AIDA_STORE", "memory")
FILES_BUCKET = "consultation-files"

_store = None


class ConsultationStore(Protocol):
    def create_consultation(
        self,
        user_id: str,
        patient_id: str,
        patient_name: str,
        query: str,
        symptoms: list[str],
        status: str = "in-progress",
    ) -> Consultation: ...

    def update_consultation(self, consultation_id: str, **fields) -> Consultation: ...

    def get_consultation(self, consultation_id: str) -> Consultation: ...

    def list_consultations(self, user_id: str | None = None) -> list[Consultation]: ...

    def add_message(
        self, consultation_id: str, sender: str, content: str, ai_type: str | None = None
    ) -> ConsultationMessage: ...

    def list_messages(self, consultation_id: str) -> list[ConsultationMessage]: ...

    def add_agent_contribution(self, contribution: AgentContribution) -> AgentContribution: ...

    def list_agent_contributions(self, consultation_id: str) -> list[AgentContribution]: ...

    def upload_file(
        self,
        consultation_id: str,
        file_name: str,
        content: bytes,
        content_type: str,
        is_image: bool = False,
    ) -> ConsultationFile: ...

    def list_files(self, consultation_id: str, images_only: bool = False) -> list[ConsultationFile]: ...


def storage_path(consultation_id: str, file_name: str) -> str:
    return f"consultations/{consultation_id}/{int(time.time() * 1000)}_{file_name}"


class InMemoryConsultationStore:
    """Dict-backed store that enforces referential existence like the hosted one."""

    def __init__(self):
        self._lock = threading.Lock()
        self._consultations: dict[str, Consultation] = {}
        self._messages: dict[str, list[ConsultationMessage]] = {}
        self._contributions: dict[str, list[AgentContribution]] = {}
        self._files: dict[str, list[ConsultationFile]] = {}
        self._blobs: dict[str, bytes] = {}

    def _require(self, consultation_id: str) -> Consultation:
        consultation = self._consultations.get(consultation_id)
        if consultation is None:
            raise ConsultationNotFound(consultation_id)
        return consultation

    def create_consultation(self, user_id, patient_id, patient_name, query, symptoms, status="in-progress"):
        consultation = Consultation(
            id=str(uuid.uuid4()),
            user_id=user_id,
            patient_id=patient_id,
            patient_name=patient_name,
            query=query,
            symptoms=list(symptoms),
            status=status,
        )
        with self._lock:
            self._consultations[consultation.id] = consultation
            self._messages[consultation.id] = []
            self._contributions[consultation.id] = []
            self._files[consultation.id] = []
        return consultation.model_copy(deep=True)

    def update_consultation(self, consultation_id, **fields):
        with self._lock:
            current = self._require(consultation_id)
            fields = {k: v for k, v in fields.items() if v is not None}
            fields["updated_at"] = datetime.now(timezone.utc)
            updated = Consultation.model_validate({**current.model_dump(), **fields})
            self._consultations[consultation_id] = updated
        return updated.model_copy(deep=True)

    def get_consultation(self, consultation_id):
        with self._lock:
            return self._require(consultation_id).model_copy(deep=True)

    def list_consultations(self, user_id=None):
        with self._lock:
            items = [
                c.model_copy(deep=True)
                for c in self._consultations.values()
                if user_id is None or c.user_id == user_id
            ]
        return sorted(items, key=lambda c: c.created_at, reverse=True)

    def add_message(self, consultation_id, sender, content, ai_type=None):
        message = ConsultationMessage(
            id=str(uuid.uuid4()),
            consultation_id=consultation_id,
            sender=sender,
            content=content,
            ai_type=ai_type,
        )
        with self._lock:
            self._require(consultation_id)
            self._messages[consultation_id].append(message)
        return message.model_copy()

    def list_messages(self, consultation_id):
        with self._lock:
            self._require(consultation_id)
            return [m.model_copy() for m in self._messages[consultation_id]]

    def add_agent_contribution(self, contribution):
        stored = contribution.model_copy(update={"id": str(uuid.uuid4())}, deep=True)
        with self._lock:
            self._require(contribution.consultation_id)
            self._contributions[contribution.consultation_id].append(stored)
        return stored.model_copy(deep=True)

    def list_agent_contributions(self, consultation_id):
        with self._lock:
            self._require(consultation_id)
            return [c.model_copy(deep=True) for c in self._contributions[consultation_id]]

    def upload_file(self, consultation_id, file_name, content, content_type, is_image=False):
        path = storage_path(consultation_id, file_name)
        with self._lock:
            self._require(consultation_id)
            self._blobs[path] = content
            record = ConsultationFile(
                id=str(uuid.uuid4()),
                consultation_id=consultation_id,
                file_name=file_name,
                file_path=f"memory://{FILES_BUCKET}/{path}",
                file_type=content_type,
                file_size=len(content),
                is_image=is_image,
            )
            self._files[consultation_id].append(record)
        return record.model_copy()

    def list_files(self, consultation_id, images_only=False):
        with self._lock:
            self._require(consultation_id)
            return [f.model_copy() for f in self._files[consultation_id] if f.is_image or not images_only]


def get_store():
    global _store
    if _store is not None:
        return _store

    if STORE_BACKEND == "supabase":
        from aida.supabase_store import SupabaseConsultationStore

        _store = SupabaseConsultationStore.from_env()
    else:
        _store = InMemoryConsultationStore()
    logger.info("Using %s consultation store", type(_store).__name__)
    return _store
