"""Hosted backend: consultation store and identity over the Supabase REST interface."""

import json
import logging
import os
from datetime import datetime, timezone

import requests

from aida.errors import ConsultationNotFound, PersistenceError
from aida.models import AgentContribution, Consultation, ConsultationFile, ConsultationMessage, User
from aida.store import FILES_BUCKET, storage_path

logger = logging.getLogger(__name__)

SUPABASE_URL = os.environ.get("SUPABASE_URL", "")
SUPABASE_KEY = os.environ.get("SUPABASE_KEY", "")
REQUEST_TIMEOUT = float(os.environ.get("SUPABASE_TIMEOUT_SECONDS", "10"))

FOREIGN_KEY_VIOLATION = "23503"
INVALID_TEXT_REPRESENTATION = "22P02"
MISSING_CONSULTATION_CODES = (FOREIGN_KEY_VIOLATION, INVALID_TEXT_REPRESENTATION)


def _decode_list(value) -> list:
    # Older rows store list columns as JSON text.
    if value is None:
        return []
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            return []
    return value if isinstance(value, list) else []


class SupabaseConsultationStore:
    def __init__(
        self,
        url: str,
        key: str,
        access_token: str | None = None,
        session: requests.Session | None = None,
        timeout: float = REQUEST_TIMEOUT,
    ):
        self.url = url.rstrip("/")
        self.key = key
        self.access_token = access_token
        self.session = session or requests.Session()
        self.timeout = timeout

    @classmethod
    def from_env(cls) -> "SupabaseConsultationStore":
        if not SUPABASE_URL or not SUPABASE_KEY:
            raise RuntimeError("SUPABASE_URL and SUPABASE_KEY must be set for the supabase store")
        return cls(SUPABASE_URL, SUPABASE_KEY)

    def _headers(self, extra: dict | None = None) -> dict:
        headers = {
            "apikey": self.key,
            "Authorization": f"Bearer {self.access_token or self.key}",
            "Content-Type": "application/json",
            "Prefer": "return=representation",
        }
        headers.update(extra or {})
        return headers

    def _request(self, method: str, path: str, consultation_id: str | None = None, **kwargs):
        headers = self._headers(kwargs.pop("headers", None))
        try:
            response = self.session.request(
                method, f"{self.url}{path}", headers=headers, timeout=self.timeout, **kwargs
            )
        except requests.exceptions.RequestException as e:
            raise PersistenceError(f"{method} {path} failed: {e}") from e

        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = {}
            if consultation_id and isinstance(body, dict) and body.get("code") in MISSING_CONSULTATION_CODES:
                raise ConsultationNotFound(consultation_id)
            raise PersistenceError(f"{method} {path} returned {response.status_code}: {response.text}")

        if not response.content:
            return None
        return response.json()

    def _rows(self, method: str, table: str, consultation_id: str | None = None, **kwargs) -> list[dict]:
        data = self._request(method, f"/rest/v1/{table}", consultation_id, **kwargs)
        return data if isinstance(data, list) else []

    # -- row mapping --

    @staticmethod
    def _consultation(row: dict) -> Consultation:
        return Consultation(
            id=str(row["id"]),
            user_id=str(row.get("user_id") or ""),
            patient_id=row.get("patient_id") or "",
            patient_name=row.get("patient_name") or "",
            query=row.get("query") or "",
            status=row.get("status") or "in-progress",
            consensus_level=row.get("consensus_level"),
            final_recommendation=row.get("final_recommendation"),
            symptoms=_decode_list(row.get("symptoms")),
            **{k: row[k] for k in ("created_at", "updated_at") if row.get(k)},
        )

    @staticmethod
    def _message(row: dict) -> ConsultationMessage:
        return ConsultationMessage(
            id=str(row["id"]),
            consultation_id=str(row["consultation_id"]),
            sender=row["sender"],
            content=row.get("content") or "",
            ai_type=row.get("ai_type"),
            **({"created_at": row["created_at"]} if row.get("created_at") else {}),
        )

    @staticmethod
    def _contribution(row: dict) -> AgentContribution:
        return AgentContribution(
            id=str(row["id"]),
            consultation_id=str(row["consultation_id"]),
            agent_id=row["agent_id"],
            opinion=row.get("opinion") or "",
            reasoning=row.get("reasoning") or "",
            confidence=row.get("confidence") or 0,
            sources=_decode_list(row.get("sources")),
            **({"created_at": row["created_at"]} if row.get("created_at") else {}),
        )

    @staticmethod
    def _file(row: dict) -> ConsultationFile:
        return ConsultationFile(
            id=str(row["id"]),
            consultation_id=str(row["consultation_id"]),
            file_name=row["file_name"],
            file_path=row["file_path"],
            file_type=row.get("file_type") or "application/octet-stream",
            file_size=row.get("file_size") or 0,
            is_image=bool(row.get("is_image")),
            **({"created_at": row["created_at"]} if row.get("created_at") else {}),
        )

    # -- consultations --

    def create_consultation(self, user_id, patient_id, patient_name, query, symptoms, status="in-progress"):
        rows = self._rows("POST", "consultations", json={
            "user_id": user_id,
            "patient_id": patient_id,
            "patient_name": patient_name,
            "query": query,
            "status": status,
            "symptoms": json.dumps(list(symptoms)),
        })
        if not rows:
            raise PersistenceError("Consultation insert returned no row")
        return self._consultation(rows[0])

    def update_consultation(self, consultation_id, **fields):
        payload = {k: v for k, v in fields.items() if v is not None}
        if "symptoms" in payload:
            payload["symptoms"] = json.dumps(payload["symptoms"])
        payload["updated_at"] = datetime.now(timezone.utc).isoformat()
        rows = self._rows("PATCH", "consultations", consultation_id, params={"id": f"eq.{consultation_id}"}, json=payload)
        if not rows:
            raise ConsultationNotFound(consultation_id)
        return self._consultation(rows[0])

    def get_consultation(self, consultation_id):
        rows = self._rows("GET", "consultations", consultation_id, params={"id": f"eq.{consultation_id}", "select": "*"})
        if not rows:
            raise ConsultationNotFound(consultation_id)
        return self._consultation(rows[0])

    def list_consultations(self, user_id=None):
        params = {"select": "*", "order": "created_at.desc"}
        if user_id is not None:
            params["user_id"] = f"eq.{user_id}"
        return [self._consultation(r) for r in self._rows("GET", "consultations", params=params)]

    # -- messages and contributions --

    def add_message(self, consultation_id, sender, content, ai_type=None):
        rows = self._rows("POST", "consultation_messages", consultation_id, json={
            "consultation_id": consultation_id,
            "sender": sender,
            "content": content,
            "ai_type": ai_type,
        })
        if not rows:
            raise PersistenceError("Message insert returned no row")
        return self._message(rows[0])

    def list_messages(self, consultation_id):
        rows = self._rows("GET", "consultation_messages", consultation_id, params={
            "consultation_id": f"eq.{consultation_id}",
            "select": "*",
            "order": "created_at.asc",
        })
        return [self._message(r) for r in rows]

    def add_agent_contribution(self, contribution):
        rows = self._rows("POST", "consultation_agents", contribution.consultation_id, json={
            "consultation_id": contribution.consultation_id,
            "agent_id": contribution.agent_id,
            "opinion": contribution.opinion,
            "reasoning": contribution.reasoning,
            "confidence": contribution.confidence,
            "sources": json.dumps([s.model_dump() for s in contribution.sources]),
        })
        if not rows:
            raise PersistenceError("Contribution insert returned no row")
        return self._contribution(rows[0])

    def list_agent_contributions(self, consultation_id):
        rows = self._rows("GET", "consultation_agents", consultation_id, params={
            "consultation_id": f"eq.{consultation_id}",
            "select": "*",
        })
        return [self._contribution(r) for r in rows]

    # -- files --

    def public_url(self, path: str) -> str:
        return f"{self.url}/storage/v1/object/public/{FILES_BUCKET}/{path}"

    def upload_file(self, consultation_id, file_name, content, content_type, is_image=False):
        # Storage does not check the consultation exists; the row insert below does.
        self.get_consultation(consultation_id)
        path = storage_path(consultation_id, file_name)
        self._request(
            "POST",
            f"/storage/v1/object/{FILES_BUCKET}/{path}",
            data=content,
            headers={"Content-Type": content_type},
        )
        rows = self._rows("POST", "consultation_files", consultation_id, json={
            "consultation_id": consultation_id,
            "file_name": file_name,
            "file_path": self.public_url(path),
            "file_type": content_type,
            "file_size": len(content),
            "is_image": is_image,
        })
        if not rows:
            raise PersistenceError("File insert returned no row")
        return self._file(rows[0])

    def list_files(self, consultation_id, images_only=False):
        params = {
            "consultation_id": f"eq.{consultation_id}",
            "select": "*",
            "order": "created_at.asc",
        }
        if images_only:
            params["is_image"] = "eq.true"
        return [self._file(r) for r in self._rows("GET", "consultation_files", consultation_id, params=params)]


class SupabaseIdentity:
    """Resolves a bearer token to the signed-in user, or None."""

    def __init__(self, url: str, key: str, session: requests.Session | None = None, timeout: float = REQUEST_TIMEOUT):
        self.url = url.rstrip("/")
        self.key = key
        self.session = session or requests.Session()
        self.timeout = timeout

    @classmethod
    def from_env(cls) -> "SupabaseIdentity":
        return cls(SUPABASE_URL, SUPABASE_KEY)

    def current_user(self, access_token: str | None) -> User | None:
        if not access_token:
            return None
        try:
            response = self.session.request(
                "GET",
                f"{self.url}/auth/v1/user",
                headers={"apikey": self.key, "Authorization": f"Bearer {access_token}"},
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            logger.warning("Session check failed: %s", e)
            return None
        if response.status_code != 200:
            return None
        data = response.json()
        return User(id=str(data["id"]), email=data.get("email"))
