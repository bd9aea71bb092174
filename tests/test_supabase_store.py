"""Tests for the Supabase-backed store against a recorded REST session."""

import json

import pytest
import requests

from conftest import FakeGenerator

from aida.errors import ConsultationNotFound, PersistenceError
from aida.models import AgentContribution, ConsultationHandle, PatientRef, Source
from aida.orchestrator import ConsultationOrchestrator
from aida.supabase_store import SupabaseConsultationStore, SupabaseIdentity

URL = "https://project.supabase.co"

ROW = {
    "id": "c-1",
    "user_id": "doc-1",
    "patient_id": "P-1001",
    "patient_name": "Sarah Johnson",
    "query": "Headaches",
    "status": "in-progress",
    "consensus_level": None,
    "final_recommendation": None,
    "symptoms": '["headache"]',
    "created_at": "2024-05-01T10:00:00+00:00",
    "updated_at": "2024-05-01T10:00:00+00:00",
}


class FakeResponse:
    def __init__(self, payload=None, status_code=200):
        self.payload = payload
        self.status_code = status_code
        self.content = b"" if payload is None else json.dumps(payload).encode()
        self.text = self.content.decode()

    def json(self):
        if self.payload is None:
            raise ValueError("no body")
        return self.payload


class ScriptedSession:
    def __init__(self, *responses, error=None):
        self.responses = list(responses)
        self.error = error
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        if self.error:
            raise self.error
        return self.responses.pop(0)


def _store(*responses, error=None):
    session = ScriptedSession(*responses, error=error)
    return SupabaseConsultationStore(URL, "anon-key", session=session), session


class TestConsultations:
    def test_create(self):
        store, session = _store(FakeResponse([ROW], status_code=201))
        consultation = store.create_consultation("doc-1", "P-1001", "Sarah Johnson", "Headaches", ["headache"])

        assert consultation.id == "c-1"
        assert consultation.symptoms == ["headache"]
        method, url, kwargs = session.calls[0]
        assert (method, url) == ("POST", f"{URL}/rest/v1/consultations")
        assert kwargs["json"]["symptoms"] == '["headache"]'
        assert kwargs["headers"]["apikey"] == "anon-key"
        assert kwargs["headers"]["Prefer"] == "return=representation"

    def test_get_missing(self):
        store, _ = _store(FakeResponse([]))
        with pytest.raises(ConsultationNotFound):
            store.get_consultation("c-404")

    def test_update_sends_filter_and_timestamp(self):
        completed = {**ROW, "status": "completed", "consensus_level": 83, "final_recommendation": "Rest"}
        store, session = _store(FakeResponse([completed]))
        consultation = store.update_consultation("c-1", status="completed", consensus_level=83, final_recommendation="Rest")

        assert consultation.consensus_level == 83
        method, _, kwargs = session.calls[0]
        assert method == "PATCH"
        assert kwargs["params"] == {"id": "eq.c-1"}
        assert "updated_at" in kwargs["json"]

    def test_list_by_user(self):
        store, session = _store(FakeResponse([ROW]))
        assert len(store.list_consultations("doc-1")) == 1
        assert session.calls[0][2]["params"]["user_id"] == "eq.doc-1"


class TestErrors:
    def test_network_error(self):
        store, _ = _store(error=requests.exceptions.ConnectionError("down"))
        with pytest.raises(PersistenceError):
            store.list_consultations()

    def test_http_error(self):
        store, _ = _store(FakeResponse({"message": "boom"}, status_code=500))
        with pytest.raises(PersistenceError):
            store.list_consultations()

    def test_foreign_key_violation_is_not_found(self):
        store, _ = _store(FakeResponse({"code": "23503", "message": "violates foreign key"}, status_code=409))
        with pytest.raises(ConsultationNotFound):
            store.add_message("c-404", "user", "Hello")


class TestContributions:
    def test_add_serializes_sources(self):
        row = {
            "id": "a-1",
            "consultation_id": "c-1",
            "agent_id": "central",
            "opinion": "Rest",
            "reasoning": "",
            "confidence": 80,
            "sources": '[{"title": "NICE", "url": null}]',
        }
        store, session = _store(FakeResponse([row], status_code=201))
        stored = store.add_agent_contribution(AgentContribution(
            consultation_id="c-1", agent_id="central", opinion="Rest", confidence=80, sources=[Source(title="NICE")]
        ))

        assert stored.id == "a-1"
        assert stored.sources == [Source(title="NICE")]
        assert json.loads(session.calls[0][2]["json"]["sources"]) == [{"title": "NICE", "url": None}]


class TestFiles:
    def test_upload_checks_consultation_then_stores(self):
        file_row = {
            "id": "f-1",
            "consultation_id": "c-1",
            "file_name": "scan.png",
            "file_path": f"{URL}/storage/v1/object/public/consultation-files/consultations/c-1/1_scan.png",
            "file_type": "image/png",
            "file_size": 3,
            "is_image": True,
        }
        store, session = _store(FakeResponse([ROW]), FakeResponse({"Key": "ok"}), FakeResponse([file_row]))
        record = store.upload_file("c-1", "scan.png", b"png", "image/png", is_image=True)

        assert record.is_image
        upload_method, upload_url, upload_kwargs = session.calls[1]
        assert upload_method == "POST"
        assert upload_url.startswith(f"{URL}/storage/v1/object/consultation-files/consultations/c-1/")
        assert upload_kwargs["data"] == b"png"
        assert upload_kwargs["headers"]["Content-Type"] == "image/png"
        assert session.calls[2][2]["json"]["file_path"].startswith(f"{URL}/storage/v1/object/public/")

    def test_upload_to_missing_consultation(self):
        store, session = _store(FakeResponse([]))
        with pytest.raises(ConsultationNotFound):
            store.upload_file("c-404", "scan.png", b"png", "image/png")
        assert len(session.calls) == 1


class TestIdentity:
    def test_current_user(self):
        session = ScriptedSession(FakeResponse({"id": "doc-1", "email": "doc@example.org"}))
        user = SupabaseIdentity(URL, "anon-key", session=session).current_user("jwt")
        assert user.id == "doc-1"
        assert session.calls[0][2]["headers"]["Authorization"] == "Bearer jwt"

    def test_no_token(self):
        assert SupabaseIdentity(URL, "anon-key", session=ScriptedSession()).current_user(None) is None

    def test_rejected_token(self):
        session = ScriptedSession(FakeResponse({"msg": "invalid"}, status_code=401))
        assert SupabaseIdentity(URL, "anon-key", session=session).current_user("bad") is None

    def test_network_error(self):
        session = ScriptedSession(error=requests.exceptions.Timeout("slow"))
        assert SupabaseIdentity(URL, "anon-key", session=session).current_user("jwt") is None


class TestMalformedConsultationId:
    INVALID_UUID = {"code": "22P02", "message": 'invalid input syntax for type uuid: "pending"'}

    def test_get_is_not_found(self):
        store, _ = _store(FakeResponse(self.INVALID_UUID, status_code=400))
        with pytest.raises(ConsultationNotFound):
            store.get_consultation("pending")

    def test_list_messages_is_not_found(self):
        store, _ = _store(FakeResponse(self.INVALID_UUID, status_code=400))
        with pytest.raises(ConsultationNotFound):
            store.list_messages("pending")

    def test_orchestrator_rejects_before_any_agent_call(self):
        store, session = _store(
            FakeResponse(self.INVALID_UUID, status_code=400),
            FakeResponse(self.INVALID_UUID, status_code=400),
        )
        generator = FakeGenerator()
        orchestrator = ConsultationOrchestrator(store, generator)
        handle = ConsultationHandle(
            consultation_id="pending", patient=PatientRef(id="P-1001", name="Sarah Johnson"), query="hello"
        )

        with pytest.raises(ConsultationNotFound):
            orchestrator.record_user_turn(handle, "hello")
        with pytest.raises(ConsultationNotFound):
            orchestrator.collect_agent_opinions(handle, ["central"])

        assert generator.prompts == []
        assert [method for method, _, _ in session.calls] == ["GET", "GET"]
