"""Patient directory backed by a JSON file; stands in for the clinic's patient table."""

import json
import logging
import os
import threading

from aida.models import PatientInfo, PatientRef

logger = logging.getLogger(__name__)

PATIENTS_FILE = os.environ.get(
    "AIDA_PATIENTS_FILE",
    os.path.join(os.path.dirname(__file__), "..", "data", "patients.json"),
)

_directory = None


class PatientDirectory:
    def __init__(self, path: str = PATIENTS_FILE):
        self.path = os.path.abspath(path)
        self._lock = threading.Lock()
        self._by_id: dict[str, PatientInfo] | None = None

    def _patients(self) -> dict[str, PatientInfo]:
        with self._lock:
            if self._by_id is None:
                with open(self.path, "r") as f:
                    records = [PatientInfo(**row) for row in json.load(f)]
                self._by_id = {p.patient_id: p for p in records}
                logger.info("Loaded %d patients from %s", len(records), self.path)
            return self._by_id

    def get(self, patient_id: str) -> PatientInfo:
        patient = self._patients().get(patient_id)
        if patient is None:
            raise KeyError(f"Patient {patient_id} not found")
        return patient

    def ids(self) -> list[str]:
        return sorted(self._patients())

    def search(self, term: str = "") -> list[PatientInfo]:
        """Case-insensitive match on name, id or condition; blank returns everyone."""
        term = term.strip().lower()
        patients = [self._patients()[pid] for pid in self.ids()]
        if not term:
            return patients
        return [
            p for p in patients
            if term in p.name.lower() or term in p.patient_id.lower() or term in (p.condition or "").lower()
        ]


def get_directory() -> PatientDirectory:
    global _directory
    if _directory is None:
        _directory = PatientDirectory()
    return _directory


def get_patient(patient_id: str) -> PatientInfo:
    return get_directory().get(patient_id)


def list_patient_ids() -> list[str]:
    return get_directory().ids()


def search_patients(term: str = "") -> list[PatientInfo]:
    return get_directory().search(term)


def patient_ref(patient_id: str, display_name: str | None = None) -> PatientRef:
    """Reference for a directory patient; the caller's display name wins when given."""
    patient = get_patient(patient_id)
    return PatientRef(id=patient.patient_id, name=display_name or patient.name)
