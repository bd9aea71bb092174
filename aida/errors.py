"""Error taxonomy for the consultation workflow."""


class Unauthenticated(Exception):
    """Raised when a consultation is started without a signed-in user."""


class ConsultationValidationError(ValueError):
    """Raised for requests rejected before any side effect."""


class ConsultationNotFound(KeyError):
    """Raised when a consultation id does not exist in the store."""

    def __init__(self, consultation_id: str):
        super().__init__(f"Consultation {consultation_id} not found")
        self.consultation_id = consultation_id

    def __str__(self) -> str:
        return self.args[0]


class PersistenceError(Exception):
    """Raised when the consultation store rejects or fails a call."""


class GenerationError(Exception):
    """Raised when a text-generation provider fails for one request."""
