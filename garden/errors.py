"""
Error taxonomy for the knowledge retrieval core.

Every failure raised by the services is a GardenError subclass. The API
layer maps them to status codes (input -> 400, not found -> 404, everything
else -> 500) in a single exception handler.
"""

from typing import Any, Dict, Optional


class GardenError(Exception):
    """Base class for all core failures."""

    status_code = 500
    error = "internal_error"

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.error, "message": str(self)}


class InputError(GardenError):
    """Missing or malformed caller input."""

    status_code = 400
    error = "invalid_input"


class NotFoundError(GardenError):
    """A looked-up bookmark, entity, note, question or key does not exist."""

    status_code = 404
    error = "not_found"

    def __init__(self, resource: str, identifier: Any = None, message: Optional[str] = None):
        self.resource = resource
        self.identifier = identifier
        if message is None:
            message = f"{resource} not found" if identifier is None else f"{resource} {identifier} not found"
        super().__init__(message)


class BackendError(GardenError):
    """Transport failure or non-2xx answer from the fetcher, embedder or LLM."""

    error = "backend_error"

    def __init__(self, stage: str, message: str, status: Optional[int] = None):
        self.stage = stage
        self.detail = message
        self.status = status
        super().__init__(f"{stage}: {message}")


class FetchFailedError(BackendError):
    """Fetch failed; carries the synthetic 500 response that was persisted."""

    error = "fetch_failed"

    def __init__(self, message: str, response=None):
        self.response = response
        super().__init__("fetch", message)

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        if self.response is not None:
            body["response"] = self.response.to_dict()
        return body


class ExtractionError(GardenError):
    """The reader or lynx strategy could not produce text."""

    error = "extraction_failed"


class DataShapeError(GardenError):
    """Dimension mismatch, malformed backend JSON or bad tuple arity."""

    error = "data_shape"


class EmptyResultError(GardenError):
    """A backend returned nothing where something was required."""

    error = "empty_result"


class TemplateError(GardenError):
    """A prompt template could not be parsed or rendered."""

    error = "template_error"
