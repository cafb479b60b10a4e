from __future__ import annotations


class PipelineError(Exception):
    code = "pipeline_error"

    def __init__(self, message: str, *, detail: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail


class DataShapeError(PipelineError):
    code = "data_shape"


class CatalogEmptyError(PipelineError):
    code = "catalog_empty"


class GenerativeCallError(PipelineError):
    code = "generative_call_failed"


class SelectionValidationError(PipelineError):
    code = "selection_invalid"


class PersistenceError(PipelineError):
    """The only pipeline failure that reaches the caller."""

    code = "persistence_failed"
