"""Domain exceptions for ingestion, persistence, and inference diagnostics."""

from __future__ import annotations


class PipelineStageError(RuntimeError):
    """Raised when a specific pipeline stage fails."""

    def __init__(
        self,
        *,
        stage: str,
        detail: str,
        hint: str | None = None,
    ) -> None:
        """Initialize a stage-scoped pipeline error."""

        super().__init__(detail)
        self.stage = stage
        self.detail = detail
        self.hint = hint


class ContainerError(ValueError):
    """Raised when a package cannot be opened or has no package document."""


class ChapterSourceMissingError(ContainerError):
    """Raised when a spine entry's markup cannot be located in the package."""

    def __init__(self, href: str) -> None:
        """Initialize with the manifest href that could not be resolved."""

        super().__init__(f"Chapter source `{href}` was not found in the package.")
        self.href = href


class DocumentNotFoundError(LookupError):
    """Raised when a document expected by a merge operation no longer exists."""

    def __init__(self, collection: str, doc_id: str) -> None:
        """Initialize with the collection name and missing document id."""

        super().__init__(f"Document `{doc_id}` not found in `{collection}`.")
        self.collection = collection
        self.doc_id = doc_id


class DuplicateDocumentError(ValueError):
    """Raised when inserting a document whose key already exists."""


class RevisionConflictError(RuntimeError):
    """Raised when a patch is based on a stale document revision."""

    def __init__(self, collection: str, doc_id: str, expected: int, actual: int) -> None:
        """Initialize with the revision the writer saw and the current revision."""

        super().__init__(
            f"Revision conflict on `{collection}/{doc_id}`: "
            f"patch based on revision {expected}, current is {actual}."
        )
        self.collection = collection
        self.doc_id = doc_id
        self.expected = expected
        self.actual = actual


class InferenceError(RuntimeError):
    """Base class for inference backend failures."""


class InferenceProviderError(InferenceError):
    """Raised when an inference HTTP request fails or returns malformed output."""

    def __init__(
        self,
        message: str,
        *,
        failure_kind: str = "unknown",
        status_code: int | None = None,
        provider_code: str | None = None,
    ) -> None:
        """Initialize provider error metadata for stage-aware diagnostics."""

        super().__init__(message)
        self.failure_kind = failure_kind
        self.status_code = status_code
        self.provider_code = provider_code


class ModelUnavailableError(InferenceError):
    """Raised when the backend cannot serve the requested model."""

    def __init__(self, model: str, detail: str = "") -> None:
        """Initialize with the model identifier that failed to load."""

        message = f"Model `{model}` is not available on the inference backend."
        if detail:
            message = f"{message} {detail}"
        super().__init__(message)
        self.model = model
