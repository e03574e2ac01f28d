"""Error taxonomy for prompt-bank.

Every error carries a ``kind`` so the tool layer can turn it into a
structured failure result without inspecting messages.
"""

from __future__ import annotations


class PromptBankError(Exception):
    """Base class for all prompt-bank failures."""

    kind = "PromptBankError"

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind, "message": str(self)}


class ValidationError(PromptBankError):
    """Missing or blank required input. Raised before any external call."""

    kind = "ValidationError"


class IndexNotFoundError(PromptBankError):
    """The user's table does not exist (nothing saved yet)."""

    kind = "IndexNotFound"


class StoreError(PromptBankError):
    """A pipeline operation failed while talking to an external service."""

    kind = "StoreError"


class EmbeddingError(StoreError):
    """The embedding call failed or returned an unusable payload."""

    kind = "EmbeddingError"


class ExternalServiceError(StoreError):
    """LanceDB rejected or failed a request (permissions, network, schema)."""

    kind = "ExternalServiceError"
