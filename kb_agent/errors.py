"""Exception taxonomy shared by the retrieval, admission and agent layers.

Only AdmissionRejected, ConversationResolutionFailed, GenerationFailed and
InputValidationError are meant to reach API callers; the rest are caught
inside the retrievers and turned into empty results.
"""
from typing import Literal, Optional

Scope = Literal["global", "conversation"]


class KnowledgeBaseError(Exception):
    """Base class for all errors raised by kb_agent."""


class AdmissionRejected(KnowledgeBaseError):
    """A rate limit refused the request."""

    def __init__(self, scope: Scope, retry_after_ms: Optional[int]):
        super().__init__(f"rate limit exceeded ({scope}), retry after {retry_after_ms}ms")
        self.scope = scope
        self.retry_after_ms = retry_after_ms


class RetrievalDegraded(KnowledgeBaseError):
    """Embedding, vector search or hydration failed inside a retriever."""


class ConversationResolutionFailed(KnowledgeBaseError):
    """The conversation could not be created or found."""


class GenerationFailed(KnowledgeBaseError):
    """The LLM call errored or timed out."""


class InputValidationError(KnowledgeBaseError, ValueError):
    """Malformed caller input, rejected before any external call."""


class EmbeddingError(KnowledgeBaseError):
    """The embedding capability failed or returned an unusable vector."""


class StoreError(KnowledgeBaseError):
    """A storage call failed."""


class UnknownLimitError(KnowledgeBaseError, KeyError):
    """No rate limit is configured under the requested name."""

    def __str__(self) -> str:
        return f"unknown rate limit: {self.args[0]}"
