"""Exception hierarchy for rag_verifier.

Collaborator failures are never raised past the retrieval components; these
types exist so collaborators can signal *how* they failed and so callers can
catch library errors in one place.
"""
from __future__ import annotations


class RagVerifierError(Exception):
    """Base class for all library errors."""


class ConfigurationError(RagVerifierError):
    """Raised when settings cannot be parsed from the environment."""


class JudgeUnavailable(RagVerifierError):
    """Raised by a relevance judge that cannot score anything for this call."""


class MalformedResponse(RagVerifierError):
    """Raised when a collaborator reply cannot be interpreted."""


class CollaboratorTimeout(RagVerifierError):
    """Raised when a collaborator call exceeds its time budget."""


class RetrievalCancelled(RagVerifierError):
    """Raised when the enclosing request cancels an in-flight retrieval."""
