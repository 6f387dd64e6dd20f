"""
Error taxonomy for the query pipeline.

Every failure surfaced by the generator, the executor or the store facade is an
AnalyzerError subclass carrying enough context (request, query, store error)
for the HTTP layer to log or display it.
"""
from typing import Any, Dict, List, Optional

# Substrings that identify a rate-limit / quota rejection from the LLM provider.
QUOTA_ERROR_MARKERS = ("429", "quota")


class AnalyzerError(Exception):
    """Base class for pipeline failures."""


class TranslationError(AnalyzerError):
    """The LLM was unreachable or did not return a JSON array of stages."""

    def __init__(self, message: str, user_query: Optional[str] = None):
        super().__init__(message)
        self.user_query = user_query


class RepairError(AnalyzerError):
    """A repair call failed; ends the retry loop immediately."""

    def __init__(
        self,
        message: str,
        user_query: Optional[str] = None,
        error_message: Optional[str] = None,
        failed_query: Optional[List[Dict[str, Any]]] = None,
    ):
        super().__init__(message)
        self.user_query = user_query
        self.error_message = error_message
        self.failed_query = failed_query


class ExecutionError(AnalyzerError):
    """The store rejected the query on every attempt."""

    def __init__(
        self,
        message: str,
        attempts: int = 0,
        last_error: Optional[str] = None,
        query: Optional[List[Dict[str, Any]]] = None,
        original_query: Optional[str] = None,
    ):
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error
        self.query = query
        self.original_query = original_query


class DatabaseConnectionError(AnalyzerError):
    """The store could not be reached."""


class AnalysisError(AnalyzerError):
    """The result summary could not be produced."""


def is_quota_error(message: Optional[str]) -> bool:
    text = (message or "").lower()
    return any(marker in text for marker in QUOTA_ERROR_MARKERS)
