from __future__ import annotations

from dataclasses import dataclass

from utils.constants import ERROR_SNIPPET_LENGTH


class TriageError(RuntimeError):
    user_message: str = "An unexpected error occurred."
    # Retryable errors are handed to the job queue's fail path.
    retryable: bool = False


@dataclass(slots=True)
class TicketNotFoundError(TriageError):
    user_message: str = "Ticket not found."


@dataclass(slots=True)
class ConflictingStateError(TriageError):
    user_message: str = "The ticket is not in a valid state for this action."


class ClassifierTransportError(TriageError):
    retryable = True

    def __init__(self, detail: str) -> None:
        super().__init__(f"Classifier request failed: {detail}")
        self.user_message = str(self)


class MalformedOutputError(TriageError):
    retryable = True

    def __init__(self, snippet: str, reason: str = "invalid JSON") -> None:
        self.snippet = snippet[:ERROR_SNIPPET_LENGTH]
        self.reason = reason
        message = f"LLM returned {reason}: {self.snippet}" if self.snippet else f"LLM returned {reason}."
        super().__init__(message)
        self.user_message = str(self)


@dataclass(frozen=True, slots=True)
class SchemaIssue:
    path: str
    reason: str

    def __str__(self) -> str:
        return f"{self.path or '<root>'}: {self.reason}"


class SchemaViolationError(TriageError):
    retryable = True

    def __init__(self, issues: list[SchemaIssue]) -> None:
        self.issues = list(issues)
        super().__init__("LLM response validation failed: " + ", ".join(str(issue) for issue in self.issues))
        self.user_message = str(self)

    @property
    def fields(self) -> list[str]:
        return [issue.path for issue in self.issues]
