class PlannerError(Exception):
    """Base error carrying a programmatic kind and a user-facing message."""

    kind = "planner"
    retryable = False
    default_message = "Something went wrong."

    def __init__(self, message: str | None = None, user_message: str | None = None) -> None:
        super().__init__(message or self.default_message)
        self.user_message = user_message or self.default_message


class StoreError(PlannerError):
    """Raised when a store operation breaks the declared table contract."""

    kind = "store"
    default_message = "The local database rejected the operation."


class MigrationError(PlannerError):
    """Fatal: the local store could not be brought to the declared version."""

    kind = "migration"
    default_message = "Your workout data could not be upgraded. Nothing was changed."

    def __init__(
        self,
        message: str | None = None,
        from_version: int | None = None,
        to_version: int | None = None,
    ) -> None:
        super().__init__(message)
        self.from_version = from_version
        self.to_version = to_version


class StaleReferenceError(PlannerError):
    """A referenced row vanished between validation and commit."""

    kind = "stale_reference"
    retryable = True
    default_message = "Your library changed while saving. Please review and try again."

    def __init__(self, message: str | None = None, missing: dict | None = None) -> None:
        super().__init__(message)
        self.missing = missing or {}


class ReferencedExerciseError(PlannerError):
    kind = "referential"
    default_message = "This exercise is used by a template or workout and cannot be deleted."


class DraftRejectedError(PlannerError):
    kind = "validation"
    default_message = "This suggestion cannot be applied."


class AssistantError(PlannerError):
    kind = "assistant"
    default_message = "The coach is unavailable right now."

    def __init__(self, message: str | None = None, status: int | None = None, code: str | None = None) -> None:
        super().__init__(message)
        self.status = status
        self.code = code
