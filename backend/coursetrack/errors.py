"""Error kinds raised by the grading/progress engine and its services."""


class ProgressEngineError(Exception):
    """Base class for every error surfaced by the engine."""


class InvalidInputError(ProgressEngineError, ValueError):
    """Malformed submission or quiz definition."""


class NotEligibleError(ProgressEngineError):
    """Certificate requested before the course reached 100%."""


class AlreadyIssuedError(ProgressEngineError):
    """Certificate already issued for this record."""


class NotFoundError(ProgressEngineError, LookupError):
    """A lookup the caller asserted must exist came back empty."""


class NotEnrolledError(ProgressEngineError):
    """The user is not enrolled in the course."""


class QuizInactiveError(ProgressEngineError):
    """The quiz is not accepting submissions."""


class AttemptLimitError(ProgressEngineError):
    """The user has used up the quiz's allowed attempts."""


class ConcurrentUpdateError(ProgressEngineError):
    """A progress record changed between load and save."""
