"""
Error taxonomy for the translation decision core.

PolicyError is always recovered inside DecisionEngine. TaskError / ExhaustedRetries
describe translate failures and end up in Job.per_task_results, never raised out of
a batch. InvalidTaskSetError is the only error a caller of schedule_run sees.
"""
from typing import Optional

from .models import ErrorClass


class TranslationDecisionError(Exception):
    """Base class for all errors raised by this package."""


class PolicyError(TranslationDecisionError):
    """Internal scoring failure; the engine falls back to a conservative outcome."""

    def __init__(self, operation: str, cause: Exception):
        super().__init__(f"{operation} failed: {cause!r}")
        self.operation = operation
        self.cause = cause


class TaskError(TranslationDecisionError):
    def __init__(self, task_id: str, cause: BaseException, error_class: ErrorClass = ErrorClass.UNKNOWN, attempt: int = 0):
        super().__init__(f"task {task_id} failed on attempt {attempt}: {cause}")
        self.task_id = task_id
        self.cause = cause
        self.error_class = error_class
        self.attempt = attempt


class ExhaustedRetries(TaskError):
    """A TaskError that ran out of attempts."""


class InvalidTaskSetError(TranslationDecisionError, ValueError):
    def __init__(self, message: str, task_id: Optional[str] = None):
        super().__init__(message)
        self.task_id = task_id


class ConfigError(TranslationDecisionError):
    pass
