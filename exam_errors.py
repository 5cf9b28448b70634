# exam_errors.py
"""Errors raised by the exam attempt engine, with the HTTP shape the blueprint renders."""


class ExamError(Exception):
    status = 400
    code = "exam_error"

    def __init__(self, message: str = "", code: str = None):
        super().__init__(message or self.code)
        if code:
            self.code = code


class NotFound(ExamError):
    """Exam, attempt, question or choice is missing or does not belong together."""
    status = 404
    code = "not_found"


class InvalidState(ExamError):
    """Attempt is terminal, or lost a finalization race."""
    status = 410
    code = "invalid_state"


class AlreadyCompleted(InvalidState):
    code = "already_completed"


__all__ = ["ExamError", "NotFound", "InvalidState", "AlreadyCompleted"]
