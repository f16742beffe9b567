"""Failure kinds raised by the reward core and translated by the API layer."""


class FamStarsError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(FamStarsError):
    status_code = 404


class AlreadyCompletedError(FamStarsError):
    status_code = 400

    def __init__(self, message: str = "Task already completed"):
        super().__init__(message)


class ValidationError(FamStarsError):
    status_code = 400


class UnauthorizedError(FamStarsError):
    status_code = 403


class ConflictError(FamStarsError):
    status_code = 409
