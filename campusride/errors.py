# campusride/errors.py
"""Errors raised by the ride core.

Every error is a local, synchronous failure returned to the caller. The HTTP
adapter maps ``status_code`` straight onto the response.
"""


class CampusRideError(Exception):
    status_code = 400

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__


class ValidationError(CampusRideError):
    status_code = 400


class NotFoundError(CampusRideError):
    status_code = 404


class ForbiddenError(CampusRideError):
    status_code = 403


class ConflictError(CampusRideError):
    status_code = 409


class InvalidTransitionError(CampusRideError):
    status_code = 409


class StaleRequestError(InvalidTransitionError):
    """The ride is no longer open: another captain won, or it was cancelled or expired."""


class OTPMismatchError(CampusRideError):
    status_code = 400


class SignatureInvalidError(CampusRideError):
    status_code = 400


class DependencyError(CampusRideError):
    status_code = 502
