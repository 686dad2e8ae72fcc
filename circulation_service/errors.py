"""
Typed errors surfaced by the circulation core.

Every facade operation either returns a record or raises one of these.
`status_code` is only used by the HTTP adapter.
"""


class CirculationError(Exception):
    status_code = 500

    def __init__(self, message, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self):
        payload = {"error": self.message}
        payload.update(self.details)
        return payload


class NotFound(CirculationError):
    status_code = 404


class Conflict(CirculationError):
    status_code = 409


class InvalidTransition(Conflict):
    pass


class OutOfStock(CirculationError):
    status_code = 409


class InvariantViolation(CirculationError):
    status_code = 500


class Unavailable(CirculationError):
    status_code = 503
