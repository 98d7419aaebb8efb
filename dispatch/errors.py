"""Typed failures raised by the engine; the API layer maps them to HTTP responses."""


class DispatchError(Exception):
    """Base class for engine failures."""

    status_code = 500

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class NotFound(DispatchError):
    """Ticket or agent does not exist."""

    status_code = 404


class PermissionDenied(DispatchError):
    """Role or feedback gating violated."""

    status_code = 403


class InvalidInput(DispatchError):
    """Malformed identifiers, unknown verdicts and the like."""

    status_code = 400


class InvalidTransition(InvalidInput):
    """The ticket's current status does not allow the requested move."""


class Unauthorized(DispatchError):
    """Feedback token missing, mismatched or already used."""

    status_code = 401


class ConcurrentUpdate(DispatchError):
    """An optimistic transaction kept losing to concurrent writers."""

    status_code = 409
