"""
Error taxonomy shared by the stores and the HTTP layer.

Stores raise these; ``api.main`` maps each class to its status code and
an ``{"error": message}`` body. Anything else escaping a handler is an
internal error and is logged server-side only.
"""


class TracrError(Exception):
    """Base class for expected, client-visible failures."""

    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: str = ""):
        self.message = message or self.default_message
        super().__init__(self.message)


class BadRequest(TracrError):
    status_code = 400
    default_message = "Bad request"


class Unauthorized(TracrError):
    status_code = 401
    default_message = "Unauthorized"


class Forbidden(TracrError):
    status_code = 403
    default_message = "Forbidden"


class NotFound(TracrError):
    status_code = 404
    default_message = "Not found"


class Conflict(TracrError):
    status_code = 409
    default_message = "Conflict"


class LastAdminError(Conflict):
    """Refusing to remove or demote the only remaining admin.

    Semantically a conflict with current state, but the API contract
    reports it as 400.
    """

    status_code = 400
    default_message = "Cannot delete the last admin user"


class DeviceNotRegistered(TracrError):
    """An agent addressed a device id the registry does not know.

    Agent endpoints answer this with 202 and a re-register hint rather
    than an error status, so agents recover after a device is deleted.
    """

    status_code = 202
    default_message = "Device not registered"

    def __init__(self, device_id: str = ""):
        self.device_id = device_id
        super().__init__(self.default_message)


class Internal(TracrError):
    status_code = 500
