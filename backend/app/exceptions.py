"""Domain errors raised by the messaging services.

Every error carries the HTTP status it maps to; ``app.main`` renders them as
``{"success": false, "message": ...}``. ``Internal`` never exposes the
underlying cause to the client, the detail only goes to the log.
"""


class MessagingError(Exception):
    status_code: int = 400
    default_message: str = "Request failed"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"success": False, "message": self.message}


class ValidationError(MessagingError):
    status_code = 400
    default_message = "Invalid request"


class Unauthorized(MessagingError):
    status_code = 401
    default_message = "Unauthorized"


class Forbidden(MessagingError):
    status_code = 403
    default_message = "Access denied"


class NotFound(MessagingError):
    status_code = 404
    default_message = "Not found"


class Internal(MessagingError):
    status_code = 500
    default_message = "Internal server error"
