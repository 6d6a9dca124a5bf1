"""
Error taxonomy for Hemolink

Every failure that reaches the HTTP layer is one of these classes. Each carries
the status code and machine-readable code the API answers with. Ineligibility
is deliberately absent: an ineligible donor is an ordinary outcome of
submit_donation, not an error.
"""


class HemolinkError(Exception):
    status_code = 500
    code = "error"

    def __init__(self, message: str = "", **details):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details

    def to_dict(self):
        payload = {"success": False, "error": self.code, "message": self.message}
        if self.details:
            payload.update(self.details)
        return payload


class InvalidInput(HemolinkError):
    status_code = 400
    code = "invalid_input"


class Unauthorized(HemolinkError):
    status_code = 403
    code = "unauthorized"


class NotFound(HemolinkError):
    status_code = 404
    code = "not_found"


class Conflict(HemolinkError):
    status_code = 409
    code = "conflict"


class DuplicateResponse(Conflict):
    code = "duplicate_response"


class StorageFailure(HemolinkError):
    status_code = 503
    code = "storage_failure"
