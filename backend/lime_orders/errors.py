from typing import Dict


class ApiError(Exception):
    status_code = 500
    kind = "Error"

    def __init__(self, message: str = "Something went wrong."):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, str]:
        return {"error": self.kind, "message": self.message}


class BadRequestError(ApiError):
    status_code = 400
    kind = "BadRequest"


class NotFoundError(ApiError):
    status_code = 404
    kind = "NotFound"


class ForbiddenError(ApiError):
    status_code = 403
    kind = "Forbidden"


class UnauthorizedError(ApiError):
    status_code = 401
    kind = "Unauthorized"
