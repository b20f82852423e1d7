"""Application errors. Each maps to an HTTP status and a client-facing message."""


class AppError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(AppError):
    status_code = 400


class AuthError(AppError):
    status_code = 401


class ResetError(AuthError):
    # OTP / reset token failures are answered with 400, not 401
    status_code = 400


class ConflictError(AppError):
    status_code = 409


class NotFoundError(AppError):
    status_code = 404


class ServerError(AppError):
    status_code = 500

    def __init__(self, message: str = "Server error"):
        super().__init__(message)
