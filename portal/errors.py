from __future__ import annotations


class ApiError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
        kind: str | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status
        self.kind = kind


def validation_error(message: str, *, code: str = "REQ_VALIDATION_FAILED") -> ApiError:
    return ApiError(
        code=code,
        message=message,
        error_class="validation",
        retryable=False,
        http_status=400,
        kind="validation",
    )


def not_found_error(code: str, message: str) -> ApiError:
    return ApiError(
        code=code,
        message=message,
        error_class="validation",
        retryable=False,
        http_status=404,
        kind="not_found",
    )


def unauthorized_error(message: str, *, code: str = "PORTAL_UNAUTHORIZED") -> ApiError:
    return ApiError(
        code=code,
        message=message,
        error_class="security_sensitive",
        retryable=False,
        http_status=401,
        kind="unauthorized",
    )
