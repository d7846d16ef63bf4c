from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse


class ApiError(Exception):
    def __init__(self, status_code: int, code: str, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message


class SetupError(ApiError):
    """Configuration or input fault that a retry cannot fix."""

    def __init__(self, code: str, message: str, *, status_code: int = 422):
        super().__init__(status_code=status_code, code=code, message=message)


class TemplateNotFound(SetupError):
    def __init__(self, slug: str):
        super().__init__(
            "TEMPLATE_NOT_FOUND",
            f"Notification template '{slug}' was not found.",
            status_code=404,
        )
        self.slug = slug


class UnknownRoleError(SetupError):
    def __init__(self, role: str):
        super().__init__(
            "UNKNOWN_ROLE",
            f"Role '{role}' is not mapped in the role policy.",
            status_code=500,
        )
        self.role = role


class ProviderNotConfigured(SetupError):
    def __init__(self, channel: str, missing_fields: list[str]):
        super().__init__(
            "PROVIDER_NOT_CONFIGURED",
            f"{channel} channel is enabled but missing: {', '.join(missing_fields)}",
            status_code=503,
        )
        self.channel = channel
        self.missing_fields = list(missing_fields)


class ChannelSendError(Exception):
    def __init__(
        self,
        channel: str,
        target: str,
        message: str,
        *,
        status_code: int | None = None,
        invalid_target: bool = False,
    ):
        super().__init__(message)
        self.channel = channel
        self.target = target
        self.status_code = status_code
        self.invalid_target = invalid_target


class ScopeResolutionError(Exception):
    pass


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return str(request_id)
    return "unknown"


def error_response(request: Request, *, status_code: int, code: str, message: str) -> JSONResponse:
    payload = {
        "error": {
            "code": code,
            "message": message,
            "request_id": get_request_id(request),
        }
    }
    return JSONResponse(status_code=status_code, content=payload)
