from fastapi import Request
from fastapi.responses import JSONResponse


class MonitorError(Exception):
    """Base exception for monitoring API errors."""

    def __init__(
        self,
        code: str,
        message: str,
        status: int = 500,
        details: dict | None = None,
    ):
        self.code = code
        self.message = message
        self.status = status
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        result = {
            "error": {
                "code": self.code,
                "message": self.message,
                "status": self.status,
            }
        }
        if self.details:
            result["error"]["details"] = self.details
        return result


class NotFoundError(MonitorError):
    def __init__(self, message: str = "Resource not found.", details: dict | None = None):
        super().__init__(code="not_found", message=message, status=404, details=details)


class CycleInProgressError(MonitorError):
    def __init__(self, message: str = "A health check cycle is already running.", details: dict | None = None):
        super().__init__(
            code="cycle_in_progress",
            message=message,
            status=409,
            details=details or {"suggestion": "Wait for the running cycle to finish and try again."},
        )


class StoreError(MonitorError):
    def __init__(self, message: str = "Monitoring store operation failed.", details: dict | None = None):
        super().__init__(code="store_error", message=message, status=500, details=details)


async def monitor_error_handler(request: Request, exc: MonitorError) -> JSONResponse:
    """Global exception handler for MonitorError and subclasses."""
    return JSONResponse(status_code=exc.status, content=exc.to_dict())
