import secrets

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import JSONResponse

from govmon.config import settings

logger = structlog.get_logger()

# Read-only methods never need the operator key
SAFE_METHODS = {"GET", "HEAD", "OPTIONS"}


class OperatorGateMiddleware(BaseHTTPMiddleware):
    """Shared-secret check for mutating endpoints.

    When GOVMON_OPERATOR_KEY is not set this middleware is a no-op. When set,
    every non-GET request must carry a matching X-Operator-Key header.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        expected = settings.govmon_operator_key
        if not expected or request.method in SAFE_METHODS:
            return await call_next(request)

        provided = request.headers.get("x-operator-key", "")
        if not provided or not secrets.compare_digest(provided, expected):
            logger.warning("operator_gate_denied", method=request.method, path=request.url.path)
            return JSONResponse(
                status_code=403,
                content={
                    "error": {
                        "code": "access_denied",
                        "message": "Invalid or missing operator key.",
                        "status": 403,
                    }
                },
            )

        request.state.operator = True
        return await call_next(request)
