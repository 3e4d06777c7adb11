"""トークン認証ミドルウェア。"""

import hmac

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp

logger = structlog.get_logger(__name__)


class TokenAuthMiddleware(BaseHTTPMiddleware):
    """Authorizationヘッダー（Bearer）またはクエリパラメータのtokenを検証する。

    SHIFTDEPLOY_URL_TOKEN が空の場合は検証しない。
    /health はヘルスチェック用のため検証をスキップする。
    """

    SKIP_PATHS = {"/health"}

    def __init__(self, app: ASGIApp, url_token: str = "") -> None:
        super().__init__(app)
        self.url_token = url_token

    def _request_token(self, request: Request) -> str:
        authorization = request.headers.get("authorization", "")
        scheme, _, credentials = authorization.partition(" ")
        if scheme.lower() == "bearer" and credentials:
            return credentials.strip()
        return request.query_params.get("token", "")

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if not self.url_token or request.url.path in self.SKIP_PATHS:
            return await call_next(request)

        if not hmac.compare_digest(self._request_token(request).encode(), self.url_token.encode()):
            logger.warning("unauthorized request", path=request.url.path)
            return JSONResponse(
                {"error": "Unauthorized", "message": "Invalid or missing token"},
                status_code=401,
            )

        return await call_next(request)
