"""連携APIのアプリケーション

例外は {"error": {"code": "...", "message": "..."}} 形式のJSONに変換する。
message は利用者向けの文言のみ。詳細はマスクしてサーバーログに出す。

起動:
    uvicorn integrations.api.app:create_app --factory
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from integrations.api.routes import router
from integrations.context import IntegrationContext
from integrations.lib.errors import IntegrationError
from integrations.lib.logger import redact, setup_logger

logger = setup_logger(__name__)


def error_response(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"code": code, "message": message}},
    )


async def _handle_integration_error(request: Request, exc: IntegrationError) -> JSONResponse:
    log = logger.error if exc.http_status >= 500 else logger.warning
    log(f"{request.method} {request.url.path} failed: {type(exc).__name__}: {redact(exc.message)}")
    return error_response(exc.http_status, exc.code, exc.user_message)


async def _handle_value_error(request: Request, exc: ValueError) -> JSONResponse:
    logger.info(f"Validation error on {request.url.path}: {exc}")
    return error_response(400, "VALIDATION_ERROR", str(exc))


async def _handle_http_exception(request: Request, exc: HTTPException) -> JSONResponse:
    return error_response(exc.status_code, f"HTTP_{exc.status_code}", str(exc.detail))


def create_app(context: Optional[IntegrationContext] = None) -> FastAPI:
    """FastAPI アプリを生成

    Args:
        context: 組み立て済みのコンテキスト（省略時は起動時に環境変数から生成）
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = context is None
        app.state.context = context or IntegrationContext.from_settings()
        logger.info("Integration API started")
        try:
            yield
        finally:
            if owned:
                await app.state.context.aclose()
            logger.info("Integration API stopped")

    app = FastAPI(title="CRM Integrations", lifespan=lifespan)
    if context is not None:
        app.state.context = context

    app.add_exception_handler(IntegrationError, _handle_integration_error)
    app.add_exception_handler(ValueError, _handle_value_error)
    app.add_exception_handler(HTTPException, _handle_http_exception)
    app.include_router(router)
    return app
