from __future__ import annotations

from fastapi import FastAPI
from starlette.middleware.cors import CORSMiddleware

from .config import settings
from .logging import configure_logging, logger
from .middleware import AccessLogAndMetricsMiddleware, RequestIDMiddleware
from .routers import analyses, health
from .store.analyses import AnalysisSQLiteStore


def create_app(store: AnalysisSQLiteStore | None = None) -> FastAPI:
    """Create and configure the history API application.

    `uvicorn analysis_history.main:create_app --factory` で起動する。
    strict_mode ではトークン署名鍵が未設定のまま起動しない。
    """
    configure_logging()
    if settings.strict_mode and not settings.access_token_secret:
        raise RuntimeError("ACCESS_TOKEN_SECRET must be configured when STRICT_MODE is enabled")

    app = FastAPI(title="Analysis History API", version="0.1.0")
    app.state.store = store or AnalysisSQLiteStore(settings.history_db_path)

    # ベアラートークン認証のみなので Cookie 付き CORS は許可しない。
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    # 後から追加したミドルウェアほど外側で実行される。RequestID で採番した後に
    # AccessLog が構造化ログとメトリクスを記録する。
    app.add_middleware(AccessLogAndMetricsMiddleware)
    app.add_middleware(RequestIDMiddleware)

    app.include_router(health.router)
    app.include_router(analyses.router, prefix="/api/analyses")

    logger.info(
        "app_created",
        environment=settings.environment,
        history_db_path=app.state.store.db_path,
    )
    return app
