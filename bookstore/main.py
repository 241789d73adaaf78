import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.utils import get_openapi
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from . import auth, books, cart, orders, pages, payments, users
from .config import Settings, load_settings
from .database import create_engine, create_session_maker, create_tables
from .errors import GatewayError, StoreError
from .log import configure_logging
from .pages import BASE_DIR
from .payhere import default_client_factory

logger = logging.getLogger(__name__)


def _validation_message(exc: RequestValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = [str(p) for p in err.get("loc", ()) if p != "body"]
        field = ".".join(loc)
        parts.append(f"{field}: {err.get('msg')}" if field else str(err.get("msg")))
    return "; ".join(parts) or "Invalid request"


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError):
        logger.error(
            "payment gateway error",
            extra={"path": request.url.path, "error": exc.message, "upstream_status": exc.upstream_status},
        )
        body = {"detail": exc.message}
        if request.app.state.settings.debug:
            body["status"] = exc.upstream_status
            body["details"] = exc.details
        return JSONResponse(status_code=exc.status_code, content=body)

    @app.exception_handler(StoreError)
    async def store_error_handler(request: Request, exc: StoreError):
        if exc.status_code >= 500:
            logger.error("request failed", extra={"path": request.url.path, "error": exc.message})
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"detail": _validation_message(exc)})

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("unhandled error", extra={"path": request.url.path})
        return JSONResponse(status_code=500, content={"detail": "Something went wrong. Please try again."})


def create_app(settings: Optional[Settings] = None, payhere_client_factory=None) -> FastAPI:
    settings = settings or load_settings()
    configure_logging(settings.log_level)

    engine = create_engine(settings.database_url, echo=settings.echo_sql)
    session_maker = create_session_maker(engine)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await create_tables(engine)
        logger.info("bookstore started", extra={"environment": settings.environment})
        yield
        await engine.dispose()

    app = FastAPI(
        title="Bookstore",
        description="Book catalog, cart and PayHere checkout API",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_maker = session_maker
    app.state.order_recorder = orders.SqlOrderRecorder(session_maker)
    app.state.payhere_client_factory = payhere_client_factory or default_client_factory

    app.mount("/static", StaticFiles(directory=str(BASE_DIR / "static")), name="static")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    _install_error_handlers(app)

    app.include_router(auth.router)
    app.include_router(books.router)
    app.include_router(users.router)
    app.include_router(cart.router)
    app.include_router(orders.router)
    app.include_router(payments.router)
    app.include_router(pages.router)

    # bearer scheme in /docs so "Authorize" accepts a token from /api/auth/login
    def custom_openapi():
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(
            title=app.title,
            version=app.version,
            description=app.description,
            routes=app.routes,
        )
        schema.setdefault("components", {}).setdefault("securitySchemes", {})
        schema["components"]["securitySchemes"]["BearerAuth"] = {"type": "http", "scheme": "bearer"}
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi
    return app


if __name__ == "__main__":
    uvicorn.run("bookstore.main:create_app", factory=True, host="0.0.0.0", port=8000, reload=True)
