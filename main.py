import logging
import os
import time
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.database import Database
from pymongo.errors import PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

import auth
import checkout
import orders
import products
import wallet
import webhooks
from config import Settings, get_settings
from database import connect_with_retry, ensure_indexes, get_db, reconnect_forever
from mpesa import MpesaClient
from payments import get_mpesa
from seed import seed_products

logger = logging.getLogger(__name__)

STARTED_AT = time.monotonic()


def create_app(
    settings: Optional[Settings] = None,
    db: Optional[Database] = None,
    mpesa: Optional[MpesaClient] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    app = FastAPI(title="Beverage E-Commerce API", version="1.0.0")
    app.state.settings = settings
    app.state.db = db
    app.state.mpesa = mpesa or MpesaClient(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_and_harden(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        logger.info(
            "%s %s -> %d (%.1f ms)",
            request.method,
            request.url.path,
            response.status_code,
            (time.perf_counter() - started) * 1000,
        )
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-XSS-Protection"] = "1; mode=block"
        if settings.is_production:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response

    register_error_handlers(app)

    for module in (auth, products, orders, wallet, checkout, webhooks):
        app.include_router(module.router)
    app.include_router(service_routes())

    @app.on_event("startup")
    def connect_database():
        if app.state.db is not None:
            return
        missing = settings.missing_recommended()
        if missing:
            logger.warning("Missing recommended environment variables: %s", ", ".join(missing))
        if len(settings.jwt_secret) < 32:
            logger.warning("JWT_SECRET should be at least 32 characters long")
        try:
            db = connect_with_retry(settings)
        except PyMongoError:
            logger.error("MongoDB unavailable; retrying every %ss in the background", settings.mongo_retry_interval)
            reconnect_forever(app.state, settings, on_connect=prepare_database)
            return
        prepare_database(db)
        app.state.db = db

    @app.on_event("shutdown")
    def close_database():
        if app.state.db is not None:
            app.state.db.client.close()
            logger.info("Database connection closed")

    return app


def prepare_database(db: Database) -> None:
    ensure_indexes(db)
    count = db["products"].count_documents({})
    if count == 0:
        logger.info("No products found; seeding sample products")
        try:
            seed_products(db)
        except PyMongoError:
            logger.exception("Error seeding products")
    else:
        logger.info("Found %d products in database", count)


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "message": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        errors = [
            {"field": ".".join(str(p) for p in err["loc"][1:]), "message": err["msg"]} for err in exc.errors()
        ]
        return JSONResponse(
            status_code=400, content={"success": False, "message": "Validation errors", "errors": errors}
        )

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        settings = request.app.state.settings
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "message": "Internal server error",
                "error": str(exc) if settings.environment == "development" else "Something went wrong",
            },
        )


def service_routes() -> APIRouter:
    router = APIRouter(tags=["service"])

    @router.get("/")
    def root():
        return {
            "success": True,
            "message": "Beverage E-Commerce Backend API",
            "version": "1.0.0",
            "status": "Running",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @router.get("/api/health")
    def health(
        request: Request,
        settings: Settings = Depends(get_settings),
        mpesa: MpesaClient = Depends(get_mpesa),
    ):
        database = "disconnected"
        db = request.app.state.db
        if db is not None:
            try:
                db.command("ping")
                database = "connected"
            except PyMongoError:
                database = "error"
        status = mpesa.config_status()
        return {
            "success": True,
            "status": "OK",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "environment": settings.environment,
            "database": database,
            "mpesa": {"configured": status["configured"], "environment": status["environment"]},
            "uptime": round(time.monotonic() - STARTED_AT, 1),
        }

    @router.get("/api/config/status")
    def config_status(
        request: Request,
        settings: Settings = Depends(get_settings),
        mpesa: MpesaClient = Depends(get_mpesa),
    ):
        return {
            "success": True,
            "jwt": {"configured": bool(os.getenv("JWT_SECRET")), "secret_length": len(settings.jwt_secret)},
            "database": {
                "uri": "configured" if os.getenv("MONGO_URI") else "using default",
                "connected": request.app.state.db is not None,
            },
            "mpesa": mpesa.config_status(),
            "environment": {
                "environment": settings.environment,
                "port": settings.port,
                "frontend_url": settings.frontend_url or "not set",
            },
        }

    @router.post("/api/seed/products")
    def seed_catalog(settings: Settings = Depends(get_settings), db: Database = Depends(get_db)):
        if settings.is_production:
            raise HTTPException(status_code=403, detail="Product seeding is disabled in production")
        ids = seed_products(db)
        return {"success": True, "message": "Products seeded successfully", "count": len(ids)}

    return router


logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

app = create_app()


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 5000))
    uvicorn.run(app, host="0.0.0.0", port=port)
