import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .config import get_settings
from .database import engine
from .models import Base
from .routers import admin_router, checkout_router, order_router, promo_router, webhook_router

settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(
    title="Storefront",
    description="Order & inventory consistency engine: checkout, payment webhooks, stock ledger",
    version=__version__,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=list(settings.cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Malformed input is a 400 everywhere, with the field errors as details.
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "detail": {
                "error": "validation_error",
                "message": "Invalid request data",
                "details": [
                    {"type": e.get("type"), "loc": list(e.get("loc", ())), "msg": e.get("msg")}
                    for e in exc.errors()
                ],
            }
        },
    )


# Include routers
app.include_router(checkout_router.router)
app.include_router(webhook_router.router)
app.include_router(order_router.router)
app.include_router(promo_router.router)
app.include_router(admin_router.router)


@app.on_event("startup")
def _startup() -> None:
    # Create database tables
    Base.metadata.create_all(bind=engine)


@app.get("/")
def root():
    return {
        "service": "Storefront",
        "status": "running",
        "version": __version__,
    }


@app.get("/health")
def health_check():
    return {
        "status": "healthy",
        "service": "storefront",
    }
