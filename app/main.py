# app/main.py
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.core.config import settings
from app.core.logging_config import configure_logging
from app.api.router import api_router
from app.api.exception_handlers import register_exception_handlers
from app.db.init_db import create_tables
from app.services.mpesa_client import MpesaClient

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.PROJECT_NAME,
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.BACKEND_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

app.include_router(api_router, prefix=settings.API_V1_STR)


@app.on_event("startup")
def _startup():
    create_tables()
    # one client (and one token cache) for the whole process
    app.state.mpesa_client = MpesaClient(settings)
    logger.info("%s started (M-Pesa env=%s)", settings.PROJECT_NAME,
                settings.MPESA_ENV)


# Health
@app.get("/")
def root():
    return {"message": "Hospital Ledger API running", "version": "v1"}
