"""
DMARC Intake API
FastAPI application that ingests DMARC aggregate reports from inbound email.
"""

import logging
import os
from typing import List

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from dmarc_intake.routers import dmarc_intake
from dmarc_intake.db import supabase_admin
from dmarc_intake.services.dmarc_store import DEFAULT_BUCKET, DEFAULT_TABLE

# Configure logging to output to console
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

logger = logging.getLogger(__name__)

VERSION = "0.1.0"

app = FastAPI(
    title="DMARC Intake API",
    description="Ingests DMARC aggregate reports and stores one row per report record",
    version=VERSION,
)


def get_cors_origins() -> List[str]:
    """
    Build the list of allowed CORS origins for the reporting dashboard.

    Always includes http://localhost:3000 (dashboard dev server). Additional
    origins are read from the CORS_ORIGINS environment variable as a
    comma-separated list, e.g.:
        CORS_ORIGINS=https://dmarc.example.com,https://staging.dmarc.example.com

    Duplicates are removed while preserving order.
    """
    origins: List[str] = ["http://localhost:3000"]

    cors_env = os.getenv("CORS_ORIGINS", "").strip()
    for origin in cors_env.split(","):
        origin = origin.strip()
        if origin and origin not in origins:
            origins.append(origin)

    return origins


app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(dmarc_intake.router, prefix="/api/dmarc", tags=["dmarc"])


def _table_name() -> str:
    return os.getenv("DMARC_TABLE", DEFAULT_TABLE)


def _bucket_name() -> str:
    return os.getenv("DMARC_STORAGE_BUCKET", DEFAULT_BUCKET)


@app.on_event("startup")
async def log_startup() -> None:
    """Log where the API listens and which table/bucket reports go to."""
    logger.info(
        "DMARC Intake API running at http://localhost:%s (table=%s, bucket=%s)",
        os.getenv("HOST_PORT", "8000"),
        _table_name(),
        _bucket_name(),
    )


@app.get("/")
async def root():
    return {"message": "DMARC Intake API", "version": VERSION}


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/health/db")
async def health_db():
    """
    Test the Supabase database connection.

    Selects one row from the DMARC table to verify that the admin client can
    reach the database. Returns 503 on failure.
    """
    if supabase_admin is None:
        raise HTTPException(
            status_code=503,
            detail="Database client unavailable: SUPABASE_SERVICE_KEY is not configured",
        )

    try:
        supabase_admin.table(_table_name()).select("id").limit(1).execute()
        return {"status": "ok", "database": "reachable"}
    except Exception as exc:
        logger.error(f"Database health check failed: {exc}")
        raise HTTPException(
            status_code=503,
            detail=f"Database connection failed: {str(exc)}",
        )


@app.get("/health/storage")
async def health_storage():
    """
    Test Supabase Storage access.

    Lists storage buckets and verifies the report attachment bucket exists.
    Returns 503 if storage is unreachable or the bucket is missing.
    """
    if supabase_admin is None:
        raise HTTPException(
            status_code=503,
            detail="Storage client unavailable: SUPABASE_SERVICE_KEY is not configured",
        )

    bucket = _bucket_name()
    try:
        buckets = supabase_admin.storage.list_buckets()
        bucket_names = [b.name for b in buckets]

        if bucket not in bucket_names:
            raise HTTPException(
                status_code=503,
                detail=f"Storage bucket '{bucket}' not found",
            )

        return {"status": "ok", "storage": "reachable", "bucket": bucket}
    except HTTPException:
        raise
    except Exception as exc:
        logger.error(f"Storage health check failed: {exc}")
        raise HTTPException(
            status_code=503,
            detail=f"Storage check failed: {str(exc)}",
        )
