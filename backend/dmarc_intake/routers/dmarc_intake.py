"""
DMARC intake router.

Receives aggregate-report emails from the inbound mail provider and hands
them to the ingest pipeline, and lists the stored rows for the dashboard.

The JSON webhook endpoint is provider-agnostic: it normalises the raw payload
via the inbound_email_adapter service, so swapping from Postmark to Resend
only requires changing the EMAIL_PROVIDER env var. Forwarders that can only
POST the message source use /inbound/raw instead.

Environment variables
---------------------
EMAIL_PROVIDER            Which normaliser to use (default: "resend").
                          Supported values: "resend", "postmark".
INBOUND_WEBHOOK_SECRET    Shared secret checked in X-Webhook-Secret header.
POSTMARK_WEBHOOK_SECRET   Legacy alias, checked as a fallback when
                          INBOUND_WEBHOOK_SECRET is not set.

Endpoints:
  POST /inbound       : provider webhook, JSON (auth: X-Webhook-Secret)
  POST /inbound/raw   : raw RFC 822 message (auth: X-Webhook-Secret)
  GET  /records       : stored DMARC rows, newest first (auth: JWT)

Webhook responses:
  200 IngestResult                                 : report stored (fully or partially)
  200 {"received": true, "processed": false, ...}  : email can never be processed;
                                                      the provider must not retry
  401                                              : bad or missing secret
  503                                              : nothing could be stored; retry later
"""

import logging
import os
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request

from dmarc_intake.auth import get_current_user
from dmarc_intake.errors import AllInsertsFailedError, DmarcIngestError
from dmarc_intake.models.dmarc import DmarcRecordResponse
from dmarc_intake.models.inbound_email import InboundEmail
from dmarc_intake.services.dmarc_store import SupabaseDmarcStore, get_default_store
from dmarc_intake.services.inbound_email_adapter import normalize_raw_mime, normalize_webhook
from dmarc_intake.services.pipeline import process_inbound_email

logger = logging.getLogger(__name__)

router = APIRouter()

_MAX_RECORDS = 500


# ---------------------------------------------------------------------------
# Webhook authentication dependency
# ---------------------------------------------------------------------------

def _get_webhook_secret() -> str:
    """
    Return the configured webhook secret.

    Checks INBOUND_WEBHOOK_SECRET first, then falls back to the legacy
    POSTMARK_WEBHOOK_SECRET for backward compatibility.
    """
    return (
        os.getenv("INBOUND_WEBHOOK_SECRET")
        or os.getenv("POSTMARK_WEBHOOK_SECRET")
        or ""
    )


def _verify_webhook_secret(
    x_webhook_secret: Optional[str] = Header(None),
    x_postmark_secret: Optional[str] = Header(None),
) -> None:
    """
    Verify that the inbound webhook request carries the correct shared secret.

    Accepts the secret in either:
      X-Webhook-Secret  : provider-agnostic header
      X-Postmark-Secret : legacy Postmark header

    Raises 401 if the secret is missing, unconfigured, or does not match.
    """
    expected = _get_webhook_secret()
    if not expected:
        logger.warning(
            "No webhook secret configured (INBOUND_WEBHOOK_SECRET / "
            "POSTMARK_WEBHOOK_SECRET); all inbound webhook requests will be rejected"
        )
        raise HTTPException(status_code=401, detail="Webhook secret not configured")

    provided = x_webhook_secret or x_postmark_secret
    if not provided or provided != expected:
        raise HTTPException(status_code=401, detail="Invalid webhook secret")


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _not_processed(reason: str) -> dict:
    return {"received": True, "processed": False, "reason": reason}


def _ingest(email: InboundEmail) -> dict:
    """Run the pipeline for one email and map its errors to webhook responses."""
    try:
        store = get_default_store()
    except ValueError as exc:
        logger.error(f"DMARC store unavailable: {exc}")
        raise HTTPException(status_code=503, detail=str(exc))

    try:
        result = process_inbound_email(email, store)
    except AllInsertsFailedError as exc:
        logger.error(f"No DMARC rows could be stored: {exc.message}")
        raise HTTPException(status_code=503, detail="Failed to store DMARC report")
    except DmarcIngestError as exc:
        logger.warning(
            f"DMARC email from {email.sender_email!r} not processed "
            f"({exc.error_code}): {exc.message}"
        )
        return _not_processed(exc.error_code)

    logger.info(
        "Stored DMARC report %r from %r for %r: %d inserted, %d failed",
        result.report_id,
        result.org_name,
        result.domain,
        result.outcome.succeeded_count,
        result.outcome.failed_count,
    )
    return result.model_dump(mode="json")


def _download_url(store: SupabaseDmarcStore, storage_path: Optional[str]) -> Optional[str]:
    if not storage_path:
        return None
    try:
        return store.signed_download_url(storage_path)
    except Exception as e:
        logger.warning(f"Could not sign attachment URL for {storage_path!r}: {e}")
        return None


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post("/inbound")
async def receive_inbound_email(
    payload: dict,
    _: None = Depends(_verify_webhook_secret),
) -> dict:
    """
    Provider-agnostic inbound email webhook receiver.

    Accepts a raw JSON payload and normalizes it using the adapter selected
    by the EMAIL_PROVIDER environment variable (default: "resend").
    """
    provider = os.getenv("EMAIL_PROVIDER", "resend")
    try:
        email = normalize_webhook(payload, provider=provider)
    except ValueError as exc:
        logger.error(f"Webhook normalization failed: {exc}")
        return _not_processed("unsupported_provider")

    return _ingest(email)


@router.post("/inbound/raw")
async def receive_raw_email(
    request: Request,
    _: None = Depends(_verify_webhook_secret),
) -> dict:
    """Inbound receiver for forwarders that POST the RFC 822 message source."""
    raw = await request.body()
    return _ingest(normalize_raw_mime(raw))


@router.get("/records")
async def list_records(
    domain: Optional[str] = None,
    report_id: Optional[str] = None,
    limit: int = Query(100, ge=1, le=_MAX_RECORDS),
    user_id: str = Depends(get_current_user),
) -> list[DmarcRecordResponse]:
    """
    List stored DMARC rows, most recent first.

    Rows with a stored original attachment carry a signed download URL.
    """
    try:
        store = get_default_store()
        rows = store.query_records(domain=domain, report_id=report_id, limit=limit)
    except Exception as e:
        logger.error(f"Failed to load DMARC records: {e}")
        raise HTTPException(status_code=500, detail="Failed to load DMARC records")

    return [
        DmarcRecordResponse(
            **row,
            attachment_download_url=_download_url(store, row.get("attachment_url")),
        )
        for row in rows
    ]
