"""
Storage/database capability used by the ingest pipeline.

DmarcStore is the interface the pipeline depends on; SupabaseDmarcStore is the
production implementation (Supabase Storage for the original attachment,
PostgREST table inserts for the rows). Tests substitute any object with the
same three methods.

Environment variables
---------------------
DMARC_STORAGE_BUCKET   Storage bucket for original attachments
                       (default: "dmarc-reports").
DMARC_TABLE            Table receiving DmarcDatabaseRecord rows
                       (default: "dmarc_reports").
SUPABASE_PUBLIC_URL    Browser-facing Supabase origin. Signed download URLs
                       are rewritten to it when the backend reaches Supabase
                       through an internal host (e.g. host.docker.internal).
"""

import logging
import os
import re
from datetime import datetime, timezone
from typing import Any, Optional, Protocol, Union
from urllib.parse import urlsplit, urlunsplit

logger = logging.getLogger(__name__)

DEFAULT_BUCKET = "dmarc-reports"
DEFAULT_TABLE = "dmarc_reports"


class DmarcStore(Protocol):
    def upload_file(self, name: str, content: Union[bytes, str], content_type: str = ...) -> str:
        ...

    def insert_one(self, record: dict) -> str:
        ...

    def insert_batch(self, records: list[dict]) -> list[str]:
        ...


def build_attachment_path(filename: str, received_at: Optional[datetime] = None) -> str:
    """
    Storage path for an original report attachment.

    Path: dmarc-reports/{YYYY}/{M}/{sanitized_filename}, using the UTC
    receive time. The same file received in the same month overwrites the
    earlier upload.
    """
    when = received_at or datetime.now(timezone.utc)
    sanitized = re.sub(r"[^\w\-.]", "_", filename) or "attachment"
    return f"dmarc-reports/{when.year}/{when.month}/{sanitized}"


def _with_public_origin(url: str) -> str:
    public_url = os.getenv("SUPABASE_PUBLIC_URL", "").strip()
    if not public_url:
        return url
    public = urlsplit(public_url)
    return urlunsplit(urlsplit(url)._replace(scheme=public.scheme, netloc=public.netloc))


class SupabaseDmarcStore:
    """DmarcStore backed by a Supabase client."""

    def __init__(
        self,
        client: Any,
        bucket: Optional[str] = None,
        table: Optional[str] = None,
    ) -> None:
        self.client = client
        self.bucket = bucket or os.getenv("DMARC_STORAGE_BUCKET", DEFAULT_BUCKET)
        self.table = table or os.getenv("DMARC_TABLE", DEFAULT_TABLE)

    def upload_file(
        self,
        name: str,
        content: Union[bytes, str],
        content_type: str = "application/octet-stream",
    ) -> str:
        """
        Upload an original attachment and return its storage path.

        Raises:
            Exception: If upload fails
        """
        storage_path = build_attachment_path(name)
        file_content = content.encode("utf-8") if isinstance(content, str) else content

        try:
            self.client.storage.from_(self.bucket).upload(
                storage_path,
                file_content,
                {
                    "content-type": content_type,
                    "upsert": "true",
                },
            )
        except Exception as e:
            raise Exception(f"Failed to upload attachment to storage: {str(e)}")

        logger.info("Uploaded attachment to %s/%s", self.bucket, storage_path)
        return storage_path

    def insert_one(self, record: dict) -> str:
        """Insert a single row and return its id."""
        result = self.client.table(self.table).insert(record).execute()
        if not result.data:
            raise Exception(f"{self.table} insert returned no data")
        return str(result.data[0].get("id", "unknown"))

    def insert_batch(self, records: list[dict]) -> list[str]:
        """Insert all rows in one request and return their ids in order."""
        result = self.client.table(self.table).insert(records).execute()
        if not result.data:
            raise Exception(f"{self.table} batch insert returned no data")
        return [str(row.get("id", "unknown")) for row in result.data]

    def query_records(
        self,
        domain: Optional[str] = None,
        report_id: Optional[str] = None,
        limit: int = 100,
    ) -> list[dict]:
        """Return stored rows, newest first, optionally filtered."""
        query = self.client.table(self.table).select("*")
        if domain:
            query = query.eq("policy_published_domain", domain)
        if report_id:
            query = query.eq("report_metadata_report_id", report_id)
        result = query.order("created_at", desc=True).limit(limit).execute()
        return result.data or []

    def signed_download_url(self, storage_path: str, expiry_seconds: int = 3600) -> str:
        """
        Short-lived download URL for an uploaded attachment.

        Raises:
            Exception: If the bucket returns no signed URL
        """
        try:
            result = self.client.storage.from_(self.bucket).create_signed_url(
                storage_path, expiry_seconds
            )
        except Exception as e:
            raise Exception(f"Failed to sign attachment URL: {str(e)}")

        signed = (result or {}).get("signedURL")
        if not signed:
            raise Exception(f"Storage returned no signed URL for {storage_path}")
        return _with_public_origin(signed)


def get_default_store() -> SupabaseDmarcStore:
    """
    Build the store from the service-role Supabase client.

    Raises:
        ValueError: SUPABASE_SERVICE_KEY is not configured.
    """
    from dmarc_intake.db import supabase_admin

    if not supabase_admin:
        raise ValueError("SUPABASE_SERVICE_KEY is required for storage operations")
    return SupabaseDmarcStore(supabase_admin)
