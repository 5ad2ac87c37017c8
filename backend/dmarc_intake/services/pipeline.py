"""
DMARC report ingest pipeline.

Sequences the pieces for one inbound report:

    attachment -> resolve_container_kind -> decode_attachment -> XML text
               -> parse_report_xml -> normalize_report -> rows
               -> persist_rows -> PersistenceOutcome

Every step runs synchronously and fatal errors propagate to the caller
unchanged; the router decides how to report them.
"""

import logging
from typing import Optional

from dmarc_intake.errors import NoAttachmentError
from dmarc_intake.models.dmarc import DmarcRecordRow, IngestResult, PersistenceOutcome
from dmarc_intake.models.inbound_email import InboundAttachment, InboundEmail
from dmarc_intake.services.attachment_decoder import (
    decode_attachment,
    extension_for,
    resolve_container_kind,
)
from dmarc_intake.services.dmarc_store import DmarcStore
from dmarc_intake.services.persistence import persist_rows
from dmarc_intake.services.report_normalizer import normalize_report, parse_report_xml

logger = logging.getLogger(__name__)


def extract_rows(attachment: InboundAttachment) -> list[DmarcRecordRow]:
    """Decode an attachment and normalize the report it contains."""
    extension = extension_for(attachment.content_type)
    kind = resolve_container_kind(attachment.content_type)
    logger.info(
        "Processing attachment %r (%s, %d bytes), detected extension %r",
        attachment.filename,
        attachment.content_type,
        len(attachment.content),
        extension or "unknown",
    )

    xml = decode_attachment(kind, attachment.content, extension=extension)
    rows = normalize_report(parse_report_xml(xml))
    logger.info("Extracted %d DMARC records from %r", len(rows), attachment.filename)
    return rows


def process_report(
    attachment: InboundAttachment,
    store: DmarcStore,
    attachment_url: Optional[str] = None,
) -> PersistenceOutcome:
    """
    Decode, normalize and persist one DMARC aggregate report attachment.

    Args:
        attachment:     The report attachment (gzip, zip or plain XML).
        store:          Storage/database capability for the inserts.
        attachment_url: Storage path of the uploaded original, if any.

    Returns:
        PersistenceOutcome for the report's rows.

    Raises:
        UnsupportedFormatError, DecompressionError, EmptyArchiveError,
        ReportXmlError, InvalidReportStructureError, AllInsertsFailedError.
    """
    rows = extract_rows(attachment)
    return persist_rows(rows, store, attachment_url=attachment_url)


def process_inbound_email(email: InboundEmail, store: DmarcStore) -> IngestResult:
    """
    Process the first attachment of an inbound DMARC report email.

    Steps:
    1. Require at least one attachment.
    2. Decode and normalize the report (fails fast on a bad attachment).
    3. Upload the original attachment (best-effort: a failed upload is logged
       and the rows are stored without an attachment reference).
    4. Persist the rows.

    Raises:
        NoAttachmentError: the email has no attachments.
        Any error raised by process_report().
    """
    logger.info(
        "Inbound DMARC email from %r, subject %r, %d attachment(s)",
        email.sender_email,
        email.subject,
        len(email.attachments),
    )
    if not email.attachments:
        raise NoAttachmentError("no attachments")

    attachment = email.attachments[0]
    rows = extract_rows(attachment)

    attachment_path: Optional[str] = None
    try:
        attachment_path = store.upload_file(
            attachment.filename,
            attachment.content,
            attachment.content_type,
        )
    except Exception as e:
        logger.warning(f"Failed to upload DMARC attachment {attachment.filename!r}: {e}")

    outcome = persist_rows(rows, store, attachment_url=attachment_path)

    first = rows[0] if rows else None
    return IngestResult(
        attachment_filename=attachment.filename,
        attachment_path=attachment_path,
        report_id=first.report_metadata_report_id if first else "",
        org_name=first.report_metadata_org_name if first else "",
        domain=first.policy_published_domain if first else "",
        row_count=len(rows),
        outcome=outcome,
    )
