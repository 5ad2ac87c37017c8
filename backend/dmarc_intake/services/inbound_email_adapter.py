"""
Inbound email adapter service.

Normalizes provider-specific inbound payloads into a single provider-agnostic
InboundEmail model.

Supported sources:
  - resend    (default; set EMAIL_PROVIDER=resend or pass provider="resend")
  - postmark  (set EMAIL_PROVIDER=postmark)
  - raw RFC 822 messages, via normalize_raw_mime(), for mail forwarders that
    post the message source as-is

Adding a new provider:
  1. Write a normalize_<provider>(payload: dict) -> InboundEmail function.
  2. Register it in _NORMALIZERS.
  3. Set EMAIL_PROVIDER=<provider> in the environment.

Resend inbound webhook field assumptions
----------------------------------------
  from          str  : sender address, e.g. "DMARC <noreply-dmarc-support@google.com>"
  to            str  : recipient address (or comma-separated list)
  subject       str  : email subject line
  message_id    str  : Message-ID header (optional)
  date          str  : Date header (optional)
  attachments   list : each item has:
                          filename     str  : original filename
                          content      str  : base64-encoded file bytes
                          content_type str  : MIME type
"""

import base64
import logging
import os
from email import policy
from email.parser import BytesParser
from typing import Callable

from dmarc_intake.models.dmarc import ContainerKind
from dmarc_intake.models.inbound_email import InboundAttachment, InboundEmail
from dmarc_intake.services.attachment_decoder import resolve_container_kind

logger = logging.getLogger(__name__)


def _decode_base64(raw: str, filename: str) -> bytes:
    try:
        return base64.b64decode(raw)
    except Exception as e:
        logger.warning(f"Could not base64-decode attachment {filename!r}: {e}")
        return b""


# ---------------------------------------------------------------------------
# Postmark normalizer
# ---------------------------------------------------------------------------

def normalize_postmark(payload: dict) -> InboundEmail:
    """
    Convert a Postmark inbound webhook payload to InboundEmail.

    Postmark uses PascalCase keys:
      From, To, Subject, MessageID, Date, Attachments[].{Name, Content, ContentType}

    Content is base64-encoded in Postmark payloads.
    """
    attachments: list[InboundAttachment] = []
    for att in payload.get("Attachments") or []:
        filename = att.get("Name", "attachment")
        attachments.append(
            InboundAttachment(
                filename=filename,
                content=_decode_base64(att.get("Content", ""), filename),
                content_type=att.get("ContentType", "application/octet-stream"),
            )
        )

    return InboundEmail(
        sender_email=payload.get("From", ""),
        recipient_email=payload.get("To", ""),
        subject=payload.get("Subject"),
        message_id=payload.get("MessageID"),
        date=payload.get("Date"),
        attachments=attachments,
    )


# ---------------------------------------------------------------------------
# Resend normalizer
# ---------------------------------------------------------------------------

def normalize_resend(payload: dict) -> InboundEmail:
    """
    Convert a Resend inbound webhook payload to InboundEmail.

    Resend uses snake_case keys:
      from, to, subject, message_id, date,
      attachments[].{filename, content, content_type}

    content is base64-encoded in Resend payloads.
    """
    attachments: list[InboundAttachment] = []
    for att in payload.get("attachments") or []:
        filename = att.get("filename", "attachment")
        attachments.append(
            InboundAttachment(
                filename=filename,
                content=_decode_base64(att.get("content", ""), filename),
                content_type=att.get("content_type", "application/octet-stream"),
            )
        )

    return InboundEmail(
        sender_email=payload.get("from", ""),
        recipient_email=payload.get("to", ""),
        subject=payload.get("subject"),
        message_id=payload.get("message_id"),
        date=payload.get("date"),
        attachments=attachments,
    )


# ---------------------------------------------------------------------------
# Raw RFC 822 messages
# ---------------------------------------------------------------------------

def _is_attachment_part(part) -> bool:
    """
    True for MIME parts that carry a file rather than message text.

    Reporters are inconsistent: some mark the report with
    Content-Disposition: attachment, others send an inline application/gzip
    part, and some send the report as the sole body of a non-multipart
    message.
    """
    if part.is_multipart():
        return False
    if part.get_filename() or part.get_content_disposition() == "attachment":
        return True
    content_type = part.get_content_type()
    if content_type in ("text/plain", "text/html"):
        return False
    return resolve_container_kind(content_type) != ContainerKind.UNKNOWN


def normalize_raw_mime(raw: bytes) -> InboundEmail:
    """
    Parse a raw RFC 822 message into InboundEmail.

    Attachment payloads are transfer-decoded (base64 / quoted-printable) to
    raw bytes.
    """
    message = BytesParser(policy=policy.default).parsebytes(raw)

    attachments: list[InboundAttachment] = []
    for part in message.walk():
        if not _is_attachment_part(part):
            continue
        attachments.append(
            InboundAttachment(
                filename=part.get_filename() or "attachment",
                content=part.get_payload(decode=True) or b"",
                content_type=part.get_content_type(),
            )
        )

    return InboundEmail(
        sender_email=str(message.get("From", "")),
        recipient_email=str(message.get("To", "")),
        subject=str(message["Subject"]) if message["Subject"] is not None else None,
        message_id=str(message["Message-ID"]) if message["Message-ID"] is not None else None,
        date=str(message["Date"]) if message["Date"] is not None else None,
        attachments=attachments,
    )


# ---------------------------------------------------------------------------
# Registry and dispatcher
# ---------------------------------------------------------------------------

_NORMALIZERS: dict[str, Callable[[dict], InboundEmail]] = {
    "postmark": normalize_postmark,
    "resend": normalize_resend,
}


def normalize_webhook(payload: dict, provider: str | None = None) -> InboundEmail:
    """
    Route to the correct normalizer based on the provider argument or the
    EMAIL_PROVIDER environment variable.

    Priority:
      1. provider argument (explicit, used in tests and the webhook endpoint)
      2. EMAIL_PROVIDER env var
      3. Default: "resend"

    Raises ValueError for unknown provider names.
    """
    resolved = provider or os.getenv("EMAIL_PROVIDER", "resend")
    resolved = resolved.lower().strip()

    normalizer = _NORMALIZERS.get(resolved)
    if normalizer is None:
        raise ValueError(
            f"Unknown email provider {resolved!r}. "
            f"Supported providers: {sorted(_NORMALIZERS)}"
        )

    return normalizer(payload)
