"""
Inbound email adapter tests.

Coverage:
  - InboundEmail / InboundAttachment models
  - normalize_postmark / normalize_resend adapter functions
  - normalize_webhook dispatcher (EMAIL_PROVIDER env var)
  - normalize_raw_mime for RFC 822 message sources
"""

import base64
import gzip
import os
from email.message import EmailMessage
from unittest.mock import patch

import pytest

from dmarc_intake.models.inbound_email import InboundAttachment, InboundEmail
from dmarc_intake.services.inbound_email_adapter import (
    normalize_postmark,
    normalize_raw_mime,
    normalize_resend,
    normalize_webhook,
)


REPORT_GZ = gzip.compress(b"<feedback/>")


def _make_postmark_payload(attachments: list | None = None) -> dict:
    if attachments is None:
        attachments = [
            {
                "Name": "google.com!example.com!1!2.xml.gz",
                "Content": base64.b64encode(REPORT_GZ).decode(),
                "ContentType": "application/gzip",
            }
        ]
    return {
        "From": "noreply-dmarc-support@google.com",
        "To": "rua@example.com",
        "Subject": "Report domain: example.com Submitter: google.com",
        "MessageID": "<abc@google.com>",
        "Date": "Mon, 3 Jun 2024 00:00:00 +0000",
        "Attachments": attachments,
    }


def _make_resend_payload(attachments: list | None = None) -> dict:
    if attachments is None:
        attachments = [
            {
                "filename": "google.com!example.com!1!2.xml.gz",
                "content": base64.b64encode(REPORT_GZ).decode(),
                "content_type": "application/gzip",
            }
        ]
    return {
        "from": "noreply-dmarc-support@google.com",
        "to": "rua@example.com",
        "subject": "Report domain: example.com Submitter: google.com",
        "attachments": attachments,
    }


class TestInboundEmailModel:

    def test_defaults(self):
        email = InboundEmail(sender_email="a@b.com", recipient_email="r@b.com")
        assert email.subject is None
        assert email.message_id is None
        assert email.attachments == []

    def test_attachment_accepts_bytes_and_text(self):
        assert InboundAttachment(filename="r.gz", content=b"\x1f\x8b", content_type="application/gzip").content == b"\x1f\x8b"
        assert InboundAttachment(filename="r.xml", content="<feedback/>", content_type="text/xml").content == "<feedback/>"


class TestNormalizePostmark:

    def test_maps_fields_and_decodes_content(self):
        email = normalize_postmark(_make_postmark_payload())

        assert email.sender_email == "noreply-dmarc-support@google.com"
        assert email.recipient_email == "rua@example.com"
        assert email.message_id == "<abc@google.com>"
        assert email.date == "Mon, 3 Jun 2024 00:00:00 +0000"
        assert len(email.attachments) == 1
        assert email.attachments[0].content == REPORT_GZ
        assert email.attachments[0].content_type == "application/gzip"

    def test_empty_attachments_list(self):
        assert normalize_postmark(_make_postmark_payload(attachments=[])).attachments == []

    def test_missing_subject_becomes_none(self):
        payload = _make_postmark_payload()
        del payload["Subject"]
        assert normalize_postmark(payload).subject is None


class TestNormalizeResend:

    def test_maps_fields_and_decodes_content(self):
        email = normalize_resend(_make_resend_payload())

        assert email.sender_email == "noreply-dmarc-support@google.com"
        assert email.subject == "Report domain: example.com Submitter: google.com"
        assert email.attachments[0].filename == "google.com!example.com!1!2.xml.gz"
        assert email.attachments[0].content == REPORT_GZ

    def test_undecodable_content_becomes_empty_bytes(self):
        payload = _make_resend_payload(attachments=[
            {"filename": "r.xml.gz", "content": "%%%not base64", "content_type": "application/gzip"}
        ])
        assert normalize_resend(payload).attachments[0].content == b""


class TestNormalizeWebhookDispatcher:

    def test_explicit_provider(self):
        assert normalize_webhook(_make_postmark_payload(), provider="postmark").message_id == "<abc@google.com>"
        assert normalize_webhook(_make_resend_payload(), provider="Resend ").attachments

    def test_env_var_selects_postmark(self):
        with patch.dict(os.environ, {"EMAIL_PROVIDER": "postmark"}):
            email = normalize_webhook(_make_postmark_payload())
        assert email.sender_email == "noreply-dmarc-support@google.com"

    def test_default_provider_is_resend(self):
        env_without_provider = {k: v for k, v in os.environ.items() if k != "EMAIL_PROVIDER"}
        with patch.dict(os.environ, env_without_provider, clear=True):
            email = normalize_webhook(_make_resend_payload())
        assert len(email.attachments) == 1

    def test_unknown_provider_raises(self):
        with pytest.raises(ValueError, match="Unknown email provider"):
            normalize_webhook({}, provider="sendgrid")


class TestNormalizeRawMime:

    def test_multipart_message_with_attachment(self):
        message = EmailMessage()
        message["From"] = "dmarc@yahoo.com"
        message["To"] = "rua@example.com"
        message["Subject"] = "Report Domain: example.com"
        message["Message-ID"] = "<123@yahoo.com>"
        message.set_content("This is an aggregate report.")
        message.add_attachment(
            REPORT_GZ, maintype="application", subtype="gzip", filename="report.xml.gz"
        )

        email = normalize_raw_mime(message.as_bytes())

        assert email.sender_email == "dmarc@yahoo.com"
        assert email.recipient_email == "rua@example.com"
        assert email.subject == "Report Domain: example.com"
        assert email.message_id == "<123@yahoo.com>"
        assert len(email.attachments) == 1
        attachment = email.attachments[0]
        assert attachment.filename == "report.xml.gz"
        assert attachment.content == REPORT_GZ
        assert attachment.content_type == "application/gzip"

    def test_report_as_sole_body(self):
        """Some reporters send the compressed report as the whole message body."""
        raw = (
            b"From: dmarc@example.net\r\n"
            b"To: rua@example.com\r\n"
            b"Subject: report\r\n"
            b"MIME-Version: 1.0\r\n"
            b"Content-Type: application/gzip\r\n"
            b"Content-Transfer-Encoding: base64\r\n"
            b"\r\n" + base64.encodebytes(REPORT_GZ)
        )

        email = normalize_raw_mime(raw)

        assert len(email.attachments) == 1
        assert email.attachments[0].filename == "attachment"
        assert email.attachments[0].content == REPORT_GZ

    def test_text_only_message_has_no_attachments(self):
        message = EmailMessage()
        message["From"] = "someone@example.com"
        message["To"] = "rua@example.com"
        message.set_content("hello")

        email = normalize_raw_mime(message.as_bytes())

        assert email.attachments == []
        assert email.subject is None

    def test_empty_body_has_no_attachments(self):
        email = normalize_raw_mime(b"")
        assert email.attachments == []
        assert email.sender_email == ""
