#!/usr/bin/env python3
"""
Dev helper: send a DMARC aggregate report to the local intake backend.

Wraps a report (a real file, or a generated sample) the way a mailbox
provider would and POST-s it to the intake endpoint, either as a provider
webhook payload (/api/dmarc/inbound) or as a raw RFC 822 message
(/api/dmarc/inbound/raw).

Usage
-----
# Basic: Resend payload with a generated gzip report, targeting localhost:8000
python scripts/send_dmarc_report.py

# Send a report received from a real reporter
python scripts/send_dmarc_report.py --file google.com!example.com!1700000000!1700086399.zip

# Generated sample as a zip archive or plain XML
python scripts/send_dmarc_report.py --format zip
python scripts/send_dmarc_report.py --format xml

# Postmark payload format, or the raw message endpoint
python scripts/send_dmarc_report.py --provider postmark
python scripts/send_dmarc_report.py --raw

Environment / .env
------------------
INBOUND_WEBHOOK_SECRET   Shared webhook secret (required).
                         Falls back to POSTMARK_WEBHOOK_SECRET.
EMAIL_PROVIDER           Provider format to use (default: resend).
                         Overridden by --provider flag.
"""

import argparse
import base64
import gzip
import io
import json
import os
import sys
import textwrap
import zipfile
from email.message import EmailMessage
from pathlib import Path

import httpx
from dotenv import load_dotenv

_SAMPLE_REPORT = """\
<?xml version="1.0" encoding="UTF-8" ?>
<feedback>
  <report_metadata>
    <org_name>google.com</org_name>
    <email>noreply-dmarc-support@google.com</email>
    <report_id>2024-06-01-sample</report_id>
    <date_range>
      <begin>1717200000</begin>
      <end>1717286399</end>
    </date_range>
  </report_metadata>
  <policy_published>
    <domain>example.com</domain>
    <adkim>r</adkim>
    <aspf>r</aspf>
    <p>quarantine</p>
    <sp>none</sp>
    <pct>100</pct>
  </policy_published>
  <record>
    <row>
      <source_ip>203.0.113.10</source_ip>
      <count>12</count>
      <policy_evaluated>
        <disposition>none</disposition>
        <dkim>pass</dkim>
        <spf>pass</spf>
      </policy_evaluated>
    </row>
    <identifiers>
      <header_from>example.com</header_from>
    </identifiers>
  </record>
  <record>
    <row>
      <source_ip>198.51.100.7</source_ip>
      <count>3</count>
      <policy_evaluated>
        <disposition>quarantine</disposition>
        <dkim>fail</dkim>
        <spf>fail</spf>
        <reason>
          <type>forwarded</type>
        </reason>
      </policy_evaluated>
    </row>
    <identifiers>
      <envelope_to>example.com</envelope_to>
      <header_from>example.com</header_from>
    </identifiers>
  </record>
</feedback>
"""

_CONTENT_TYPES = {
    "gz": "application/gzip",
    "zip": "application/zip",
    "xml": "text/xml",
}


def _resolve_secret() -> str:
    return (
        os.getenv("INBOUND_WEBHOOK_SECRET")
        or os.getenv("POSTMARK_WEBHOOK_SECRET")
        or ""
    )


# ---------------------------------------------------------------------------
# Sample report generator
# ---------------------------------------------------------------------------

def _make_sample_report(fmt: str) -> tuple[bytes, str]:
    """Return (content, filename) for the sample report in the given container."""
    xml = _SAMPLE_REPORT.encode("utf-8")
    stem = "google.com!example.com!1717200000!1717286399"

    if fmt == "gz":
        return gzip.compress(xml), f"{stem}.xml.gz"
    if fmt == "zip":
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
            archive.writestr(f"{stem}.xml", xml)
        return buffer.getvalue(), f"{stem}.zip"
    return xml, f"{stem}.xml"


def _detect_content_type(filename: str) -> str:
    name = filename.lower()
    if name.endswith(".gz"):
        return _CONTENT_TYPES["gz"]
    if name.endswith(".zip"):
        return _CONTENT_TYPES["zip"]
    if name.endswith(".xml"):
        return _CONTENT_TYPES["xml"]
    return "application/octet-stream"


# ---------------------------------------------------------------------------
# Payload builders
# ---------------------------------------------------------------------------

def _build_resend_payload(
    from_email: str,
    to_address: str,
    subject: str,
    file_content: bytes,
    filename: str,
    content_type: str,
) -> dict:
    return {
        "from": from_email,
        "to": to_address,
        "subject": subject,
        "attachments": [
            {
                "filename": filename,
                "content": base64.b64encode(file_content).decode(),
                "content_type": content_type,
            }
        ],
    }


def _build_postmark_payload(
    from_email: str,
    to_address: str,
    subject: str,
    file_content: bytes,
    filename: str,
    content_type: str,
) -> dict:
    return {
        "From": from_email,
        "To": to_address,
        "Subject": subject,
        "Attachments": [
            {
                "Name": filename,
                "Content": base64.b64encode(file_content).decode(),
                "ContentType": content_type,
            }
        ],
    }


_PAYLOAD_BUILDERS = {
    "resend": _build_resend_payload,
    "postmark": _build_postmark_payload,
}


def _build_raw_message(
    from_email: str,
    to_address: str,
    subject: str,
    file_content: bytes,
    filename: str,
    content_type: str,
) -> bytes:
    message = EmailMessage()
    message["From"] = from_email
    message["To"] = to_address
    message["Subject"] = subject
    message.set_content("This is an aggregate report from the sending organization.")
    maintype, _, subtype = content_type.partition("/")
    message.add_attachment(
        file_content,
        maintype=maintype,
        subtype=subtype,
        filename=filename,
    )
    return message.as_bytes()


def _print_response(response) -> None:
    status = response.status_code
    symbol = "OK" if status == 200 else "FAIL"
    print(f"\n[{symbol}] HTTP {status}")
    try:
        print(json.dumps(response.json(), indent=2))
    except ValueError:
        print(response.text)


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def main() -> int:
    project_root = Path(__file__).resolve().parent.parent
    load_dotenv(project_root / ".env")
    load_dotenv(project_root / "backend" / ".env")

    parser = argparse.ArgumentParser(
        prog="send_dmarc_report.py",
        description=textwrap.dedent("""\
            Send a DMARC aggregate report email to the intake backend.

            Reads INBOUND_WEBHOOK_SECRET (or legacy POSTMARK_WEBHOOK_SECRET)
            from the environment or a .env file in the project root.
        """),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--url", default="http://localhost:8000",
                        help="Backend base URL (default: http://localhost:8000)")
    parser.add_argument("--provider", default=os.getenv("EMAIL_PROVIDER", "resend"),
                        choices=list(_PAYLOAD_BUILDERS),
                        help="Webhook payload format to use (default: resend)")
    parser.add_argument("--raw", action="store_true",
                        help="POST a raw RFC 822 message to /inbound/raw instead.")
    parser.add_argument("--file", default=None, metavar="PATH",
                        help="Report file to attach. A sample report is generated if omitted.")
    parser.add_argument("--format", dest="fmt", default="gz", choices=list(_CONTENT_TYPES),
                        help="Container for the generated sample (default: gz)")
    parser.add_argument("--from", dest="from_email", default="noreply-dmarc-support@google.com",
                        help="Sender email address")
    parser.add_argument("--to", dest="to_address", default="dmarc-reports@example.com",
                        help="Recipient (rua) address")
    parser.add_argument("--subject", default="Report domain: example.com Submitter: google.com",
                        help="Email subject")
    parser.add_argument("--secret", default=None, metavar="SECRET",
                        help="Override the webhook secret.")
    parser.add_argument("--dry-run", action="store_true",
                        help="Print what would be sent without sending it.")

    args = parser.parse_args()

    secret = args.secret or _resolve_secret()
    if not secret and not args.dry_run:
        print(
            "ERROR: No webhook secret found.\n"
            "Set INBOUND_WEBHOOK_SECRET in your environment or .env file, "
            "or pass --secret.",
            file=sys.stderr,
        )
        return 1

    if args.file:
        file_path = Path(args.file)
        if not file_path.exists():
            print(f"ERROR: File not found: {file_path}", file=sys.stderr)
            return 1
        file_content = file_path.read_bytes()
        filename = file_path.name
        content_type = _detect_content_type(filename)
        print(f"Attaching file: {file_path} ({len(file_content):,} bytes)")
    else:
        file_content, filename = _make_sample_report(args.fmt)
        content_type = _CONTENT_TYPES[args.fmt]
        print(f"No --file specified; using generated sample report ({len(file_content)} bytes)")

    message_args = dict(
        from_email=args.from_email,
        to_address=args.to_address,
        subject=args.subject,
        file_content=file_content,
        filename=filename,
        content_type=content_type,
    )
    base_url = args.url.rstrip("/")
    if args.raw:
        endpoint = f"{base_url}/api/dmarc/inbound/raw"
        request_kwargs = {
            "content": _build_raw_message(**message_args),
            "headers": {"Content-Type": "message/rfc822", "X-Webhook-Secret": secret},
        }
    else:
        endpoint = f"{base_url}/api/dmarc/inbound"
        header = "X-Postmark-Secret" if args.provider == "postmark" else "X-Webhook-Secret"
        request_kwargs = {
            "json": _PAYLOAD_BUILDERS[args.provider](**message_args),
            "headers": {header: secret},
        }

    print(f"\nEndpoint  : {endpoint}")
    print(f"Format    : {'raw' if args.raw else args.provider}")
    print(f"Attachment: {filename} ({content_type})")

    if args.dry_run:
        print("\n[DRY RUN] Nothing sent.")
        return 0

    try:
        response = httpx.post(endpoint, timeout=30, **request_kwargs)
    except httpx.ConnectError:
        print(
            f"\nERROR: Could not connect to {endpoint}\n"
            "Is the backend running? Start it with:\n"
            "  cd backend && uvicorn dmarc_intake.main:app --reload",
            file=sys.stderr,
        )
        return 1

    _print_response(response)
    return 0 if response.status_code == 200 else 1


if __name__ == "__main__":
    sys.exit(main())
