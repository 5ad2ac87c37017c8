"""
Provider-agnostic inbound email model.

These models represent a normalized inbound email after provider-specific
fields have been stripped away. The router and the ingest pipeline work
exclusively with these models; only the adapter layer knows about
Postmark/Resend/raw MIME formats.
"""

from typing import Optional, Union
from pydantic import BaseModel, ConfigDict


class InboundAttachment(BaseModel):
    """
    A single file attachment.

    content is normally raw bytes (the adapter base64-decodes webhook
    payloads), but some senders hand over gzip payloads as text, so str is
    accepted as well and left for the decoder to interpret.
    """
    model_config = ConfigDict(frozen=True)

    filename: str
    content: Union[bytes, str]
    content_type: str


class InboundEmail(BaseModel):
    """
    Normalized inbound email, provider-agnostic.

    All provider-specific field names (e.g. Postmark's PascalCase, Resend's
    snake_case, RFC 822 headers) are mapped to these canonical names by the
    adapter layer before the router ever sees the data.
    """

    sender_email: str
    recipient_email: str
    subject: Optional[str] = None
    message_id: Optional[str] = None
    date: Optional[str] = None
    attachments: list[InboundAttachment] = []
