"""
Attachment decoder service.

Turns a DMARC report attachment into XML text, whatever container the
reporting organization used.

Public API:
  resolve_container_kind(mime_type)   -> ContainerKind
  extension_for(mime_type)            -> str
  decode_attachment(kind, content)    -> str
"""

import io
import logging
import zipfile
import zlib
from typing import BinaryIO, Union

from dmarc_intake.errors import (
    DecompressionError,
    EmptyArchiveError,
    UnsupportedFormatError,
)
from dmarc_intake.models.dmarc import ContainerKind

logger = logging.getLogger(__name__)

AttachmentContent = Union[bytes, bytearray, str, BinaryIO]

# MIME type -> known file extensions, first entry is the canonical one.
# Mirrors the mime-db entries for the types reporters actually send, plus a
# few common non-report types so they resolve to a real (unsupported)
# extension instead of a miss.
_MIME_EXTENSIONS: dict[str, list[str]] = {
    "application/gzip": ["gz"],
    "application/x-gzip": ["gz"],
    "application/x-gzip-compressed": ["gz"],
    "application/zip": ["zip"],
    "application/x-zip": ["zip"],
    "application/x-zip-compressed": ["zip"],
    "application/xml": ["xml", "xsl", "xsd", "rng"],
    "text/xml": ["xml"],
    "application/octet-stream": ["bin", "dms", "lrf", "mar", "so", "dist", "distz", "pkg", "bpk", "dump", "elc", "deploy", "exe", "dll", "deb", "dmg", "iso", "img", "msi", "msp", "msm", "buffer"],
    "application/pdf": ["pdf"],
    "text/plain": ["txt", "text", "conf", "def", "list", "log", "in", "ini"],
    "text/csv": ["csv"],
    "application/x-tar": ["tar"],
    "application/x-7z-compressed": ["7z"],
}

_EXTENSION_KINDS = {
    "gz": ContainerKind.GZIP,
    "zip": ContainerKind.ZIP,
    "xml": ContainerKind.XML,
}

# 32 + MAX_WBITS: accept both gzip and zlib headers
_INFLATE_WBITS = zlib.MAX_WBITS | 32


def extension_for(mime_type: str | None) -> str:
    """
    Return the canonical file extension for a MIME type, or "" if unknown.

    Parameters such as "; charset=utf-8" are ignored and matching is
    case-insensitive.

    Examples:
        "application/gzip"          -> "gz"
        "text/xml; charset=utf-8"   -> "xml"
        "application/x-unknown"     -> ""
    """
    if not mime_type:
        return ""
    key = mime_type.split(";", 1)[0].strip().lower()
    extensions = _MIME_EXTENSIONS.get(key)
    return extensions[0] if extensions else ""


def resolve_container_kind(mime_type: str | None) -> ContainerKind:
    """Map a declared content type to the container kind it implies."""
    return _EXTENSION_KINDS.get(extension_for(mime_type), ContainerKind.UNKNOWN)


def _as_bytes(content: AttachmentContent) -> bytes:
    """Materialize attachment content as bytes (str is UTF-8 encoded)."""
    if isinstance(content, str):
        return content.encode("utf-8")
    if isinstance(content, (bytes, bytearray, memoryview)):
        return bytes(content)
    return content.read()


def _utf8(data: bytes, what: str) -> str:
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise DecompressionError(f"{what} is not valid UTF-8 text: {e}")


def _gunzip(content: AttachmentContent) -> str:
    data = _as_bytes(content)
    try:
        inflated = zlib.decompress(data, _INFLATE_WBITS)
    except zlib.error as e:
        raise DecompressionError(f"Could not inflate gzip payload: {e}")
    return _utf8(inflated, "gzip payload")


def _unzip_first_entry(content: AttachmentContent) -> str:
    """
    Read the first entry of a zip archive as text.

    Reporters put a single XML file in the archive, so only the first entry
    (in archive order) is read; any further entries are ignored.
    """
    if isinstance(content, (bytes, bytearray, memoryview, str)):
        source = io.BytesIO(_as_bytes(content))
    else:
        source = content

    try:
        with zipfile.ZipFile(source) as archive:
            entries = archive.infolist()
            if not entries:
                raise EmptyArchiveError("no entries in zip")
            for index, entry in enumerate(entries):
                logger.debug("zip entry %d: %s (%d bytes)", index, entry.filename, entry.file_size)
            data = archive.read(entries[0])
    except zipfile.BadZipFile as e:
        raise DecompressionError(f"Could not open zip archive: {e}")
    except (zlib.error, NotImplementedError, EOFError) as e:
        raise DecompressionError(f"Could not read zip entry: {e}")

    return _utf8(data, "zip entry")


def _read_xml(content: AttachmentContent) -> str:
    if isinstance(content, str):
        return content
    return _utf8(_as_bytes(content), "XML attachment")


def decode_attachment(
    kind: ContainerKind,
    content: AttachmentContent,
    extension: str = "",
) -> str:
    """
    Produce the report XML text from an attachment payload.

    Args:
        kind:      Container kind from resolve_container_kind().
        content:   Attachment payload: bytes, text, or a seekable binary stream.
        extension: Detected extension, reported when the kind is unsupported.

    Returns:
        The XML document as text.

    Raises:
        UnsupportedFormatError: kind is UNKNOWN.
        DecompressionError:     corrupt gzip/zip payload.
        EmptyArchiveError:      zip archive without entries.
    """
    if kind == ContainerKind.GZIP:
        xml = _gunzip(content)
    elif kind == ContainerKind.ZIP:
        xml = _unzip_first_entry(content)
    elif kind == ContainerKind.XML:
        xml = _read_xml(content)
    else:
        raise UnsupportedFormatError(extension)

    logger.info("Decoded %s attachment: %d characters of XML", kind.value, len(xml))
    return xml
