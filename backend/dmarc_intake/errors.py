"""
Domain errors for the DMARC ingest pipeline.

Every error carries a machine-readable error_code that the webhook router
reports back as the "reason" for an unprocessed email.
"""


class DmarcIngestError(Exception):
    """Base class for all fatal ingest errors."""
    error_code = "ingest_failed"

    def __init__(self, message: str, error_code: str | None = None):
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code


class UnsupportedFormatError(DmarcIngestError):
    """Raised when the attachment MIME type maps to no supported container."""
    error_code = "unsupported_format"

    def __init__(self, extension: str):
        super().__init__(f"unknown extension: {extension!r}")
        self.extension = extension


class DecompressionError(DmarcIngestError):
    """Raised when a gzip/zip payload is corrupt or not UTF-8 text."""
    error_code = "decompression_failed"


class EmptyArchiveError(DmarcIngestError):
    """Raised when a zip archive has no entries."""
    error_code = "empty_archive"


class ReportXmlError(DmarcIngestError):
    """Raised when the decoded attachment is not well-formed XML."""
    error_code = "invalid_xml"


class InvalidReportStructureError(DmarcIngestError):
    """Raised when feedback / report_metadata / policy_published / record is missing."""
    error_code = "invalid_report_structure"


class AllInsertsFailedError(DmarcIngestError):
    """Raised when the batch insert and every individual insert failed."""
    error_code = "all_inserts_failed"

    def __init__(self, message: str, attempts: list | None = None):
        super().__init__(message)
        self.attempts = attempts or []


class NoAttachmentError(DmarcIngestError):
    """Raised when an inbound email carries no attachment to process."""
    error_code = "no_attachments"
