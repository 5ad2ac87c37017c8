"""
Pydantic models for DMARC aggregate reports.

Models:
  ContainerKind       : attachment container format (gz / zip / xml)
  AlignmentType       : adkim / aspf alignment mode
  DMARCResultType     : policy_evaluated dkim / spf result
  DispositionType     : published policy and evaluated disposition
  PolicyOverrideType  : policy_evaluated reason type
  DmarcRecordRow      : one flattened <record>, with report/policy fields copied in
  DmarcDatabaseRecord : DmarcRecordRow stamped for insertion
  InsertAttempt       : per-row result of the individual-insert fallback
  PersistenceOutcome  : summary of one persist_rows() call
  IngestResult        : response body for a processed inbound email
  DmarcRecordResponse : stored row as returned by GET /records
"""

from enum import Enum, IntEnum
from typing import Any, Optional, Union
from pydantic import BaseModel, ConfigDict, Field


class ContainerKind(str, Enum):
    GZIP = "gz"
    ZIP = "zip"
    XML = "xml"
    UNKNOWN = "unknown"


class _KeywordEnum(IntEnum):
    """
    Integer enum whose members are looked up by their report keyword.

    Codes are positional and the first member (code 0) is the default for
    any missing or unrecognized keyword.
    """

    @classmethod
    def _keywords(cls) -> dict[str, "_KeywordEnum"]:
        return {member.name: member for member in cls}

    @classmethod
    def from_keyword(cls, value: Any) -> "_KeywordEnum":
        """
        Map a keyword from the report XML to a member.

        Keywords must match exactly; no case folding or trimming.

        Examples (DispositionType):
            "reject"        -> DispositionType.reject
            "Reject"        -> DispositionType.none
            "unknownpolicy" -> DispositionType.none
            None            -> DispositionType.none
        """
        default = next(iter(cls))
        if not isinstance(value, str):
            return default
        return cls._keywords().get(value, default)


class AlignmentType(_KeywordEnum):
    # Reports carry the single-letter tag values from the DNS record.
    r = 0
    s = 1

    @classmethod
    def _keywords(cls) -> dict[str, "_KeywordEnum"]:
        return {"r": cls.r, "s": cls.s, "relaxed": cls.r, "strict": cls.s}


class DMARCResultType(_KeywordEnum):
    fail = 0
    pass_ = 1

    @classmethod
    def _keywords(cls) -> dict[str, "_KeywordEnum"]:
        return {"fail": cls.fail, "pass": cls.pass_}


class DispositionType(_KeywordEnum):
    none = 0
    quarantine = 1
    reject = 2


class PolicyOverrideType(_KeywordEnum):
    other = 0
    forwarded = 1
    sampled_out = 2
    trusted_forwarder = 3
    mailing_list = 4
    local_policy = 5


class DmarcRecordRow(BaseModel):
    """
    One <record> of an aggregate report, flattened.

    Report metadata and published policy are denormalized onto every row so
    each row can be stored and queried on its own.
    """
    model_config = ConfigDict(frozen=True)

    report_metadata_report_id: str = ""
    report_metadata_org_name: str = ""
    report_metadata_date_range_begin: int = 0
    report_metadata_date_range_end: int = 0
    report_metadata_error: str = ""  # JSON array string, or "" when absent

    policy_published_domain: str = ""
    policy_published_adkim: AlignmentType = AlignmentType.r
    policy_published_aspf: AlignmentType = AlignmentType.r
    policy_published_p: DispositionType = DispositionType.none
    policy_published_sp: DispositionType = DispositionType.none
    policy_published_pct: int = 0

    record_row_source_ip: str = ""
    record_row_count: int = 0
    record_row_policy_evaluated_dkim: DMARCResultType = DMARCResultType.fail
    record_row_policy_evaluated_spf: DMARCResultType = DMARCResultType.fail
    record_row_policy_evaluated_disposition: DispositionType = DispositionType.none
    record_row_policy_evaluated_reason_type: PolicyOverrideType = PolicyOverrideType.other
    record_identifiers_envelope_to: str = ""
    record_identifiers_header_from: str = ""


class DmarcDatabaseRecord(DmarcRecordRow):
    """A DmarcRecordRow as written to the dmarc_reports table."""
    created_at: str
    updated_at: str
    attachment_url: Optional[str] = None  # storage path of the original attachment


class InsertAttempt(BaseModel):
    """Result of inserting a single row during the fallback tier."""
    index: int
    succeeded: bool
    record_id: Optional[str] = None
    error: Optional[str] = None


class PersistenceOutcome(BaseModel):
    """
    Summary of one persist_rows() call.

    failed_count > 0 means degraded success: some rows were stored, some were
    not. Total failure is raised as AllInsertsFailedError instead.
    """
    succeeded_count: int = 0
    failed_count: int = 0
    inserted_ids: list[str] = Field(default_factory=list)
    fallback_used: bool = False
    attempts: list[InsertAttempt] = Field(default_factory=list)


class IngestResult(BaseModel):
    """Response body for a successfully processed inbound DMARC email."""
    received: bool = True
    processed: bool = True
    attachment_filename: str
    attachment_path: Optional[str] = None
    report_id: str = ""
    org_name: str = ""
    domain: str = ""
    row_count: int = 0
    outcome: PersistenceOutcome


class DmarcRecordResponse(DmarcDatabaseRecord):
    """Stored row plus its table id and a short-lived attachment download link."""
    model_config = ConfigDict(frozen=True, extra="ignore")

    id: Optional[Union[int, str]] = None
    attachment_download_url: Optional[str] = None
