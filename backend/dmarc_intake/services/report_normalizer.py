"""
Normalization service for DMARC aggregate reports.

Converts the parsed <feedback> document into DmarcRecordRow objects: one flat,
typed row per <record>, with the report metadata and published policy copied
onto each row.

The tree comes from xmltodict, so a tag that appears once is a mapping and a
repeated tag is a list; empty elements come through as None. Field lookups go
through _child(), which returns None as soon as any level is missing.
"""

import json
import logging
import re
from typing import Any, Optional

import xmltodict
from xml.parsers.expat import ExpatError

from dmarc_intake.errors import InvalidReportStructureError, ReportXmlError
from dmarc_intake.models.dmarc import (
    AlignmentType,
    DispositionType,
    DmarcRecordRow,
    DMARCResultType,
    PolicyOverrideType,
)

logger = logging.getLogger(__name__)

_LEADING_INT_RE = re.compile(r"^\s*([+-]?[0-9]+)")


# ---------------------------------------------------------------------------
# XML tree parsing
# ---------------------------------------------------------------------------

def parse_report_xml(xml_text: str) -> dict:
    """
    Parse report XML into a nested dict with xmltodict.

    Raises:
        ReportXmlError: the text is not well-formed XML.
    """
    if xml_text.startswith("\ufeff"):
        xml_text = xml_text[1:]
    try:
        return xmltodict.parse(xml_text)
    except ExpatError as e:
        raise ReportXmlError(f"Could not parse report XML: {e}")


# ---------------------------------------------------------------------------
# Tree access helpers
# ---------------------------------------------------------------------------

def _child(node: Any, *path: str) -> Optional[Any]:
    """
    Walk path through nested mappings.

    Returns None when any level is missing or is not a mapping, e.g.
    _child(record, "row", "policy_evaluated", "reason", "type").
    """
    current = node
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
        if current is None:
            return None
    return current


def _as_list(value: Any) -> list:
    """Wrap a single element in a list; None becomes []."""
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def parse_text(value: Any) -> str:
    """
    Normalise a leaf value to a string.

    Examples:
        "google.com"                         -> "google.com"
        None                                 -> ""
        {"@lang": "en", "#text": "x"}        -> "x"
        {"nested": "element"}                -> ""
    """
    if value is None:
        return ""
    if isinstance(value, dict):
        return parse_text(value.get("#text"))
    if isinstance(value, (str, int, float)):
        return str(value)
    return ""


def parse_int(value: Any) -> int:
    """
    Parse the leading base-10 integer of a leaf value.

    Examples:
        "100"         -> 100
        " 42 "        -> 42
        "1609459200x" -> 1609459200
        "abc"         -> 0
        None          -> 0
    """
    text = parse_text(value)
    match = _LEADING_INT_RE.match(text)
    if not match:
        return 0
    return int(match.group(1))


def normalize_report_id(value: Any) -> str:
    """
    Replace the first hyphen of a report id with an underscore.

    Examples:
        "2021-01-rep" -> "2021_01-rep"
        None          -> ""
    """
    return parse_text(value).replace("-", "_", 1)


def serialize_errors(value: Any) -> str:
    """
    Serialise report_metadata <error> elements to a JSON array string.

    Returns "" when the report has no <error> element.
    """
    if value is None:
        return ""
    return json.dumps([parse_text(item) for item in _as_list(value)])


# ---------------------------------------------------------------------------
# Report normalisation
# ---------------------------------------------------------------------------

def _report_fields(report_metadata: Any, policy_published: Any) -> dict[str, Any]:
    """Row fields shared by every record of the report."""
    return {
        "report_metadata_report_id": normalize_report_id(_child(report_metadata, "report_id")),
        "report_metadata_org_name": parse_text(_child(report_metadata, "org_name")),
        "report_metadata_date_range_begin": parse_int(_child(report_metadata, "date_range", "begin")),
        "report_metadata_date_range_end": parse_int(_child(report_metadata, "date_range", "end")),
        "report_metadata_error": serialize_errors(_child(report_metadata, "error")),
        "policy_published_domain": parse_text(_child(policy_published, "domain")),
        "policy_published_adkim": AlignmentType.from_keyword(_child(policy_published, "adkim")),
        "policy_published_aspf": AlignmentType.from_keyword(_child(policy_published, "aspf")),
        "policy_published_p": DispositionType.from_keyword(_child(policy_published, "p")),
        "policy_published_sp": DispositionType.from_keyword(_child(policy_published, "sp")),
        "policy_published_pct": parse_int(_child(policy_published, "pct")),
    }


def normalize_record(record: Any, report_fields: dict[str, Any]) -> DmarcRecordRow:
    """
    Build the row for a single <record>.

    Missing or malformed fields fall back to their defaults; this never raises
    for a bad record.
    """
    evaluated = _child(record, "row", "policy_evaluated")
    return DmarcRecordRow(
        **report_fields,
        record_row_source_ip=parse_text(_child(record, "row", "source_ip")),
        record_row_count=parse_int(_child(record, "row", "count")),
        record_row_policy_evaluated_dkim=DMARCResultType.from_keyword(_child(evaluated, "dkim")),
        record_row_policy_evaluated_spf=DMARCResultType.from_keyword(_child(evaluated, "spf")),
        record_row_policy_evaluated_disposition=DispositionType.from_keyword(
            _child(evaluated, "disposition")
        ),
        record_row_policy_evaluated_reason_type=PolicyOverrideType.from_keyword(
            _child(evaluated, "reason", "type")
        ),
        record_identifiers_envelope_to=parse_text(_child(record, "identifiers", "envelope_to")),
        record_identifiers_header_from=parse_text(_child(record, "identifiers", "header_from")),
    )


def normalize_report(tree: dict) -> list[DmarcRecordRow]:
    """
    Convert a parsed aggregate report into DmarcRecordRow objects.

    This is the main entry point. Rows are returned in document order, one per
    <record> element, including records whose fields all fell back to
    defaults.

    Args:
        tree: Output of parse_report_xml().

    Returns:
        List of DmarcRecordRow.

    Raises:
        InvalidReportStructureError: feedback, report_metadata,
            policy_published or record is missing.
    """
    feedback = _child(tree, "feedback")
    report_metadata = _child(feedback, "report_metadata")
    policy_published = _child(feedback, "policy_published")
    has_records = isinstance(feedback, dict) and "record" in feedback

    if feedback is None or report_metadata is None or policy_published is None or not has_records:
        missing = [
            name
            for name, present in (
                ("feedback", feedback is not None),
                ("report_metadata", report_metadata is not None),
                ("policy_published", policy_published is not None),
                ("record", has_records),
            )
            if not present
        ]
        logger.error("Invalid aggregate report structure, missing: %s", ", ".join(missing))
        raise InvalidReportStructureError(f"invalid xml: missing {', '.join(missing)}")

    # A lone <record> parses to a mapping, an empty <record/> to None.
    records = feedback["record"]
    if not isinstance(records, list):
        records = [records]

    report_fields = _report_fields(report_metadata, policy_published)
    logger.info(
        "Normalizing report %r from %r for %r: %d record(s)",
        report_fields["report_metadata_report_id"],
        report_fields["report_metadata_org_name"],
        report_fields["policy_published_domain"],
        len(records),
    )

    return [normalize_record(record, report_fields) for record in records]
