"""
Persistence coordinator for normalized DMARC rows.

Writes a report's rows with one batch insert. When the batch is rejected,
rows are retried one at a time, in order, so a single bad row cannot keep the
rest of the report out of the database.

Public API:
  stamp_rows(rows, attachment_url, now)   -> list[DmarcDatabaseRecord]
  persist_rows(rows, store, attachment_url) -> PersistenceOutcome
"""

import logging
from datetime import datetime, timezone
from typing import Optional, Sequence

from dmarc_intake.errors import AllInsertsFailedError
from dmarc_intake.models.dmarc import (
    DmarcDatabaseRecord,
    DmarcRecordRow,
    InsertAttempt,
    PersistenceOutcome,
)
from dmarc_intake.services.dmarc_store import DmarcStore

logger = logging.getLogger(__name__)


def stamp_rows(
    rows: Sequence[DmarcRecordRow],
    attachment_url: Optional[str] = None,
    now: Optional[datetime] = None,
) -> list[DmarcDatabaseRecord]:
    """
    Attach insertion metadata to every row.

    All rows of one call share the same created_at/updated_at instant.
    """
    now_iso = (now or datetime.now(timezone.utc)).isoformat()
    return [
        DmarcDatabaseRecord(
            **row.model_dump(),
            created_at=now_iso,
            updated_at=now_iso,
            attachment_url=attachment_url,
        )
        for row in rows
    ]


def _insert_individually(
    payloads: list[dict],
    store: DmarcStore,
) -> list[InsertAttempt]:
    attempts: list[InsertAttempt] = []
    for index, payload in enumerate(payloads):
        try:
            record_id = store.insert_one(payload)
        except Exception as e:
            logger.warning(
                "Insert of row %d/%d (source_ip=%s) failed: %s",
                index + 1,
                len(payloads),
                payload.get("record_row_source_ip"),
                e,
            )
            attempts.append(InsertAttempt(index=index, succeeded=False, error=str(e)))
            continue
        attempts.append(InsertAttempt(index=index, succeeded=True, record_id=record_id))
    return attempts


def persist_rows(
    rows: Sequence[DmarcRecordRow],
    store: DmarcStore,
    attachment_url: Optional[str] = None,
) -> PersistenceOutcome:
    """
    Persist report rows: batch insert first, then row-by-row on batch failure.

    Args:
        rows:           Rows from normalize_report(), in document order.
        store:          Storage/database capability used for the inserts.
        attachment_url: Storage path of the original attachment, if uploaded.

    Returns:
        PersistenceOutcome. failed_count > 0 signals partial success.

    Raises:
        AllInsertsFailedError: the batch and every individual insert failed.
    """
    if not rows:
        logger.info("No rows to persist")
        return PersistenceOutcome()

    records = stamp_rows(rows, attachment_url=attachment_url)
    payloads = [record.model_dump(mode="json") for record in records]

    try:
        inserted_ids = store.insert_batch(payloads)
    except Exception as e:
        logger.warning(
            "Batch insert of %d rows failed, falling back to individual inserts: %s",
            len(payloads),
            e,
        )
    else:
        logger.info("Batch inserted %d rows", len(payloads))
        return PersistenceOutcome(
            succeeded_count=len(payloads),
            failed_count=0,
            inserted_ids=list(inserted_ids),
        )

    attempts = _insert_individually(payloads, store)
    succeeded = [a for a in attempts if a.succeeded]

    if not succeeded:
        logger.error("All %d individual inserts failed", len(payloads))
        raise AllInsertsFailedError(
            f"Failed to insert any of {len(payloads)} rows",
            attempts=attempts,
        )

    outcome = PersistenceOutcome(
        succeeded_count=len(succeeded),
        failed_count=len(attempts) - len(succeeded),
        inserted_ids=[a.record_id for a in succeeded if a.record_id is not None],
        fallback_used=True,
        attempts=attempts,
    )
    if outcome.failed_count:
        logger.warning(
            "Partially persisted report: %d inserted, %d failed",
            outcome.succeeded_count,
            outcome.failed_count,
        )
    else:
        logger.info("Individually inserted all %d rows", outcome.succeeded_count)
    return outcome
