"""
Unit tests for the persistence coordinator.

The store is a MagicMock; no Supabase calls are made.
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from dmarc_intake.errors import AllInsertsFailedError
from dmarc_intake.models.dmarc import DispositionType, DmarcRecordRow
from dmarc_intake.services.persistence import persist_rows, stamp_rows


def _rows(count: int) -> list[DmarcRecordRow]:
    return [
        DmarcRecordRow(
            report_metadata_report_id="2021_01-rep",
            policy_published_domain="example.com",
            policy_published_p=DispositionType.reject,
            record_row_source_ip=f"192.0.2.{i}",
            record_row_count=i + 1,
        )
        for i in range(count)
    ]


class TestStampRows:

    def test_all_rows_share_one_timestamp(self):
        now = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
        records = stamp_rows(_rows(3), attachment_url="dmarc-reports/2024/6/r.xml.gz", now=now)

        assert len(records) == 3
        assert {r.created_at for r in records} == {now.isoformat()}
        assert all(r.updated_at == r.created_at for r in records)
        assert all(r.attachment_url == "dmarc-reports/2024/6/r.xml.gz" for r in records)

    def test_row_fields_are_preserved(self):
        records = stamp_rows(_rows(1))
        assert records[0].record_row_source_ip == "192.0.2.0"
        assert records[0].attachment_url is None


class TestPersistRows:

    def test_zero_rows_does_not_touch_store(self):
        store = MagicMock()

        outcome = persist_rows([], store)

        assert outcome.succeeded_count == 0
        assert outcome.failed_count == 0
        store.insert_batch.assert_not_called()
        store.insert_one.assert_not_called()

    def test_batch_success(self):
        store = MagicMock()
        store.insert_batch.return_value = ["1", "2", "3"]

        outcome = persist_rows(_rows(3), store, attachment_url="path/r.xml")

        assert outcome.succeeded_count == 3
        assert outcome.failed_count == 0
        assert outcome.inserted_ids == ["1", "2", "3"]
        assert outcome.fallback_used is False
        store.insert_one.assert_not_called()

        payloads = store.insert_batch.call_args[0][0]
        assert len(payloads) == 3
        assert payloads[0]["record_row_source_ip"] == "192.0.2.0"
        assert payloads[0]["policy_published_p"] == 2
        assert payloads[0]["attachment_url"] == "path/r.xml"
        assert "created_at" in payloads[0] and "updated_at" in payloads[0]

    def test_batch_failure_falls_back_to_individual_inserts(self):
        store = MagicMock()
        store.insert_batch.side_effect = Exception("payload too large")
        store.insert_one.side_effect = ["a", "b"]

        outcome = persist_rows(_rows(2), store)

        assert outcome.succeeded_count == 2
        assert outcome.failed_count == 0
        assert outcome.fallback_used is True
        assert outcome.inserted_ids == ["a", "b"]
        assert store.insert_one.call_count == 2

    def test_partial_failure_is_reported_not_raised(self):
        store = MagicMock()
        store.insert_batch.side_effect = Exception("constraint violation")
        store.insert_one.side_effect = ["a", Exception("bad row"), "c"]

        outcome = persist_rows(_rows(3), store)

        assert outcome.succeeded_count == 2
        assert outcome.failed_count == 1
        assert outcome.inserted_ids == ["a", "c"]
        failed = [a for a in outcome.attempts if not a.succeeded]
        assert len(failed) == 1
        assert failed[0].index == 1
        assert "bad row" in failed[0].error

    def test_individual_inserts_run_in_document_order(self):
        store = MagicMock()
        store.insert_batch.side_effect = Exception("batch rejected")
        store.insert_one.return_value = "id"

        persist_rows(_rows(3), store)

        ips = [c[0][0]["record_row_source_ip"] for c in store.insert_one.call_args_list]
        assert ips == ["192.0.2.0", "192.0.2.1", "192.0.2.2"]

    def test_all_inserts_failing_raises(self):
        store = MagicMock()
        store.insert_batch.side_effect = Exception("database down")
        store.insert_one.side_effect = Exception("database down")

        with pytest.raises(AllInsertsFailedError) as exc_info:
            persist_rows(_rows(2), store)

        assert exc_info.value.error_code == "all_inserts_failed"
        assert len(exc_info.value.attempts) == 2
        assert not any(a.succeeded for a in exc_info.value.attempts)
