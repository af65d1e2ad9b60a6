"""Unit tests for ledger/upsert.py -- one file's records into the ledger.

Covers:
- created/updated counting for measurements and products
- idempotent re-import (no new rows, all updated)
- the three skippable-record rules and the resulting "partial" status
- whole-file rollback on ResolutionError
"""

from datetime import datetime, timezone

import pytest

from core.errors import ResolutionError
from core.models import ProductDetection
from ledger.eligibility import EligibilityCriteria
from ledger.reference import ReferenceData
from ledger.upsert import import_records


def _import(store, records, reference):
    return import_records(store, records, reference, source_file="export.csv", hostname="i4")


class TestCounting:
    def test_first_import_creates_measurement_and_products(self, store, make_record, reference):
        record = make_record(products={"IS_ONP_PRD": "present", "WAS_ND_NPR": "absent"})
        result = _import(store, [record], reference)
        assert (result.created, result.updated, result.skipped) == (3, 0, 0)
        assert result.status == "success"
        assert store.row_counts()["measurements"] == 1
        assert store.row_counts()["detected_products"] == 2

    def test_reimport_updates_and_creates_nothing(self, store, make_record, reference):
        records = [make_record(products={"IS_ONP_PRD": "present"})]
        _import(store, records, reference)
        counts = store.row_counts()

        result = _import(store, records, reference)
        assert (result.created, result.updated) == (0, 2)
        assert store.row_counts() == counts

    def test_reimport_refreshes_content(self, store, make_record, reference):
        _import(store, [make_record(os_version="5.14")], reference)
        _import(store, [make_record(os_version="5.15")], reference)
        [measurement] = store.list_measurements()
        assert measurement.os_version == "5.15"

    def test_measurement_row_carries_derived_fields(self, store, make_record):
        reference = ReferenceData(
            criteria=EligibilityCriteria.model_validate({"virtualization": [{"virt_type": "kvm", "eligible": True}]})
        )
        _import(store, [make_record(cpu_count=8, partition_cpus="0-3")], reference)
        [m] = store.list_measurements()
        assert m.considered_cpus == 4
        assert m.virt_eligible == "true"
        assert m.processor_eligible == "unknown"
        assert (m.physical_host_id, m.host_id_method, m.host_id_confidence) == ("PH-001", "dmidecode", "high")
        assert m.source_file == "export.csv"
        assert m.imported_at.endswith("Z")

    def test_landscape_node_created_with_short_hostname(self, store, make_record, reference):
        _import(store, [make_record(main_fqdn="db01.prod.example.com")], reference)
        node = store.get_landscape_node("db01.prod.example.com")
        assert node.hostname == "db01"
        assert node.mode == "PROD"

    def test_vms_on_one_host_keep_the_max(self, store, make_record, reference):
        records = [
            make_record(main_fqdn="vm1.local", host_physical_cpus=16),
            make_record(main_fqdn="vm2.local", host_physical_cpus=8),
        ]
        result = _import(store, records, reference)
        assert result.created == 2
        assert store.get_physical_host("PH-001").max_physical_cpus == 16

    def test_products_with_full_detail_are_stored(self, store, make_record, reference):
        detail = ProductDetection("IS_ONP_PRD", "present", "running", 2, "installed", 1)
        record = make_record(
            detection_timestamp=datetime(2025, 2, 1, 8, 30, tzinfo=timezone.utc),
            products={"IS_ONP_PRD": detail},
        )
        _import(store, [record], reference)
        [product] = store.list_detected_products()
        assert product.detection_timestamp == "2025-02-01T08:30:00Z"
        assert (product.running_status, product.running_count) == ("running", 2)
        assert (product.install_status, product.install_count) == ("installed", 1)


class TestSkippableRecords:
    def test_benign_duplicate_is_skipped(self, store, make_record, reference):
        records = [make_record(line=2), make_record(line=3)]
        result = _import(store, records, reference)
        assert (result.created, result.skipped) == (1, 1)
        assert result.status == "partial"
        assert result.skip_reasons == ["line 3: duplicate of line 2 for app01.example.com"]
        assert store.row_counts()["measurements"] == 1

    def test_repeat_with_new_products_is_merged(self, store, make_record, reference):
        records = [
            make_record(products={"IS_ONP_PRD": "present"}),
            make_record(products={"IS_ONP_PRD": "present", "WAS_ND_NPR": "absent"}),
        ]
        result = _import(store, records, reference)
        assert (result.created, result.skipped) == (3, 0)
        assert result.status == "success"
        assert {p.product_code for p in store.list_detected_products()} == {"IS_ONP_PRD", "WAS_ND_NPR"}

    def test_contradicting_repeat_rolls_back_file(self, store, make_record, reference):
        records = [make_record(main_fqdn="other.local"), make_record(cpu_count=4), make_record(cpu_count=8, line=9)]
        with pytest.raises(ResolutionError, match="line 9: contradicts"):
            _import(store, records, reference)
        assert store.row_counts()["measurements"] == 0
        assert store.list_physical_hosts() == []

    def test_contradicting_product_rolls_back_file(self, store, make_record, reference):
        records = [
            make_record(products={"IS_ONP_PRD": "present"}),
            make_record(products={"IS_ONP_PRD": "absent"}),
        ]
        with pytest.raises(ResolutionError, match="product IS_ONP_PRD contradicts"):
            _import(store, records, reference)
        assert store.row_counts()["detected_products"] == 0

    def test_detection_error_record_is_skipped(self, store, make_record, reference):
        records = [
            make_record(),
            make_record(
                main_fqdn="broken.local",
                detection_result="ERROR",
                error_message="dmidecode: permission denied",
            ),
        ]
        result = _import(store, records, reference)
        assert (result.created, result.skipped) == (1, 1)
        assert "permission denied" in result.skip_reasons[0]
        assert store.get_landscape_node("broken.local") is None

    def test_unknown_product_code_is_skipped_when_reference_loaded(self, store, make_record):
        reference = ReferenceData(product_codes=frozenset({"IS_ONP_PRD"}))
        record = make_record(products={"IS_ONP_PRD": "present", "ZZ_NEW_PRD": "present"})
        result = _import(store, [record], reference)
        assert (result.created, result.skipped) == (2, 1)
        assert result.status == "partial"
        assert [p.product_code for p in store.list_detected_products()] == ["IS_ONP_PRD"]

    def test_product_codes_not_enforced_without_reference(self, store, make_record, reference):
        result = _import(store, [make_record(products={"ZZ_NEW_PRD": "present"})], reference)
        assert result.skipped == 0


class TestRollback:
    def test_missing_fqdn_rolls_back_earlier_records(self, store, make_record, reference):
        records = [make_record(main_fqdn="good.local"), make_record(main_fqdn="", line=3)]
        with pytest.raises(ResolutionError, match="missing main_fqdn"):
            _import(store, records, reference)
        assert store.row_counts() == {
            "landscape_nodes": 0,
            "physical_hosts": 0,
            "measurements": 0,
            "detected_products": 0,
            "import_sessions": 0,
        }

    def test_missing_cpu_count_rolls_back(self, store, make_record, reference):
        records = [make_record(), make_record(main_fqdn="kv.local", cpu_count=None)]
        with pytest.raises(ResolutionError, match="missing cpu_count"):
            _import(store, records, reference)
        assert store.list_measurements() == []

