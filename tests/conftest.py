"""
tests/conftest.py -- Shared fixtures for corecount tests.

This module provides:
  - store:         in-memory LedgerStore for store/resolver/upsert unit tests
  - file_store:    file-backed SQLite LedgerStore under tmp_path for pipeline tests
  - folders:       IntakeFolders under tmp_path (only input/ exists up front)
  - reference:     empty ReferenceData (no rules, no product codes)
  - make_record:   factory for InspectionRecord with sensible defaults
  - write_export:  factory that drops a CSV export into the input folder

Plain sqlite:///:memory: is fine here: nothing runs in worker threads, and
SQLAlchemy keeps one connection per thread for in-memory SQLite, so every
transaction sees the same database.
"""

from collections.abc import Generator
from datetime import datetime, timezone

import pytest

from core.config import IntakeFolders
from core.models import InspectionRecord, ProductDetection
from ledger.reference import ReferenceData
from ledger.store import LedgerStore


@pytest.fixture
def store() -> Generator[LedgerStore, None, None]:
    s = LedgerStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def file_store(tmp_path) -> Generator[LedgerStore, None, None]:
    s = LedgerStore(f"sqlite:///{tmp_path / 'ledger' / 'corecount.db'}")
    yield s
    s.close()


@pytest.fixture
def folders(tmp_path) -> IntakeFolders:
    f = IntakeFolders(
        input_dir=tmp_path / "input",
        processed_dir=tmp_path / "processed",
        discards_dir=tmp_path / "discards",
    )
    f.input_dir.mkdir()
    return f


@pytest.fixture
def reference() -> ReferenceData:
    return ReferenceData()


@pytest.fixture
def make_record():
    """Return a factory: make_record(main_fqdn=..., products={"IS_ONP_PRD": "present"}, ...)."""

    def _make(**overrides) -> InspectionRecord:
        products = overrides.pop("products", {})
        values = {
            "main_fqdn": "app01.example.com",
            "detection_timestamp": datetime(2025, 1, 15, 10, 0, 0, tzinfo=timezone.utc),
            "os_name": "Linux",
            "os_version": "5.14",
            "cpu_count": 4,
            "is_virtualized": "yes",
            "virt_type": "kvm",
            "processor_vendor": "GenuineIntel",
            "processor_brand": "Intel Xeon Gold 6248",
            "host_physical_cpus": 48,
            "partition_cpus": "",
            "physical_host_id": "PH-001",
            "host_id_method": "dmidecode",
            "host_id_confidence": "high",
        }
        values.update(overrides)
        record = InspectionRecord(**values)
        record.products = {
            code: (status if isinstance(status, ProductDetection) else ProductDetection(code, status))
            for code, status in products.items()
        }
        return record

    return _make


@pytest.fixture
def write_export(folders):
    """Return a factory: write_export(name, text) writes input/<name> and returns its path."""

    def _write(name: str, text: str):
        path = folders.input_dir / name
        path.write_text(text, encoding="utf-8")
        return path

    return _write
