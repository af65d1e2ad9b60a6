"""Integration tests for ledger/intake.py -- the folder-based import workflow.

Every test runs the real pipeline against a file-backed SQLite ledger and
real input/processed/discards folders under tmp_path. Nothing is mocked
except, in one test, the rename that fails across filesystems.

Covers:
- idempotent re-import and the i4.local / PH-001 scenario
- quarantine of malformed files with a failed session
- on-demand folder creation
- every input file ends in exactly one of processed/ or discards/
- the FileIntake state machine and relocate()
"""

import errno
import os
import warnings
from pathlib import Path
from unittest.mock import patch

import pytest

import ledger.intake
from core.config import IntakeFolders
from ledger.intake import (
    FileIntake,
    FileState,
    IntakeStateError,
    discover_input_files,
    ensure_folders,
    relocate,
    run_import,
)
from ledger.reference import ReferenceData

HEADER = (
    "main_fqdn,detection_timestamp,os_name,os_version,cpu_count,is_virtualized,virt_type,"
    "processor_vendor,processor_brand,host_physical_cpus,partition_cpus,physical_host_id,"
    "host_id_method,host_id_confidence"
)
I4_ROW = "i4.local,2025-01-15T10:00:00Z,Linux,5.14,4,yes,kvm,GenuineIntel,Intel Xeon Gold 6248,48,0-3,PH-001,dmidecode,high"
I4_FILE = "iwdli_output_i4_20250115_100000.csv"


def _names(directory):
    return sorted(p.name for p in directory.iterdir()) if directory.exists() else []


# ---------------------------------------------------------------------------
# Acceptance scenarios
# ---------------------------------------------------------------------------


class TestScenario:
    def test_two_row_export_for_i4(self, file_store, folders, reference, write_export):
        """Two identical rows -> one measurement, considered_cpus 4, PH-001 ceiling 48."""
        write_export(I4_FILE, f"{HEADER}\n{I4_ROW}\n{I4_ROW}\n")
        summary = run_import(file_store, folders, reference)

        [measurement] = file_store.list_measurements()
        assert measurement.main_fqdn == "i4.local"
        assert measurement.considered_cpus == 4
        assert file_store.get_physical_host("PH-001").max_physical_cpus == 48

        [session] = file_store.list_import_sessions()
        assert session.hostname == "i4"
        assert session.status == "partial"
        assert (session.records_created, session.records_skipped) == (1, 1)
        assert summary.partial == 1
        assert _names(folders.processed_dir) == [I4_FILE]

    def test_reimport_keeps_counts_and_ceiling(self, file_store, folders, reference, write_export):
        write_export(I4_FILE, f"{HEADER}\n{I4_ROW}\n{I4_ROW}\n")
        run_import(file_store, folders, reference)
        counts = file_store.row_counts()

        os.replace(folders.processed_dir / I4_FILE, folders.input_dir / I4_FILE)
        run_import(file_store, folders, reference)

        after = file_store.row_counts()
        assert after["measurements"] == counts["measurements"] == 1
        assert after["detected_products"] == counts["detected_products"]
        assert after["physical_hosts"] == counts["physical_hosts"]
        assert file_store.get_physical_host("PH-001").max_physical_cpus == 48

        latest = file_store.list_import_sessions()[0]
        assert (latest.records_created, latest.records_updated) == (0, 1)

    def test_identical_file_imported_twice_is_all_updates(self, file_store, folders, reference, write_export):
        text = f"{HEADER},is_onp_prd_status\n{I4_ROW},present\n"
        write_export("a.csv", text)
        run_import(file_store, folders, reference)
        write_export("a.csv", text)
        run_import(file_store, folders, reference)

        second, first = file_store.list_import_sessions()
        assert (first.records_created, first.records_updated, first.status) == (2, 0, "success")
        assert (second.records_created, second.records_updated, second.status) == (0, 2, "success")
        assert file_store.row_counts()["detected_products"] == 1

    def test_vms_in_separate_files_deduplicate_host(self, file_store, folders, reference, write_export):
        vm1 = I4_ROW.replace("i4.local", "vm1.local").replace(",48,", ",16,")
        vm2 = I4_ROW.replace("i4.local", "vm2.local").replace(",48,", ",8,")
        write_export("a_vm1.csv", f"{HEADER}\n{vm1}\n")
        write_export("b_vm2.csv", f"{HEADER}\n{vm2}\n")
        run_import(file_store, folders, reference)

        [host] = file_store.list_physical_hosts()
        assert host.physical_host_id == "PH-001"
        assert host.max_physical_cpus == 16


class TestQuarantine:
    @pytest.mark.parametrize(
        "bad_row",
        [
            I4_ROW.rsplit(",", 1)[0],  # 13 columns
            I4_ROW.replace(",yes,", ",maybe,"),
        ],
    )
    def test_malformed_file_goes_to_discards(self, file_store, folders, reference, write_export, bad_row):
        write_export("bad.csv", f"{HEADER}\n{I4_ROW}\n{bad_row}\n")
        summary = run_import(file_store, folders, reference)

        assert _names(folders.discards_dir) == ["bad.csv"]
        assert _names(folders.processed_dir) == []
        assert _names(folders.input_dir) == []
        [session] = file_store.list_import_sessions()
        assert session.status == "failed"
        assert session.error_message.startswith("line 3:")
        assert file_store.row_counts()["measurements"] == 0
        assert summary.failed == 1

    @pytest.mark.parametrize(
        "bad_row",
        [
            I4_ROW.replace(",4,yes,", ",²,yes,"),
            I4_ROW.replace(",4,yes,", ",99999999999999999999,yes,"),
            I4_ROW.replace("2025-01-15T10:00:00Z", "0001-01-01T00:00:00+05:00"),
        ],
    )
    def test_out_of_range_values_are_quarantined_and_run_continues(
        self, file_store, folders, reference, write_export, bad_row
    ):
        write_export("a_bad.csv", f"{HEADER}\n{bad_row}\n")
        write_export("b_good.csv", f"{HEADER}\n{I4_ROW}\n")
        summary = run_import(file_store, folders, reference)

        assert [o.status for o in summary.outcomes] == ["failed", "success"]
        assert _names(folders.input_dir) == []
        assert _names(folders.discards_dir) == ["a_bad.csv"]
        assert _names(folders.processed_dir) == ["b_good.csv"]
        assert len(file_store.list_import_sessions()) == 2

    def test_rolled_back_file_goes_to_discards(self, file_store, folders, reference, write_export):
        contradiction = I4_ROW.replace(",Linux,", ",AIX,")
        write_export("conflict.csv", f"{HEADER}\n{I4_ROW}\n{contradiction}\n")
        run_import(file_store, folders, reference)

        assert _names(folders.discards_dir) == ["conflict.csv"]
        [session] = file_store.list_import_sessions()
        assert session.status == "failed"
        assert "contradicts" in session.error_message
        assert file_store.row_counts()["measurements"] == 0
        assert file_store.list_physical_hosts() == []

    def test_failure_does_not_stop_the_run(self, file_store, folders, reference, write_export):
        write_export("a_good.csv", f"{HEADER}\n{I4_ROW}\n")
        write_export("b_bad.csv", "not,a,valid\nexport,at,all\n")
        write_export("c_good.csv", f"{HEADER}\n{I4_ROW.replace('i4.local', 'i5.local')}\n")
        summary = run_import(file_store, folders, reference)

        assert [o.status for o in summary.outcomes] == ["success", "failed", "success"]
        assert _names(folders.processed_dir) == ["a_good.csv", "c_good.csv"]
        assert _names(folders.discards_dir) == ["b_bad.csv"]
        assert len(file_store.list_import_sessions()) == 3


class TestFolders:
    def test_missing_output_folders_are_created(self, file_store, folders, reference, write_export):
        write_export(I4_FILE, f"{HEADER}\n{I4_ROW}\n")
        assert not folders.processed_dir.exists()
        assert not folders.discards_dir.exists()
        run_import(file_store, folders, reference)
        assert folders.discards_dir.is_dir()
        assert _names(folders.processed_dir) == [I4_FILE]

    def test_everything_created_from_scratch(self, file_store, tmp_path, reference):
        folders = IntakeFolders(tmp_path / "in", tmp_path / "out" / "ok", tmp_path / "out" / "bad")
        summary = run_import(file_store, folders, reference)
        assert summary.outcomes == []
        assert all(p.is_dir() for p in (folders.input_dir, folders.processed_dir, folders.discards_dir))

    def test_ensure_folders_is_idempotent(self, folders):
        ensure_folders(folders)
        ensure_folders(folders)
        assert folders.processed_dir.is_dir()

    def test_same_folder_twice_is_rejected(self, tmp_path):
        with pytest.raises(ValueError, match="three different directories"):
            ensure_folders(IntakeFolders(tmp_path / "a", tmp_path / "a", tmp_path / "b"))

    def test_every_file_ends_in_exactly_one_place(self, file_store, folders, reference, write_export):
        write_export("1.csv", f"{HEADER}\n{I4_ROW}\n")
        write_export("2.csv", f"{HEADER}\n{I4_ROW}\n{I4_ROW}\n")
        write_export("3.csv", "garbage")
        write_export("4.csv", "")
        write_export("5.CSV", f"{HEADER}\n")
        run_import(file_store, folders, reference)

        processed = set(_names(folders.processed_dir))
        discarded = set(_names(folders.discards_dir))
        assert processed | discarded == {"1.csv", "2.csv", "3.csv", "4.csv", "5.CSV"}
        assert processed & discarded == set()
        assert _names(folders.input_dir) == []

    def test_empty_file_is_successful(self, file_store, folders, reference, write_export):
        write_export("empty.csv", f"{HEADER}\n")
        run_import(file_store, folders, reference)
        [session] = file_store.list_import_sessions()
        assert session.status == "success"
        assert _names(folders.processed_dir) == ["empty.csv"]

    def test_discovery_filters_and_orders(self, folders):
        for name in ("b.csv", "A.CSV", ".hidden.csv", "notes.txt", "a.csv"):
            (folders.input_dir / name).write_text("x")
        (folders.input_dir / "dir.csv").mkdir()
        assert [p.name for p in discover_input_files(folders.input_dir)] == ["A.CSV", "a.csv", "b.csv"]

    def test_non_csv_files_are_left_alone(self, file_store, folders, reference, write_export):
        write_export("README.txt", "hello")
        run_import(file_store, folders, reference)
        assert _names(folders.input_dir) == ["README.txt"]
        assert file_store.list_import_sessions() == []


# ---------------------------------------------------------------------------
# Relocation
# ---------------------------------------------------------------------------


class TestRelocate:
    def test_moves_file(self, tmp_path):
        source = tmp_path / "a.csv"
        source.write_text("data")
        target = relocate(source, tmp_path / "dest")
        assert target == tmp_path / "dest" / "a.csv"
        assert target.read_text() == "data"
        assert not source.exists()

    def test_replaces_existing_file(self, tmp_path):
        (tmp_path / "dest").mkdir()
        (tmp_path / "dest" / "a.csv").write_text("old")
        source = tmp_path / "a.csv"
        source.write_text("new")
        assert relocate(source, tmp_path / "dest").read_text() == "new"

    def test_replacing_existing_file_logs_a_warning(self, tmp_path, caplog):
        (tmp_path / "dest").mkdir()
        (tmp_path / "dest" / "a.csv").write_text("old")
        source = tmp_path / "a.csv"
        source.write_text("new")
        with caplog.at_level("WARNING", logger="corecount.intake"):
            relocate(source, tmp_path / "dest")
        assert "Replacing existing" in caplog.text

    def test_fresh_target_logs_nothing(self, tmp_path, caplog):
        source = tmp_path / "a.csv"
        source.write_text("data")
        with caplog.at_level("WARNING", logger="corecount.intake"):
            relocate(source, tmp_path / "dest")
        assert caplog.records == []

    def test_cross_filesystem_fallback(self, tmp_path):
        source = tmp_path / "a.csv"
        source.write_text("data")
        dest = tmp_path / "dest"
        real_replace = os.replace

        def fake_replace(src, dst):
            if str(src) == str(source):
                raise OSError(errno.EXDEV, "Invalid cross-device link")
            return real_replace(src, dst)

        with patch("ledger.intake.os.replace", side_effect=fake_replace):
            target = relocate(source, dest)

        assert target.read_text() == "data"
        assert not source.exists()
        assert _names(dest) == ["a.csv"]

    def test_other_os_errors_propagate(self, tmp_path):
        source = tmp_path / "a.csv"
        source.write_text("data")
        with patch("ledger.intake.os.replace", side_effect=PermissionError(errno.EACCES, "denied")):
            with pytest.raises(PermissionError):
                relocate(source, tmp_path / "dest")
        assert source.exists()


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


class TestFileIntake:
    def test_successful_walk(self, file_store, folders, write_export):
        intake = FileIntake(write_export(I4_FILE, f"{HEADER}\n{I4_ROW}\n"))
        states = [intake.state]
        intake.parse()
        states.append(intake.state)
        intake.commit(file_store, ReferenceData())
        states.append(intake.state)
        intake.relocate(folders)
        states.append(intake.state)
        intake.audit(file_store)
        states.append(intake.state)

        assert states == [
            FileState.DISCOVERED,
            FileState.PARSED,
            FileState.COMMITTED,
            FileState.RELOCATED,
            FileState.AUDITED,
        ]
        assert intake.destination == folders.processed_dir / I4_FILE
        assert intake.session.status == "success"

    def test_parse_failure_skips_commit(self, file_store, folders, write_export):
        intake = FileIntake(write_export("bad.csv", "a,b\n"))
        intake.run(file_store, folders, ReferenceData())
        assert intake.state == FileState.AUDITED
        assert intake.failed
        assert intake.destination.parent == folders.discards_dir
        assert intake.hostname == "bad"

    def test_commit_before_parse_is_illegal(self, file_store, write_export):
        intake = FileIntake(write_export("a.csv", f"{HEADER}\n"))
        with pytest.raises(IntakeStateError):
            intake.commit(file_store, ReferenceData())

    def test_audit_before_relocate_is_illegal(self, file_store, write_export):
        intake = FileIntake(write_export("a.csv", f"{HEADER}\n"))
        intake.parse()
        with pytest.raises(IntakeStateError):
            intake.audit(file_store)

    def test_parsed_file_cannot_be_relocated_uncommitted(self, folders, write_export):
        intake = FileIntake(write_export("a.csv", f"{HEADER}\n"))
        intake.parse()
        with pytest.raises(IntakeStateError):
            intake.relocate(folders)
        assert (folders.input_dir / "a.csv").exists()

    def test_steps_cannot_repeat(self, file_store, folders, write_export):
        intake = FileIntake(write_export("a.csv", f"{HEADER}\n"))
        intake.run(file_store, folders, ReferenceData())
        with pytest.raises(IntakeStateError):
            intake.parse()


class TestModuleSource:
    def test_compiles_without_escape_warnings(self):
        source = Path(ledger.intake.__file__).read_text(encoding="utf-8")
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            compile(source, ledger.intake.__file__, "exec")
