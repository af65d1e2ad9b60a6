"""
ledger/intake.py -- Folder-based import workflow.

    input/  --parse + upsert-->  processed/   (session success | partial)
                         or -->  discards/    (session failed)

Every file found in input/ ends the run in exactly one of processed/ or
discards/, and leaves exactly one import_sessions row behind. Files are
handled one at a time in lexicographic order; a failing file never stops the
run. Only failures of the ledger itself (cannot open, cannot write the audit
row) or of the filesystem propagate.

Each file walks an explicit state machine:

    DISCOVERED -> PARSED | PARSE_FAILED
    PARSED     -> COMMITTED | ROLLED_BACK
    COMMITTED | PARSE_FAILED | ROLLED_BACK -> RELOCATED -> AUDITED

Usage:
    summary = run_import(store, folders, reference)
    if summary.failed:
        ...
"""

import errno
import logging
import os
import secrets
import shutil
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

from core.config import IntakeFolders
from core.errors import LedgerError, ValidationError
from ledger.audit import record_session
from ledger.ingest import ParsedFile, hostname_from_filename, parse_inspection_file
from ledger.models import ImportSession
from ledger.reference import ReferenceData
from ledger.store import LedgerStore
from ledger.upsert import FileImportResult, import_records

logger = logging.getLogger("corecount.intake")


class FileState(str, Enum):
    DISCOVERED = "discovered"
    PARSED = "parsed"
    PARSE_FAILED = "parse_failed"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    RELOCATED = "relocated"
    AUDITED = "audited"


_TRANSITIONS: dict[FileState, frozenset[FileState]] = {
    FileState.DISCOVERED: frozenset({FileState.PARSED, FileState.PARSE_FAILED}),
    FileState.PARSED: frozenset({FileState.COMMITTED, FileState.ROLLED_BACK}),
    FileState.COMMITTED: frozenset({FileState.RELOCATED}),
    FileState.PARSE_FAILED: frozenset({FileState.RELOCATED}),
    FileState.ROLLED_BACK: frozenset({FileState.RELOCATED}),
    FileState.RELOCATED: frozenset({FileState.AUDITED}),
    FileState.AUDITED: frozenset(),
}


class IntakeStateError(RuntimeError):
    """A FileIntake step was called out of order."""


# ---------------------------------------------------------------------------
# Filesystem steps
# ---------------------------------------------------------------------------


def ensure_folders(folders: IntakeFolders) -> None:
    """Create input, processed and discards if missing. Safe to repeat."""
    paths = (folders.input_dir, folders.processed_dir, folders.discards_dir)
    if len({p.expanduser().resolve() for p in paths}) != len(paths):
        raise ValueError("input, processed and discards must be three different directories")
    for path in paths:
        path.mkdir(parents=True, exist_ok=True)


def discover_input_files(input_dir: Path) -> list[Path]:
    """Regular, non-hidden *.csv files (any case), in lexicographic order by name."""
    return sorted(
        (
            path
            for path in input_dir.iterdir()
            if path.is_file() and not path.name.startswith(".") and path.suffix.lower() == ".csv"
        ),
        key=lambda path: path.name,
    )


def relocate(path: Path, directory: Path) -> Path:
    """Move path into directory and return the new location.

    A same-filesystem move is a single rename. Across filesystems the file is
    copied to a hidden temporary name in the destination, renamed into place,
    and only then removed from the source, so it is never missing from both.
    A file of the same name already in directory is replaced, with a warning.
    """
    directory.mkdir(parents=True, exist_ok=True)
    target = directory / path.name
    if target.exists():
        logger.warning("Replacing existing %s with the newly imported file", target)
    try:
        os.replace(path, target)
        return target
    except OSError as exc:
        if exc.errno != errno.EXDEV:
            raise

    temporary = directory / f".{path.name}.{secrets.token_hex(4)}.tmp"
    try:
        shutil.copy2(path, temporary)
        os.replace(temporary, target)
    except OSError:
        temporary.unlink(missing_ok=True)
        raise
    path.unlink()
    return target


# ---------------------------------------------------------------------------
# Per-file state machine
# ---------------------------------------------------------------------------


class FileIntake:
    """One input file's trip through parse, commit, relocate and audit."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self.state = FileState.DISCOVERED
        self.parsed: Optional[ParsedFile] = None
        self.result: Optional[FileImportResult] = None
        self.error: Optional[LedgerError] = None
        self.destination: Optional[Path] = None
        self.session: Optional[ImportSession] = None

    @property
    def hostname(self) -> str:
        if self.parsed is not None:
            return self.parsed.hostname
        return hostname_from_filename(self.path.name) or self.path.stem

    @property
    def failed(self) -> bool:
        return self.error is not None

    def _advance(self, target: FileState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise IntakeStateError(f"{self.path.name}: cannot go from {self.state.value} to {target.value}")
        self.state = target

    def _require(self, *states: FileState) -> None:
        if self.state not in states:
            allowed = ", ".join(s.value for s in states)
            raise IntakeStateError(f"{self.path.name}: step needs state {allowed}, file is {self.state.value}")

    def parse(self) -> None:
        self._require(FileState.DISCOVERED)
        try:
            self.parsed = parse_inspection_file(self.path)
        except ValidationError as exc:
            self.error = exc
            self._advance(FileState.PARSE_FAILED)
            return
        self._advance(FileState.PARSED)

    def commit(self, store: LedgerStore, reference: ReferenceData) -> None:
        """Import the parsed records in one transaction; a LedgerError means it rolled back."""
        self._require(FileState.PARSED)
        try:
            self.result = import_records(
                store,
                self.parsed.records,
                reference,
                source_file=self.path.name,
                hostname=self.parsed.hostname,
            )
        except LedgerError as exc:
            self.error = exc
            self._advance(FileState.ROLLED_BACK)
            return
        self._advance(FileState.COMMITTED)

    def relocate(self, folders: IntakeFolders) -> None:
        self._require(FileState.COMMITTED, FileState.PARSE_FAILED, FileState.ROLLED_BACK)
        directory = folders.processed_dir if self.state == FileState.COMMITTED else folders.discards_dir
        self.destination = relocate(self.path, directory)
        self._advance(FileState.RELOCATED)

    def audit(self, store: LedgerStore) -> None:
        self._require(FileState.RELOCATED)
        self.session = record_session(store, self.path.name, self.hostname, result=self.result, error=self.error)
        self._advance(FileState.AUDITED)

    def run(self, store: LedgerStore, folders: IntakeFolders, reference: ReferenceData) -> ImportSession:
        """Drive the file from DISCOVERED to AUDITED."""
        self.parse()
        if self.state == FileState.PARSED:
            self.commit(store, reference)
        self.relocate(folders)
        self.audit(store)
        return self.session


# ---------------------------------------------------------------------------
# Run
# ---------------------------------------------------------------------------


@dataclass
class FileOutcome:
    source_file: str
    status: str  # "success" | "partial" | "failed"
    destination: Path
    session_id: str
    error_message: str = ""


@dataclass
class ImportRunSummary:
    outcomes: list[FileOutcome] = field(default_factory=list)

    def _count(self, status: str) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == status)

    @property
    def succeeded(self) -> int:
        return self._count("success")

    @property
    def partial(self) -> int:
        return self._count("partial")

    @property
    def failed(self) -> int:
        return self._count("failed")


def run_import(store: LedgerStore, folders: IntakeFolders, reference: ReferenceData) -> ImportRunSummary:
    """Import every eligible file in the input folder, one at a time."""
    ensure_folders(folders)
    files = discover_input_files(folders.input_dir)
    logger.info("Found %d file(s) to import in %s", len(files), folders.input_dir)

    summary = ImportRunSummary()
    for path in files:
        intake = FileIntake(path)
        session = intake.run(store, folders, reference)
        summary.outcomes.append(
            FileOutcome(
                source_file=path.name,
                status=session.status,
                destination=intake.destination,
                session_id=session.session_id,
                error_message=session.error_message,
            )
        )
        if intake.failed:
            logger.warning("Discarded %s: %s", path.name, session.error_message)
        else:
            logger.info(
                "Imported %s (%s): %d created, %d updated, %d skipped",
                path.name,
                session.status,
                session.records_created,
                session.records_updated,
                session.records_skipped,
            )

    logger.info(
        "Import run finished: %d success, %d partial, %d failed",
        summary.succeeded,
        summary.partial,
        summary.failed,
    )
    return summary
