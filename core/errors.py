"""
core/errors.py -- Error taxonomy for the import pipeline.

Every per-file failure is one of these types. The folder intake manager catches
LedgerError subclasses for a single file, audits them, and moves on to the next
file. Anything else is a bug and propagates.

  ValidationError    malformed file or row        -> discards, session failed
  ResolutionError    required field missing       -> discards, session failed
  StoreError         transaction/commit failure   -> discards, session failed
  PartialRecordSkip  one redundant record         -> counted, session partial
"""

from typing import Optional


class LedgerError(Exception):
    """Base error for the corecount ledger."""


class ValidationError(LedgerError):
    """A file or row failed structural validation.

    line is the 1-based physical line number of the first offending row, or
    None when the problem concerns the file as a whole (encoding, header).
    """

    def __init__(self, message: str, line: Optional[int] = None) -> None:
        self.line = line
        super().__init__(f"line {line}: {message}" if line is not None else message)


class ResolutionError(LedgerError):
    """Host resolution or eligibility evaluation cannot proceed."""


class StoreError(LedgerError):
    """The ledger could not be opened, written, or committed."""


class PartialRecordSkip(LedgerError):
    """A single record is redundant and can be skipped without failing its file."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)
