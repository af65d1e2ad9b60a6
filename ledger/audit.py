"""
ledger/audit.py -- One import_sessions row per file-import attempt.

The audit row is written after the file's own transaction has finished, in a
separate commit, so failed (rolled-back) files still leave a trace. Rows are
append-only; nothing here updates or deletes them.
"""

import logging
import re
import secrets
from datetime import datetime, timezone
from typing import Optional

from core.models import format_timestamp
from ledger.models import ImportSession
from ledger.store import LedgerStore
from ledger.upsert import FileImportResult

logger = logging.getLogger("corecount.audit")

_UNSAFE_ID_CHARS = re.compile(r"[^A-Za-z0-9.\-]+")


def new_session_id(hostname: str, moment: Optional[datetime] = None) -> str:
    """Return <hostname>_<UTC yyyymmdd_HHMMSS>_<8 hex chars>, unique per attempt."""
    moment = (moment or datetime.now(timezone.utc)).astimezone(timezone.utc)
    host = _UNSAFE_ID_CHARS.sub("-", hostname).strip("-") or "unknown"
    return f"{host}_{moment.strftime('%Y%m%d_%H%M%S')}_{secrets.token_hex(4)}"


def record_session(
    store: LedgerStore,
    source_file: str,
    hostname: str,
    result: Optional[FileImportResult] = None,
    error: Optional[BaseException] = None,
) -> ImportSession:
    """Append the audit row for one attempt and return it.

    With an error the session is "failed" and carries the error message
    verbatim; counts are zero because the file's writes were rolled back.
    Otherwise the status and counts come from the committed result (an empty
    file with no result is a successful import of nothing).
    """
    now = datetime.now(timezone.utc)
    session = ImportSession(
        session_id=new_session_id(hostname, now),
        source_file=source_file,
        hostname=hostname,
        status="success",
        imported_at=format_timestamp(now),
    )
    if error is not None:
        session.status = "failed"
        session.error_message = str(error)
    elif result is not None:
        session.status = result.status
        session.records_created = result.created
        session.records_updated = result.updated
        session.records_skipped = result.skipped

    store.record_session(session)
    logger.debug("Recorded session %s (%s) for %s", session.session_id, session.status, source_file)
    return session
