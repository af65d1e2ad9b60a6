"""
ledger/store.py -- SQLAlchemy-backed persistence layer for the corecount ledger.

Uses SQLAlchemy Core (not ORM) so the dataclasses in ledger/models.py remain
the authoritative representation. SQLite is the default; any SQLAlchemy URL
works because no backend-specific SQL is issued outside the connect hook.

Pattern: Repository + Data Mapper. LedgerStore owns the engine and the
read-only query surface used by reporting. LedgerTransaction is the write
surface: it is only handed out by LedgerStore.transaction(), so every write of
an import happens inside that file's single transaction. The _row_to_*
functions are the mappers.

Transaction boundary:
    with store.transaction() as txn:      # BEGIN
        txn.upsert_measurement(...)       # ... all writes for one file
                                          # COMMIT, or ROLLBACK on any exception
Driver and constraint failures surface as core.errors.StoreError carrying
the driver message; any other exception raised inside the block propagates
unchanged after the rollback.

Security: all queries use bound parameters. No f-strings in SQL.

Usage:
    store = LedgerStore()                                # SQLite default
    store = LedgerStore("postgresql://user:pw@host/db")  # PostgreSQL
    with store.transaction() as txn:
        created = txn.upsert_measurement(measurement)
    store.record_session(session)                        # own commit
    hosts = store.list_physical_hosts()
    store.close()
"""

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from sqlalchemy import Table, and_, create_engine, event, func, select
from sqlalchemy.engine import Connection, Engine, make_url
from sqlalchemy.exc import SQLAlchemyError

from core.errors import StoreError
from core.models import format_timestamp
from ledger.models import (
    DetectedProduct,
    ImportSession,
    LandscapeNode,
    LicenseTerm,
    Measurement,
    PhysicalHost,
    ProductCode,
)
from ledger.schema import (
    detected_products,
    import_sessions,
    init_schema,
    landscape_nodes,
    license_terms,
    measurements,
    missing_tables,
    physical_hosts,
    product_codes,
)

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent.parent / 'data' / 'corecount.db'}"

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return format_timestamp(datetime.now(timezone.utc))


def _describe(exc: SQLAlchemyError) -> str:
    """Return the driver's own message when there is one, else SQLAlchemy's."""
    orig = getattr(exc, "orig", None)
    return str(orig) if orig is not None else str(exc)


def _ensure_sqlite_directory(db_url: str) -> None:
    """Create the parent directory of a file-backed SQLite database.

    In-memory and URI-style (file:...) databases are left alone.
    """
    url = make_url(db_url)
    if url.get_backend_name() != "sqlite":
        return
    database = url.database or ""
    if not database or database == ":memory:" or database.startswith("file:"):
        return
    Path(database).expanduser().parent.mkdir(parents=True, exist_ok=True)


# ---------------------------------------------------------------------------
# SQLite connection setup
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journaling and foreign key enforcement.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool. Foreign keys are off by default in SQLite;
    measurements and detected_products reference landscape_nodes.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


# ---------------------------------------------------------------------------
# Write surface (one instance per open transaction)
# ---------------------------------------------------------------------------


class LedgerTransaction:
    """All ledger writes, bound to one open transaction.

    Every read here goes through the same connection, so a resolver that
    reads a physical host sees writes made earlier in the same file.
    """

    def __init__(self, conn: Connection) -> None:
        self.conn = conn

    def _exists(self, table: Table, key: dict) -> bool:
        condition = and_(*(table.c[name] == value for name, value in key.items()))
        count = self.conn.execute(select(func.count()).select_from(table).where(condition)).scalar_one()
        return count > 0

    def _upsert(self, table: Table, key: dict, values: dict, on_insert: Optional[dict] = None) -> bool:
        """Update the row with this natural key, or insert it. Returns True if inserted."""
        if self._exists(table, key):
            condition = and_(*(table.c[name] == value for name, value in key.items()))
            self.conn.execute(table.update().where(condition).values(**values))
            return False
        self.conn.execute(table.insert().values(**key, **values, **(on_insert or {})))
        return True

    # ------------------------------------------------------------------
    # Landscape nodes
    # ------------------------------------------------------------------

    def ensure_landscape_node(self, main_fqdn: str, hostname: str) -> bool:
        """Create the node on first sight of an FQDN. Returns True if created.

        Existing nodes are left untouched: their mode and expected values
        belong to reference-data loading.
        """
        if self._exists(landscape_nodes, {"main_fqdn": main_fqdn}):
            return False
        self.conn.execute(
            landscape_nodes.insert().values(
                main_fqdn=main_fqdn,
                hostname=hostname,
                mode="PROD",
                expected_product_codes=json.dumps([]),
                created_at=_now_iso(),
            )
        )
        return True

    # ------------------------------------------------------------------
    # Physical hosts
    # ------------------------------------------------------------------

    def get_physical_host(self, physical_host_id: str) -> Optional[PhysicalHost]:
        row = self.conn.execute(
            physical_hosts.select().where(physical_hosts.c.physical_host_id == physical_host_id)
        ).fetchone()
        return _row_to_physical_host(row) if row is not None else None

    def insert_physical_host(self, host: PhysicalHost) -> None:
        now = _now_iso()
        self.conn.execute(physical_hosts.insert().values(**asdict(host), created_at=now, updated_at=now))

    def update_physical_host(self, host: PhysicalHost) -> None:
        values = asdict(host)
        values.pop("physical_host_id")
        self.conn.execute(
            physical_hosts.update()
            .where(physical_hosts.c.physical_host_id == host.physical_host_id)
            .values(**values, updated_at=_now_iso())
        )

    # ------------------------------------------------------------------
    # Measurements and detected products
    # ------------------------------------------------------------------

    def upsert_measurement(self, measurement: Measurement) -> bool:
        """Write a measurement keyed by (main_fqdn, detection_timestamp). True if created."""
        values = asdict(measurement)
        key = {
            "main_fqdn": values.pop("main_fqdn"),
            "detection_timestamp": values.pop("detection_timestamp"),
        }
        return self._upsert(measurements, key, values)

    def upsert_detected_product(self, product: DetectedProduct) -> bool:
        """Write a product detection keyed by (main_fqdn, product_code, timestamp). True if created."""
        values = asdict(product)
        key = {
            "main_fqdn": values.pop("main_fqdn"),
            "product_code": values.pop("product_code"),
            "detection_timestamp": values.pop("detection_timestamp"),
        }
        return self._upsert(detected_products, key, values)

    # ------------------------------------------------------------------
    # Reference data
    # ------------------------------------------------------------------

    def ensure_license_term(self, term_id: str) -> bool:
        """Insert a placeholder term so a product code can reference it. True if created."""
        if self._exists(license_terms, {"term_id": term_id}):
            return False
        now = _now_iso()
        self.conn.execute(
            license_terms.insert().values(
                term_id=term_id,
                program_number="Unknown",
                program_name=f"License term {term_id}",
                created_at=now,
                updated_at=now,
            )
        )
        return True

    def upsert_license_term(self, term: LicenseTerm) -> bool:
        now = _now_iso()
        return self._upsert(
            license_terms,
            {"term_id": term.term_id},
            {"program_number": term.program_number, "program_name": term.program_name, "updated_at": now},
            on_insert={"created_at": now},
        )

    def upsert_product_code(self, code: ProductCode) -> bool:
        now = _now_iso()
        return self._upsert(
            product_codes,
            {"product_code": code.product_code},
            {
                "ibm_product_code": code.ibm_product_code,
                "product_name": code.product_name,
                "mode": code.mode,
                "term_id": code.term_id or None,
                "notes": code.notes,
                "updated_at": now,
            },
            on_insert={"created_at": now},
        )


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class LedgerStore:
    def __init__(self, db_url: str = _DEFAULT_DB_URL, create_schema: bool = True) -> None:
        """Open the ledger.

        create_schema=True bootstraps missing tables. create_schema=False
        treats the schema as an external contract and only verifies that the
        required tables exist. Any failure to open is a StoreError, which is
        fatal to an import run.
        """
        self.db_url = db_url
        try:
            _ensure_sqlite_directory(db_url)
            self.engine: Engine = create_engine(db_url)
            if self.engine.dialect.name == "sqlite":
                event.listen(self.engine, "connect", _set_sqlite_pragmas)
            if create_schema:
                init_schema(self.engine)
            else:
                missing = missing_tables(self.engine)
                if missing:
                    raise StoreError(f"Ledger schema incomplete, missing tables: {', '.join(sorted(missing))}")
        except (SQLAlchemyError, OSError) as exc:
            raise StoreError(f"Cannot open ledger {db_url}: {exc}") from exc

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[LedgerTransaction]:
        """Yield a LedgerTransaction; commit on success, roll back on any exception."""
        try:
            with self.engine.begin() as conn:
                yield LedgerTransaction(conn)
        except SQLAlchemyError as exc:
            raise StoreError(_describe(exc)) from exc
        except (OverflowError, ValueError) as exc:
            # Driver-level bind failures, e.g. an int outside the SQLite INTEGER range.
            raise StoreError(f"cannot store value: {exc}") from exc

    # ------------------------------------------------------------------
    # Import sessions (audit trail)
    # ------------------------------------------------------------------

    def record_session(self, session: ImportSession) -> None:
        """Append one audit row in its own commit."""
        values = asdict(session)
        values["imported_at"] = values["imported_at"] or _now_iso()
        try:
            with self.engine.begin() as conn:
                conn.execute(import_sessions.insert().values(**values))
        except SQLAlchemyError as exc:
            raise StoreError(_describe(exc)) from exc

    def list_import_sessions(self, limit: Optional[int] = None) -> list[ImportSession]:
        """Return audit rows, most recent first."""
        stmt = import_sessions.select().order_by(import_sessions.c.id.desc())
        if limit is not None:
            stmt = stmt.limit(limit)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_session(r) for r in rows]

    # ------------------------------------------------------------------
    # Read surface for reporting
    # ------------------------------------------------------------------

    def get_landscape_node(self, main_fqdn: str) -> Optional[LandscapeNode]:
        with self.engine.connect() as conn:
            row = conn.execute(landscape_nodes.select().where(landscape_nodes.c.main_fqdn == main_fqdn)).fetchone()
        return _row_to_node(row) if row is not None else None

    def get_physical_host(self, physical_host_id: str) -> Optional[PhysicalHost]:
        with self.engine.connect() as conn:
            return LedgerTransaction(conn).get_physical_host(physical_host_id)

    def list_physical_hosts(self) -> list[PhysicalHost]:
        """Return all physical hosts ordered by id."""
        with self.engine.connect() as conn:
            rows = conn.execute(physical_hosts.select().order_by(physical_hosts.c.physical_host_id)).fetchall()
        return [_row_to_physical_host(r) for r in rows]

    def get_measurement(self, main_fqdn: str, detection_timestamp: str) -> Optional[Measurement]:
        with self.engine.connect() as conn:
            row = conn.execute(
                measurements.select().where(
                    (measurements.c.main_fqdn == main_fqdn)
                    & (measurements.c.detection_timestamp == detection_timestamp)
                )
            ).fetchone()
        return _row_to_measurement(row) if row is not None else None

    def list_measurements(self, main_fqdn: Optional[str] = None) -> list[Measurement]:
        """Return measurements, optionally for one node, oldest first."""
        stmt = measurements.select().order_by(measurements.c.main_fqdn, measurements.c.detection_timestamp)
        if main_fqdn is not None:
            stmt = stmt.where(measurements.c.main_fqdn == main_fqdn)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_measurement(r) for r in rows]

    def list_detected_products(self, main_fqdn: Optional[str] = None) -> list[DetectedProduct]:
        stmt = detected_products.select().order_by(
            detected_products.c.main_fqdn,
            detected_products.c.detection_timestamp,
            detected_products.c.product_code,
        )
        if main_fqdn is not None:
            stmt = stmt.where(detected_products.c.main_fqdn == main_fqdn)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_product(r) for r in rows]

    def list_product_codes(self) -> list[ProductCode]:
        with self.engine.connect() as conn:
            rows = conn.execute(product_codes.select().order_by(product_codes.c.product_code)).fetchall()
        return [
            ProductCode(
                product_code=r.product_code,
                ibm_product_code=r.ibm_product_code,
                product_name=r.product_name,
                mode=r.mode,
                term_id=r.term_id or "",
                notes=r.notes or "",
            )
            for r in rows
        ]

    def list_license_terms(self) -> list[LicenseTerm]:
        with self.engine.connect() as conn:
            rows = conn.execute(license_terms.select().order_by(license_terms.c.term_id)).fetchall()
        return [
            LicenseTerm(term_id=r.term_id, program_number=r.program_number, program_name=r.program_name) for r in rows
        ]

    def row_counts(self) -> dict[str, int]:
        """Return the number of rows in each ledger table, keyed by table name."""
        tables = (landscape_nodes, physical_hosts, measurements, detected_products, import_sessions)
        with self.engine.connect() as conn:
            return {t.name: conn.execute(select(func.count()).select_from(t)).scalar_one() for t in tables}

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern -- DB row -> ledger dataclass)
# ---------------------------------------------------------------------------


def _row_to_node(row) -> LandscapeNode:
    expected: list[str] = json.loads(row.expected_product_codes) if row.expected_product_codes else []
    return LandscapeNode(
        main_fqdn=row.main_fqdn,
        hostname=row.hostname,
        mode=row.mode,
        expected_product_codes=expected,
        expected_cpu_count=row.expected_cpu_count,
        created_at=row.created_at,
    )


def _row_to_physical_host(row) -> PhysicalHost:
    return PhysicalHost(
        physical_host_id=row.physical_host_id,
        host_id_method=row.host_id_method,
        host_id_confidence=row.host_id_confidence,
        first_seen=row.first_seen,
        last_seen=row.last_seen,
        max_physical_cpus=row.max_physical_cpus,
        notes=row.notes or "",
    )


def _row_to_measurement(row) -> Measurement:
    return Measurement(
        main_fqdn=row.main_fqdn,
        detection_timestamp=row.detection_timestamp,
        os_name=row.os_name,
        os_version=row.os_version,
        cpu_count=row.cpu_count,
        is_virtualized=row.is_virtualized,
        considered_cpus=row.considered_cpus,
        virt_type=row.virt_type or "",
        processor_vendor=row.processor_vendor or "",
        processor_brand=row.processor_brand or "",
        host_physical_cpus=row.host_physical_cpus,
        partition_cpus=row.partition_cpus or "",
        processor_eligible=row.processor_eligible,
        os_eligible=row.os_eligible,
        virt_eligible=row.virt_eligible,
        physical_host_id=row.physical_host_id or "",
        host_id_method=row.host_id_method or "",
        host_id_confidence=row.host_id_confidence or "",
        source_file=row.source_file or "",
        imported_at=row.imported_at,
    )


def _row_to_product(row) -> DetectedProduct:
    return DetectedProduct(
        main_fqdn=row.main_fqdn,
        product_code=row.product_code,
        detection_timestamp=row.detection_timestamp,
        status=row.status,
        running_status=row.running_status,
        running_count=row.running_count,
        install_status=row.install_status,
        install_count=row.install_count,
    )


def _row_to_session(row) -> ImportSession:
    return ImportSession(
        session_id=row.session_id,
        source_file=row.source_file,
        hostname=row.hostname,
        status=row.status,
        records_created=row.records_created,
        records_updated=row.records_updated,
        records_skipped=row.records_skipped,
        error_message=row.error_message or "",
        imported_at=row.imported_at,
    )
