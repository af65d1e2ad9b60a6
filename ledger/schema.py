"""
ledger/schema.py -- Table definitions for the corecount ledger.

The schema is a contract the store depends on, not something the import
pipeline decides. LedgerStore calls init_schema() when asked to bootstrap a
fresh ledger, or missing_tables() when the tables are expected to exist already.

Timestamps are TEXT in the canonical UTC form (YYYY-MM-DDTHH:MM:SSZ) so lexical
comparison is chronological on every backend. Enumerated columns carry CHECK
constraints mirroring the domains in core/models.py.

detected_products.product_code deliberately has no foreign key to
product_codes: reference data may be loaded after the first import.
"""

from sqlalchemy import (
    CheckConstraint,
    Column,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    Text,
    inspect,
)
from sqlalchemy.engine import Engine

metadata = MetaData()

# ---------------------------------------------------------------------------
# Reference tables (written only by ledger/reference.py loaders)
# ---------------------------------------------------------------------------

license_terms = Table(
    "license_terms",
    metadata,
    Column("term_id", String(64), primary_key=True),
    Column("program_number", String(64), nullable=False),
    Column("program_name", String(255), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

product_codes = Table(
    "product_codes",
    metadata,
    Column("product_code", String(64), primary_key=True),
    Column("ibm_product_code", String(64), nullable=False, server_default=""),
    Column("product_name", String(255), nullable=False, server_default=""),
    Column("mode", String(10), nullable=False, server_default="PROD"),
    Column("term_id", String(64), ForeignKey("license_terms.term_id")),
    Column("notes", Text, server_default=""),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    CheckConstraint("mode IN ('PROD', 'NON_PROD')", name="ck_product_codes_mode"),
)

# ---------------------------------------------------------------------------
# Ledger tables (written only by the import pipeline)
# ---------------------------------------------------------------------------

landscape_nodes = Table(
    "landscape_nodes",
    metadata,
    Column("main_fqdn", String(255), primary_key=True),
    Column("hostname", String(255), nullable=False),
    Column("mode", String(10), nullable=False, server_default="PROD"),
    Column("expected_product_codes", Text),  # JSON array serialized as text
    Column("expected_cpu_count", Integer),
    Column("created_at", String(32), nullable=False),
    CheckConstraint("mode IN ('PROD', 'NON_PROD')", name="ck_landscape_nodes_mode"),
)

physical_hosts = Table(
    "physical_hosts",
    metadata,
    Column("physical_host_id", String(255), primary_key=True),
    Column("host_id_method", String(64), nullable=False),
    Column("host_id_confidence", String(10), nullable=False),
    Column("first_seen", String(32), nullable=False),
    Column("last_seen", String(32), nullable=False),
    Column("max_physical_cpus", Integer),
    Column("notes", Text, server_default=""),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    CheckConstraint("host_id_confidence IN ('high', 'medium', 'low')", name="ck_physical_hosts_confidence"),
)

measurements = Table(
    "measurements",
    metadata,
    Column("main_fqdn", String(255), ForeignKey("landscape_nodes.main_fqdn"), nullable=False),
    Column("detection_timestamp", String(32), nullable=False),
    Column("os_name", String(100), nullable=False, server_default=""),
    Column("os_version", String(100), nullable=False, server_default=""),
    Column("cpu_count", Integer, nullable=False),
    Column("is_virtualized", String(10), nullable=False),
    Column("virt_type", String(64), server_default=""),
    Column("processor_vendor", String(100), server_default=""),
    Column("processor_brand", String(255), server_default=""),
    Column("host_physical_cpus", Integer),
    Column("partition_cpus", String(255), server_default=""),
    Column("processor_eligible", String(10), nullable=False, server_default="unknown"),
    Column("os_eligible", String(10), nullable=False, server_default="unknown"),
    Column("virt_eligible", String(10), nullable=False, server_default="unknown"),
    Column("considered_cpus", Integer, nullable=False),
    Column("physical_host_id", String(255), server_default=""),
    Column("host_id_method", String(64), server_default=""),
    Column("host_id_confidence", String(10), server_default=""),
    Column("source_file", String(255), server_default=""),
    Column("imported_at", String(32), nullable=False),
    PrimaryKeyConstraint("main_fqdn", "detection_timestamp", name="pk_measurements"),
    CheckConstraint("is_virtualized IN ('yes', 'no', 'unknown')", name="ck_measurements_virtualized"),
    CheckConstraint("processor_eligible IN ('true', 'false', 'unknown')", name="ck_measurements_processor"),
    CheckConstraint("os_eligible IN ('true', 'false', 'unknown')", name="ck_measurements_os"),
    CheckConstraint("virt_eligible IN ('true', 'false', 'unknown')", name="ck_measurements_virt"),
)

detected_products = Table(
    "detected_products",
    metadata,
    Column("main_fqdn", String(255), ForeignKey("landscape_nodes.main_fqdn"), nullable=False),
    Column("product_code", String(64), nullable=False),
    Column("detection_timestamp", String(32), nullable=False),
    Column("status", String(10), nullable=False),
    Column("running_status", String(16), nullable=False, server_default="unknown"),
    Column("running_count", Integer, nullable=False, server_default="0"),
    Column("install_status", String(16), nullable=False, server_default="unknown"),
    Column("install_count", Integer, nullable=False, server_default="0"),
    PrimaryKeyConstraint("main_fqdn", "product_code", "detection_timestamp", name="pk_detected_products"),
    CheckConstraint("status IN ('present', 'absent')", name="ck_detected_products_status"),
    CheckConstraint(
        "running_status IN ('running', 'not-running', 'unknown')",
        name="ck_detected_products_running",
    ),
    CheckConstraint(
        "install_status IN ('installed', 'not-installed', 'unknown')",
        name="ck_detected_products_install",
    ),
)

import_sessions = Table(
    "import_sessions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("session_id", String(128), nullable=False, unique=True),
    Column("imported_at", String(32), nullable=False),
    Column("source_file", String(255), nullable=False),
    Column("hostname", String(255), nullable=False),
    Column("records_created", Integer, nullable=False, server_default="0"),
    Column("records_updated", Integer, nullable=False, server_default="0"),
    Column("records_skipped", Integer, nullable=False, server_default="0"),
    Column("status", String(10), nullable=False),
    Column("error_message", Text, server_default=""),
    CheckConstraint("status IN ('success', 'partial', 'failed')", name="ck_import_sessions_status"),
)

Index("idx_measurements_timestamp", measurements.c.detection_timestamp)
Index("idx_measurements_physical_host", measurements.c.physical_host_id)
Index("idx_detected_products_timestamp", detected_products.c.detection_timestamp)
Index("idx_import_sessions_hostname", import_sessions.c.hostname)

REQUIRED_TABLES = frozenset(metadata.tables)


def init_schema(engine: Engine) -> None:
    """Create any missing tables and indexes. Safe to re-run."""
    metadata.create_all(engine)


def missing_tables(engine: Engine) -> set[str]:
    """Return the names of required tables that do not exist in the database."""
    return set(REQUIRED_TABLES) - set(inspect(engine).get_table_names())
