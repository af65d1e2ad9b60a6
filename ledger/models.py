"""
ledger/models.py -- Row dataclasses for the corecount ledger.

These are pure data containers with zero logic. Derivation rules (host
resolution, eligibility, upsert counting) live in resolver.py, eligibility.py
and upsert.py; persistence lives in store.py.

Separation of concerns: core/models.py holds what an inspector *reported*;
these dataclasses hold what the ledger *recorded*. Timestamps here are the
canonical UTC strings produced by core.models.format_timestamp.
"""

from dataclasses import dataclass, field
from typing import Optional


@dataclass
class LandscapeNode:
    """A host or VM in the inspected landscape, keyed by FQDN.

    Created by the import pipeline on first sight with mode PROD. The
    expected_* fields are maintained by reference-data loading, never by import.
    """

    main_fqdn: str
    hostname: str
    mode: str = "PROD"  # "PROD" | "NON_PROD"
    expected_product_codes: list[str] = field(default_factory=list)
    expected_cpu_count: Optional[int] = None
    created_at: str = ""


@dataclass
class PhysicalHost:
    """The hardware one or more measurements resolved to.

    max_physical_cpus is the deduplicated ceiling: the maximum host CPU count
    any measurement ever reported for this id. Aggregation trusts it as the
    per-host total, so it may only grow.
    """

    physical_host_id: str
    host_id_method: str
    host_id_confidence: str  # "high" | "medium" | "low"
    first_seen: str
    last_seen: str
    max_physical_cpus: Optional[int] = None
    notes: str = ""


@dataclass
class HostResolution:
    """Result of resolving one record to its physical host."""

    physical_host_id: str
    method: str
    confidence: str


@dataclass
class Measurement:
    """One host's inspection snapshot, keyed by (main_fqdn, detection_timestamp).

    considered_cpus is the per-VM licensing count (partition CPUs when
    reported for a virtualized host). It is intentionally separate from
    PhysicalHost.max_physical_cpus.
    """

    main_fqdn: str
    detection_timestamp: str
    os_name: str
    os_version: str
    cpu_count: int
    is_virtualized: str  # "yes" | "no" | "unknown"
    considered_cpus: int
    virt_type: str = ""
    processor_vendor: str = ""
    processor_brand: str = ""
    host_physical_cpus: Optional[int] = None
    partition_cpus: str = ""
    processor_eligible: str = "unknown"  # "true" | "false" | "unknown"
    os_eligible: str = "unknown"
    virt_eligible: str = "unknown"
    physical_host_id: str = ""
    host_id_method: str = ""
    host_id_confidence: str = ""
    source_file: str = ""
    imported_at: str = ""


@dataclass
class DetectedProduct:
    """Detection of one product in one measurement."""

    main_fqdn: str
    product_code: str
    detection_timestamp: str
    status: str  # "present" | "absent"
    running_status: str = "unknown"
    running_count: int = 0
    install_status: str = "unknown"
    install_count: int = 0


@dataclass
class ImportSession:
    """Immutable audit entry for one file-import attempt.

    Written once per attempt, in its own commit, whatever the outcome.
    Records are never updated or deleted -- only inserted.
    """

    session_id: str
    source_file: str
    hostname: str
    status: str  # "success" | "partial" | "failed"
    records_created: int = 0
    records_updated: int = 0
    records_skipped: int = 0
    error_message: str = ""
    imported_at: str = ""


@dataclass
class LicenseTerm:
    term_id: str
    program_number: str
    program_name: str


@dataclass
class ProductCode:
    """Reference mapping of a product mnemonic code to its license term."""

    product_code: str
    ibm_product_code: str
    product_name: str
    mode: str  # "PROD" | "NON_PROD"
    term_id: str
    notes: str = ""
