"""
core/models.py -- Record model for one inspection export row.

These dataclasses are the in-memory form of what an inspector reported. They
carry no ledger state: eligibility flags, considered CPUs and physical-host
linkage are derived later by ledger/ and stored on the ledger's own rows
(ledger/models.py).

Layer rule: core/ is the kernel. This module may not import from ledger/.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

# ---------------------------------------------------------------------------
# Domain constants
# ---------------------------------------------------------------------------

VIRTUALIZED_VALUES = ("yes", "no", "unknown")
CONFIDENCE_LEVELS = ("high", "medium", "low")
PRESENCE_VALUES = ("present", "absent")
RUNNING_VALUES = ("running", "not-running", "unknown")
INSTALL_VALUES = ("installed", "not-installed", "unknown")
NODE_MODES = ("PROD", "NON_PROD")

# Values an inspector writes when it could not determine a field.
UNKNOWN_MARKERS = frozenset({"", "unknown", "none", "n/a"})

_CPU_RANGE_RE = re.compile(r"^([0-9]+)(?:-([0-9]+))?$")


class Eligibility(str, Enum):
    true = "true"
    false = "false"
    unknown = "unknown"


def is_unknown(value: Optional[str]) -> bool:
    """Return True for empty values and the inspector's 'unknown' markers."""
    return value is None or value.strip().lower() in UNKNOWN_MARKERS


def format_timestamp(moment: datetime) -> str:
    """Render a timestamp as the ledger's canonical UTC string.

    Naive datetimes are taken to be UTC. Lexical order of the output equals
    chronological order, which the ledger relies on for first/last-seen.
    """
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601-like detection timestamp. Raises ValueError."""
    text = value.strip()
    if not text:
        raise ValueError("empty timestamp")
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    moment = datetime.fromisoformat(text)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def count_cpu_list(value: Optional[str]) -> Optional[int]:
    """Return the number of CPUs described by a partition CPU value.

    Accepts a plain count ("8"), a CPU list ("0,1,2,3") or ranges
    ("0-3,8-11"). Unknown markers return None. Raises ValueError for anything
    else.
    """
    if is_unknown(value):
        return None
    text = value.strip()
    if text.isascii() and text.isdigit():
        return int(text)
    total = 0
    for part in text.split(","):
        match = _CPU_RANGE_RE.match(part.strip())
        if match is None:
            raise ValueError(f"not a CPU count or CPU list: {value!r}")
        start = int(match.group(1))
        end = int(match.group(2)) if match.group(2) is not None else start
        if end < start:
            raise ValueError(f"descending CPU range: {part.strip()!r}")
        total += end - start + 1
    return total


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass
class ProductDetection:
    """Detection state of one tracked product in one inspection."""

    product_code: str
    status: str  # "present" | "absent"
    running_status: str = "unknown"  # "running" | "not-running" | "unknown"
    running_count: int = 0
    install_status: str = "unknown"  # "installed" | "not-installed" | "unknown"
    install_count: int = 0


@dataclass
class InspectionRecord:
    """One host's inspection at one point in time, as reported by the inspector.

    identity is (main_fqdn, canonical timestamp) -- the natural key of the
    measurement row this record becomes. cpu_count is None only when a
    key-value export omitted CPU_COUNT; the eligibility evaluator rejects it.

    partition_cpus keeps the raw reported value (count or CPU list) so the
    ledger can store it as-is; partition_cpu_count is the derived count.
    """

    main_fqdn: str
    detection_timestamp: datetime
    os_name: str = ""
    os_version: str = ""
    cpu_count: Optional[int] = None
    is_virtualized: str = "unknown"  # "yes" | "no" | "unknown"
    virt_type: str = ""
    processor_vendor: str = ""
    processor_brand: str = ""
    host_physical_cpus: Optional[int] = None
    partition_cpus: str = ""
    physical_host_id: str = ""
    host_id_method: str = ""
    host_id_confidence: str = ""  # "high" | "medium" | "low" | ""
    hostname: str = ""
    detection_result: str = ""  # "SUCCESS" | "ERROR" | ""
    error_message: str = ""
    line: Optional[int] = None
    products: dict[str, ProductDetection] = field(default_factory=dict)

    @property
    def timestamp(self) -> str:
        return format_timestamp(self.detection_timestamp)

    @property
    def identity(self) -> tuple[str, str]:
        return (self.main_fqdn, self.timestamp)

    @property
    def partition_cpu_count(self) -> Optional[int]:
        return count_cpu_list(self.partition_cpus)

    @property
    def is_detection_error(self) -> bool:
        return self.detection_result.strip().upper() == "ERROR"

    @property
    def short_hostname(self) -> str:
        """Hostname as reported, else the first label of the FQDN."""
        if self.hostname:
            return self.hostname
        return self.main_fqdn.split(".", 1)[0]

    def measurement_fields(self) -> tuple:
        """Every reported field that ends up on the measurement row.

        Two rows with the same identity must agree on these values to be
        merged; a disagreement means the export contradicts itself.
        """
        return (
            self.os_name,
            self.os_version,
            self.cpu_count,
            self.is_virtualized,
            self.virt_type,
            self.processor_vendor,
            self.processor_brand,
            self.host_physical_cpus,
            self.partition_cpus,
            self.physical_host_id,
            self.host_id_method,
            self.host_id_confidence,
        )
