"""
ledger/eligibility.py -- Per-measurement licensing eligibility.

Three independent flags are derived from a record and a rule set:

  processor_eligible  processor vendor + brand       vs. processor rules
  os_eligible         OS name + version              vs. operating_system rules
  virt_eligible       virtualization technology      vs. virtualization rules

Each flag is "true", "false" or "unknown". Unknown is the answer whenever the
input is missing or no rule matches: the evaluator never guesses.

Rules are an ordered list per category; the first matching rule wins. Names
compare case-insensitively, "*" matches any value, and the optional
*_pattern fields are regular expressions searched case-insensitively.

Rules file (JSON):
    {
      "processor":        [{"vendor": "GenuineIntel", "brand_pattern": "Xeon", "eligible": true}],
      "operating_system": [{"name": "Red Hat Enterprise Linux", "version_pattern": "^[89]", "eligible": true}],
      "virtualization":   [{"virt_type": "none", "eligible": true}, {"virt_type": "kvm", "eligible": true}]
    }

considered_cpus is the per-VM licensing count and is deliberately separate
from the physical host's max_physical_cpus.
"""

import re
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Optional, Union

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from core.errors import ResolutionError
from core.models import Eligibility, InspectionRecord, is_unknown

if TYPE_CHECKING:
    from ledger.reference import ReferenceData

WILDCARD = "*"
BARE_METAL_VIRT_TYPE = "none"

# ---------------------------------------------------------------------------
# Rule models
# ---------------------------------------------------------------------------


def _check_pattern(value: Optional[str]) -> Optional[str]:
    if value is not None:
        try:
            re.compile(value)
        except re.error as exc:
            raise ValueError(f"invalid regular expression {value!r}: {exc}") from exc
    return value


class ProcessorRule(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    vendor: str
    brand_pattern: Optional[str] = None
    eligible: bool

    check_brand_pattern = field_validator("brand_pattern")(_check_pattern)


class OperatingSystemRule(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str
    version_pattern: Optional[str] = None
    eligible: bool

    check_version_pattern = field_validator("version_pattern")(_check_pattern)


class VirtualizationRule(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    virt_type: str
    eligible: bool


class EligibilityCriteria(BaseModel):
    """Ordered rule lists. An empty criteria set makes every flag unknown."""

    model_config = ConfigDict(extra="forbid")

    processor: list[ProcessorRule] = []
    operating_system: list[OperatingSystemRule] = []
    virtualization: list[VirtualizationRule] = []


@dataclass
class EligibilityResult:
    processor_eligible: Eligibility
    os_eligible: Eligibility
    virt_eligible: Eligibility
    considered_cpus: int


def load_criteria(path: Union[str, Path]) -> EligibilityCriteria:
    """Load a JSON rules file. Raises ValueError when it is unreadable or invalid."""
    path = Path(path)
    try:
        return EligibilityCriteria.model_validate_json(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ValueError(f"Cannot read eligibility rules {path}: {exc.strerror or exc}") from exc
    except ValidationError as exc:
        raise ValueError(f"Invalid eligibility rules {path}: {exc}") from exc


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


def evaluate(record: InspectionRecord, reference: "ReferenceData") -> EligibilityResult:
    """Derive the eligibility flags and considered CPUs for one record.

    Raises ResolutionError when the record has no CPU count to consider.
    """
    criteria = reference.criteria
    return EligibilityResult(
        processor_eligible=processor_eligibility(record, criteria),
        os_eligible=os_eligibility(record, criteria),
        virt_eligible=virt_eligibility(record, criteria),
        considered_cpus=considered_cpus(record),
    )


def considered_cpus(record: InspectionRecord) -> int:
    """Partition CPUs for a virtualized record that reports a positive count, else cpu_count."""
    if record.cpu_count is None:
        where = f"line {record.line}: " if record.line is not None else ""
        raise ResolutionError(f"{where}missing cpu_count for {record.main_fqdn or 'record'}")
    if record.is_virtualized == "yes":
        partition = record.partition_cpu_count
        if partition:
            return partition
    return record.cpu_count


def processor_eligibility(record: InspectionRecord, criteria: EligibilityCriteria) -> Eligibility:
    if is_unknown(record.processor_vendor):
        return Eligibility.unknown
    for rule in criteria.processor:
        if _name_matches(rule.vendor, record.processor_vendor) and _pattern_matches(
            rule.brand_pattern, record.processor_brand
        ):
            return _flag(rule.eligible)
    return Eligibility.unknown


def os_eligibility(record: InspectionRecord, criteria: EligibilityCriteria) -> Eligibility:
    if is_unknown(record.os_name):
        return Eligibility.unknown
    for rule in criteria.operating_system:
        if _name_matches(rule.name, record.os_name) and _pattern_matches(rule.version_pattern, record.os_version):
            return _flag(rule.eligible)
    return Eligibility.unknown


def virt_eligibility(record: InspectionRecord, criteria: EligibilityCriteria) -> Eligibility:
    if record.is_virtualized == "no":
        virt_type = BARE_METAL_VIRT_TYPE
    elif record.is_virtualized == "yes" and not is_unknown(record.virt_type):
        virt_type = record.virt_type
    else:
        return Eligibility.unknown
    for rule in criteria.virtualization:
        if _name_matches(rule.virt_type, virt_type):
            return _flag(rule.eligible)
    return Eligibility.unknown


def _name_matches(expected: str, actual: str) -> bool:
    return expected == WILDCARD or expected.strip().lower() == actual.strip().lower()


def _pattern_matches(pattern: Optional[str], value: str) -> bool:
    if pattern is None:
        return True
    if is_unknown(value):
        return False
    return re.search(pattern, value, re.IGNORECASE) is not None


def _flag(eligible: bool) -> Eligibility:
    return Eligibility.true if eligible else Eligibility.false
