"""
ledger/resolver.py -- Physical host identity resolution and deduplication.

Many VMs can share one physical host. Licensing counts the host's cores once,
so every measurement is linked to a physical host id and the host row keeps
the maximum CPU count any of its measurements reported. Summing or averaging
here would double-count cores.

Identification order:
  1. The inspector's own PHYSICAL_HOST_ID, when present and not "unknown"
  2. The FQDN itself (method "fqdn-fallback", confidence "low"): the record
     is assumed to describe a bare-metal host

No probing, no guessing from hostnames or IP ranges: only fields present in
the record are used.
"""

import logging
from typing import Optional

from core.errors import ResolutionError
from core.models import CONFIDENCE_LEVELS, InspectionRecord, is_unknown
from ledger.models import HostResolution, PhysicalHost
from ledger.store import LedgerTransaction

logger = logging.getLogger("corecount.resolver")

FALLBACK_METHOD = "fqdn-fallback"
DEFAULT_METHOD = "unknown"
DEFAULT_CONFIDENCE = "low"

# Higher is more trustworthy.
_CONFIDENCE_RANK = {level: rank for rank, level in enumerate(reversed(CONFIDENCE_LEVELS))}


def identify_physical_host(record: InspectionRecord) -> HostResolution:
    """Decide which physical host a record describes. No side effects."""
    if not record.main_fqdn:
        raise ResolutionError(_where(record, "missing main_fqdn, cannot resolve physical host"))

    if not is_unknown(record.physical_host_id):
        return HostResolution(
            physical_host_id=record.physical_host_id.strip(),
            method=record.host_id_method or DEFAULT_METHOD,
            confidence=record.host_id_confidence or DEFAULT_CONFIDENCE,
        )
    return HostResolution(physical_host_id=record.main_fqdn, method=FALLBACK_METHOD, confidence="low")


def observed_physical_cpus(record: InspectionRecord) -> Optional[int]:
    """CPUs of the physical host as seen by this record, or None if not reported.

    A bare-metal record's own cpu_count is the host's count; a virtualized
    record without host_physical_cpus says nothing about the host.
    """
    if record.host_physical_cpus is not None:
        return record.host_physical_cpus
    if record.is_virtualized == "no":
        return record.cpu_count
    return None


def resolve_physical_host(txn: LedgerTransaction, record: InspectionRecord) -> HostResolution:
    """Identify the record's physical host and fold the observation into its row.

    The host row is read through the file's open transaction, so hosts
    created or updated earlier in the same file are seen.
    """
    resolution = identify_physical_host(record)
    seen = record.timestamp
    observed = observed_physical_cpus(record)

    host = txn.get_physical_host(resolution.physical_host_id)
    if host is None:
        txn.insert_physical_host(
            PhysicalHost(
                physical_host_id=resolution.physical_host_id,
                host_id_method=resolution.method,
                host_id_confidence=resolution.confidence,
                first_seen=seen,
                last_seen=seen,
                max_physical_cpus=observed,
            )
        )
        logger.debug(
            "Created physical host %s (method=%s, confidence=%s, cpus=%s)",
            resolution.physical_host_id,
            resolution.method,
            resolution.confidence,
            observed,
        )
        return resolution

    changed = merge_observation(host, resolution, seen, observed)
    if changed:
        txn.update_physical_host(host)
        logger.debug("Updated physical host %s (max_physical_cpus=%s)", host.physical_host_id, host.max_physical_cpus)
    return resolution


def merge_observation(
    host: PhysicalHost,
    resolution: HostResolution,
    seen: str,
    observed: Optional[int],
) -> bool:
    """Fold one observation into an existing host in place. Returns True if anything changed.

    max_physical_cpus only grows; a missing observation leaves it alone.
    Method and confidence change only for a strictly more confident id.
    """
    before = (host.first_seen, host.last_seen, host.max_physical_cpus, host.host_id_method, host.host_id_confidence)

    host.first_seen = min(host.first_seen, seen)
    host.last_seen = max(host.last_seen, seen)
    if observed is not None and (host.max_physical_cpus is None or observed > host.max_physical_cpus):
        host.max_physical_cpus = observed
    if _rank(resolution.confidence) > _rank(host.host_id_confidence):
        host.host_id_method = resolution.method
        host.host_id_confidence = resolution.confidence

    after = (host.first_seen, host.last_seen, host.max_physical_cpus, host.host_id_method, host.host_id_confidence)
    return before != after


def _rank(confidence: str) -> int:
    return _CONFIDENCE_RANK.get(confidence, -1)


def _where(record: InspectionRecord, message: str) -> str:
    return f"line {record.line}: {message}" if record.line is not None else message
