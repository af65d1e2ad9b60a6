"""
ledger/upsert.py -- Idempotent upsert of one file's records into the ledger.

One file is one transaction. For each record, in file order:

  ensure landscape node -> resolve physical host -> evaluate eligibility
  -> upsert measurement -> upsert detected products

Rows are keyed by their natural identities, so re-importing a file refreshes
fields without adding rows: every row is counted as created or updated, never
both. Any ResolutionError or StoreError rolls the whole file back.

Skippable records (counted in records_skipped, file still commits, session
"partial"):
  1. An identity already imported earlier in the same file that adds nothing
     new. A repeat that only adds product codes is merged; one that
     contradicts earlier values is a ResolutionError.
  2. A record whose inspector reported detection_result=ERROR.
  3. A product whose code is not among the loaded reference product codes.
     Only enforced when reference product codes have been loaded at all.
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from core.errors import PartialRecordSkip, ResolutionError
from core.models import InspectionRecord, ProductDetection, format_timestamp
from ledger.eligibility import evaluate
from ledger.models import DetectedProduct, Measurement
from ledger.reference import ReferenceData
from ledger.resolver import identify_physical_host, resolve_physical_host
from ledger.store import LedgerStore, LedgerTransaction

logger = logging.getLogger("corecount.upsert")


@dataclass
class FileImportResult:
    """Row counts of one committed file. Measurements and products each count as records."""

    source_file: str
    hostname: str
    created: int = 0
    updated: int = 0
    skipped: int = 0
    skip_reasons: list[str] = field(default_factory=list)

    @property
    def status(self) -> str:
        return "partial" if self.skipped else "success"

    def count(self, created: bool) -> None:
        if created:
            self.created += 1
        else:
            self.updated += 1

    def skip(self, reason: str) -> None:
        self.skipped += 1
        self.skip_reasons.append(reason)


@dataclass
class _Imported:
    """What this file already wrote for one identity."""

    line: Optional[int]
    fields: tuple
    products: dict[str, ProductDetection]


def import_records(
    store: LedgerStore,
    records: Iterable[InspectionRecord],
    reference: ReferenceData,
    source_file: str,
    hostname: str,
) -> FileImportResult:
    """Write one file's records in a single transaction and return the counts.

    Raises ResolutionError or StoreError after rolling back; nothing from the
    file is then visible in the ledger.
    """
    result = FileImportResult(source_file=source_file, hostname=hostname)
    imported_at = format_timestamp(datetime.now(timezone.utc))
    seen: dict[tuple[str, str], _Imported] = {}

    with store.transaction() as txn:
        for record in records:
            try:
                _import_record(txn, record, reference, source_file, imported_at, seen, result)
            except PartialRecordSkip as skip:
                result.skip(skip.reason)
                logger.warning("%s: skipped record: %s", source_file, skip.reason)

    return result


def _import_record(
    txn: LedgerTransaction,
    record: InspectionRecord,
    reference: ReferenceData,
    source_file: str,
    imported_at: str,
    seen: dict[tuple[str, str], _Imported],
    result: FileImportResult,
) -> None:
    if record.is_detection_error:
        raise PartialRecordSkip(
            _where(record, f"inspector reported ERROR for {record.main_fqdn or 'host'}: {record.error_message}")
        )

    identify_physical_host(record)  # raises on a missing FQDN

    earlier = seen.get(record.identity)
    if earlier is not None:
        _merge_repeat(txn, record, earlier, reference, result)
        return

    txn.ensure_landscape_node(record.main_fqdn, record.short_hostname)
    resolution = resolve_physical_host(txn, record)
    eligibility = evaluate(record, reference)

    measurement = Measurement(
        main_fqdn=record.main_fqdn,
        detection_timestamp=record.timestamp,
        os_name=record.os_name,
        os_version=record.os_version,
        cpu_count=record.cpu_count,
        is_virtualized=record.is_virtualized,
        considered_cpus=eligibility.considered_cpus,
        virt_type=record.virt_type,
        processor_vendor=record.processor_vendor,
        processor_brand=record.processor_brand,
        host_physical_cpus=record.host_physical_cpus,
        partition_cpus=record.partition_cpus,
        processor_eligible=eligibility.processor_eligible.value,
        os_eligible=eligibility.os_eligible.value,
        virt_eligible=eligibility.virt_eligible.value,
        physical_host_id=resolution.physical_host_id,
        host_id_method=resolution.method,
        host_id_confidence=resolution.confidence,
        source_file=source_file,
        imported_at=imported_at,
    )
    result.count(txn.upsert_measurement(measurement))
    seen[record.identity] = _Imported(line=record.line, fields=record.measurement_fields(), products={})

    for product in record.products.values():
        _write_product(txn, record, product, reference, seen[record.identity], result)


def _merge_repeat(
    txn: LedgerTransaction,
    record: InspectionRecord,
    earlier: _Imported,
    reference: ReferenceData,
    result: FileImportResult,
) -> None:
    """Handle a second row for an identity already written by this file."""
    if record.measurement_fields() != earlier.fields:
        raise ResolutionError(
            _where(record, f"contradicts line {earlier.line} for {record.main_fqdn} at {record.timestamp}")
        )

    new_products = []
    for code, product in record.products.items():
        previous = earlier.products.get(code)
        if previous is None:
            new_products.append(product)
        elif previous != product:
            raise ResolutionError(
                _where(record, f"product {code} contradicts line {earlier.line} for {record.main_fqdn}")
            )

    if not new_products:
        raise PartialRecordSkip(_where(record, f"duplicate of line {earlier.line} for {record.main_fqdn}"))

    logger.debug("Merging %d new product(s) into %s at %s", len(new_products), record.main_fqdn, record.timestamp)
    for product in new_products:
        _write_product(txn, record, product, reference, earlier, result)


def _write_product(
    txn: LedgerTransaction,
    record: InspectionRecord,
    product: ProductDetection,
    reference: ReferenceData,
    imported: _Imported,
    result: FileImportResult,
) -> None:
    if reference.product_codes and not reference.knows_product(product.product_code):
        reason = _where(record, f"unknown product code {product.product_code}")
        result.skip(reason)
        logger.warning("%s: skipped record: %s", record.main_fqdn, reason)
        imported.products[product.product_code] = product
        return

    created = txn.upsert_detected_product(
        DetectedProduct(
            main_fqdn=record.main_fqdn,
            product_code=product.product_code,
            detection_timestamp=record.timestamp,
            status=product.status,
            running_status=product.running_status,
            running_count=product.running_count,
            install_status=product.install_status,
            install_count=product.install_count,
        )
    )
    result.count(created)
    imported.products[product.product_code] = product


def _where(record: InspectionRecord, message: str) -> str:
    return f"line {record.line}: {message}" if record.line is not None else message
