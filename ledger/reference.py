"""
ledger/reference.py -- Reference data: license terms, product codes, eligibility rules.

The import pipeline only reads reference data. It is loaded once per run into
a ReferenceData value and handed to the upsert engine, so a run sees one
consistent snapshot even if the tables are reloaded meanwhile.

The CSV loaders below are the only writers of the reference tables:

  license terms   license-terms-id,program-number,program-name
  product codes   product-mnemo-id,product-code,product-name,mode,license-terms-id,notes

Both loaders run in one transaction, skip incomplete rows, and report
(inserted, updated). A product code that names an unknown license term gets a
placeholder term so the foreign key holds; loading the terms file later fills
it in.
"""

import csv
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

from core.errors import ValidationError
from core.models import NODE_MODES
from ledger.eligibility import EligibilityCriteria
from ledger.models import LicenseTerm, ProductCode
from ledger.store import LedgerStore

logger = logging.getLogger("corecount.reference")

LICENSE_TERMS_HEADER = ("license-terms-id", "program-number", "program-name")
PRODUCT_CODES_HEADER = ("product-mnemo-id", "product-code", "product-name", "mode", "license-terms-id", "notes")


@dataclass(frozen=True)
class ReferenceData:
    """Read-only snapshot of everything the pipeline looks up."""

    criteria: EligibilityCriteria = field(default_factory=EligibilityCriteria)
    product_codes: frozenset[str] = frozenset()

    def knows_product(self, product_code: str) -> bool:
        return product_code.upper() in self.product_codes


def load_reference_data(store: LedgerStore, criteria: Optional[EligibilityCriteria] = None) -> ReferenceData:
    """Snapshot the reference tables, paired with the given eligibility rules."""
    return ReferenceData(
        criteria=criteria if criteria is not None else EligibilityCriteria(),
        product_codes=frozenset(code.product_code.upper() for code in store.list_product_codes()),
    )


# ---------------------------------------------------------------------------
# CSV loaders
# ---------------------------------------------------------------------------


def load_license_terms_csv(store: LedgerStore, path: Union[str, Path]) -> tuple[int, int]:
    """Upsert license terms from CSV. Returns (inserted, updated)."""
    rows = _read_reference_csv(path, LICENSE_TERMS_HEADER)
    inserted = updated = 0
    with store.transaction() as txn:
        for _, row in rows:
            if len(row) < 3:
                continue
            term_id, program_number, program_name = (cell.strip() for cell in row[:3])
            if not term_id or not program_number:
                continue
            created = txn.upsert_license_term(
                LicenseTerm(term_id=term_id, program_number=program_number, program_name=program_name)
            )
            if created:
                inserted += 1
            else:
                updated += 1
    logger.info("License terms loaded from %s: %d inserted, %d updated", Path(path).name, inserted, updated)
    return inserted, updated


def load_product_codes_csv(store: LedgerStore, path: Union[str, Path]) -> tuple[int, int]:
    """Upsert product codes from CSV. Returns (inserted, updated).

    Raises ValidationError for an unknown mode; the whole file is rolled back.
    """
    rows = _read_reference_csv(path, PRODUCT_CODES_HEADER)
    inserted = updated = 0
    with store.transaction() as txn:
        for line, row in rows:
            if len(row) < 5:
                continue
            product_code = row[0].strip().upper()
            if not product_code:
                continue
            term_id = row[4].strip()
            if term_id and txn.ensure_license_term(term_id):
                logger.debug("Created placeholder license term %s for %s", term_id, product_code)
            created = txn.upsert_product_code(
                ProductCode(
                    product_code=product_code,
                    ibm_product_code=row[1].strip(),
                    product_name=row[2].strip(),
                    mode=normalize_mode(row[3], line),
                    term_id=term_id,
                    notes=row[5].strip() if len(row) > 5 else "",
                )
            )
            if created:
                inserted += 1
            else:
                updated += 1
    logger.info("Product codes loaded from %s: %d inserted, %d updated", Path(path).name, inserted, updated)
    return inserted, updated


def normalize_mode(value: str, line: Optional[int] = None) -> str:
    """Map "prod", "NON PROD", "non-prod" and friends onto PROD / NON_PROD. Empty means PROD."""
    mode = value.strip().upper().replace(" ", "_").replace("-", "_")
    if not mode:
        return "PROD"
    if mode == "NONPROD":
        mode = "NON_PROD"
    if mode not in NODE_MODES:
        raise ValidationError(f"mode must be PROD or NON_PROD, got {value!r}", line=line)
    return mode


def _read_reference_csv(path: Union[str, Path], header: tuple[str, ...]) -> list[tuple[int, list[str]]]:
    """Read a reference CSV, checking its header. Returns (line, row) pairs for the data rows."""
    path = Path(path)
    try:
        with path.open(newline="", encoding="utf-8-sig") as handle:
            reader = csv.reader(handle, skipinitialspace=True)
            found = next(reader, None)
            if found is None or tuple(cell.strip().lower() for cell in found) != header:
                raise ValidationError(f"invalid header in {path.name}, expected: {','.join(header)}", line=1)
            return [(reader.line_num, row) for row in reader if any(cell.strip() for cell in row)]
    except OSError as exc:
        raise ValidationError(f"cannot read {path.name}: {exc.strerror or exc}") from exc
    except (csv.Error, UnicodeDecodeError) as exc:
        raise ValidationError(f"malformed CSV in {path.name}: {exc}") from exc
