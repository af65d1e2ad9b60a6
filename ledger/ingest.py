"""
ledger/ingest.py -- Inspection export parser and validator.

Turns the bytes of one inspector export into InspectionRecords, or raises
core.errors.ValidationError naming the first offending line. Parsing is
strict: one bad row rejects the whole file. No database access and no side
effects, so every rule here is testable against literal fixture bytes.

Supported layouts:
  - Tabular    one row per measurement, named columns (header optional)
  - Key-value  "Parameter,Value" header, one parameter per line, one
               measurement per file (the inspector's native output)

Tabular columns:
  main_fqdn, detection_timestamp, os_name, os_version, cpu_count,
  is_virtualized, virt_type, processor_vendor, processor_brand,
  host_physical_cpus, partition_cpus, physical_host_id, host_id_method,
  host_id_confidence                                   (required, in this
                                                        order when headerless)
  hostname, detection_result, error_message            (optional)
  <CODE>_status, <CODE>_running_status, <CODE>_running_count,
  <CODE>_install_status, <CODE>_install_count          (per tracked product;
                                                        _status required)

Pipeline:
  file bytes -> parse_inspection_csv() -> ParsedFile(records)
  -> ledger.upsert.import_records() inside one transaction
"""

import csv
import io
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

from core.errors import ValidationError
from core.models import (
    CONFIDENCE_LEVELS,
    INSTALL_VALUES,
    PRESENCE_VALUES,
    RUNNING_VALUES,
    VIRTUALIZED_VALUES,
    InspectionRecord,
    ProductDetection,
    count_cpu_list,
    is_unknown,
    parse_timestamp,
)

LAYOUT_TABULAR = "tabular"
LAYOUT_KEY_VALUE = "key-value"

BASE_COLUMNS = (
    "main_fqdn",
    "detection_timestamp",
    "os_name",
    "os_version",
    "cpu_count",
    "is_virtualized",
    "virt_type",
    "processor_vendor",
    "processor_brand",
    "host_physical_cpus",
    "partition_cpus",
    "physical_host_id",
    "host_id_method",
    "host_id_confidence",
)
OPTIONAL_COLUMNS = ("hostname", "detection_result", "error_message")
KNOWN_COLUMNS = frozenset(BASE_COLUMNS + OPTIONAL_COLUMNS)

# The lazy code group takes the shortest prefix that leaves a field suffix.
_PRODUCT_COLUMN_RE = re.compile(
    r"^(?P<code>[a-z0-9][a-z0-9_]*?)_(?P<field>running_status|running_count|install_status|install_count|status)$"
)

# Key-value sub-field suffix -> product field. Other sub-fields (install paths,
# command lines, vendor product code) are not stored and are ignored.
_KV_PRODUCT_FIELDS = {
    "": "status",
    "RUNNING_STATUS": "running_status",
    "RUNNING_COUNT": "running_count",
    "INSTALL_STATUS": "install_status",
    "INSTALL_COUNT": "install_count",
}
_KV_PRODUCT_MARKERS = ("PRD", "NPR", "NONPROD")

_FILENAME_RE = re.compile(r"^iwdli_output_([^_]+)_\d{4}-?\d{2}-?\d{2}_\d{6}\.csv$", re.IGNORECASE)

# Largest value an SQLite INTEGER column holds.
MAX_INTEGER = 2**63 - 1


@dataclass
class ParsedFile:
    """Everything the parser learned from one file.

    hostname identifies the file's host for the audit trail, even when the
    file holds zero records.
    """

    source_file: str
    hostname: str
    layout: str  # "tabular" | "key-value"
    records: list[InspectionRecord] = field(default_factory=list)


class _FieldError(ValueError):
    """One field failed validation. Callers attach the line number."""

    def __init__(self, field_name: str, message: str) -> None:
        self.field_name = field_name
        super().__init__(message)


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


def parse_inspection_file(path: Union[str, Path]) -> ParsedFile:
    """Read and parse one export file. Unreadable files are a ValidationError."""
    path = Path(path)
    try:
        content = path.read_bytes()
    except OSError as exc:
        raise ValidationError(f"cannot read {path.name}: {exc.strerror or exc}") from exc
    return parse_inspection_csv(content, source_file=path.name)


def parse_inspection_csv(content: Union[bytes, str], source_file: str = "<memory>") -> ParsedFile:
    """Parse one export, detecting its layout from the first non-blank row.

    A file with no data rows parses to an empty record list; that is a
    successful (empty) import, not a failure.
    """
    text = _decode(content)
    reader = csv.reader(io.StringIO(text))
    rows: list[tuple[int, list[str]]] = []
    try:
        for row in reader:
            if not any(cell.strip() for cell in row):
                continue
            rows.append((reader.line_num, row))
    except csv.Error as exc:
        raise ValidationError(f"malformed CSV: {exc}", line=reader.line_num) from exc

    name = Path(source_file).name
    if not rows:
        return ParsedFile(source_file=name, hostname=_file_hostname(name, []), layout=LAYOUT_TABULAR)

    first = [cell.strip().lower() for cell in rows[0][1]]
    if first[:2] == ["parameter", "value"]:
        layout = LAYOUT_KEY_VALUE
        records = _parse_key_value(rows[1:], hostname_from_filename(name))
    else:
        layout = LAYOUT_TABULAR
        records = _parse_tabular(rows)

    return ParsedFile(source_file=name, hostname=_file_hostname(name, records), layout=layout, records=records)


def hostname_from_filename(name: str) -> Optional[str]:
    """Extract <host> from iwdli_output_<host>_<YYYY[-]MM[-]DD_HHMMSS>.csv, else None."""
    match = _FILENAME_RE.match(Path(name).name)
    return match.group(1) if match else None


# ---------------------------------------------------------------------------
# Tabular layout
# ---------------------------------------------------------------------------


def _parse_tabular(rows: list[tuple[int, list[str]]]) -> list[InspectionRecord]:
    header_line, first = rows[0]
    names = [cell.strip().lower() for cell in first]

    if any(name in KNOWN_COLUMNS for name in names):
        columns, products = _validate_header(names, header_line)
        expected = len(names)
        data = rows[1:]
    else:
        # Headerless: base columns only, in their documented order.
        columns = {name: index for index, name in enumerate(BASE_COLUMNS)}
        products = {}
        expected = len(BASE_COLUMNS)
        data = rows

    records: list[InspectionRecord] = []
    for line, row in data:
        if len(row) != expected:
            raise ValidationError(f"expected {expected} columns, got {len(row)}", line=line)
        values = {name: row[index] for name, index in columns.items()}
        product_values = {
            code: {field_name: row[index] for field_name, index in fields.items()}
            for code, fields in products.items()
        }
        try:
            record = _build_record(values, product_values)
        except _FieldError as exc:
            raise ValidationError(str(exc), line=line) from exc
        record.line = line
        records.append(record)
    return records


def _validate_header(names: list[str], line: int) -> tuple[dict[str, int], dict[str, dict[str, int]]]:
    """Map header names to column indexes, rejecting anything unrecognized.

    Returns (system column -> index, product code -> {field -> index}).
    """
    columns: dict[str, int] = {}
    products: dict[str, dict[str, int]] = {}
    unknown: list[str] = []
    seen: set[str] = set()

    for index, name in enumerate(names):
        if name in seen:
            raise ValidationError(f"duplicate column {name!r} in header", line=line)
        seen.add(name)
        if name in KNOWN_COLUMNS:
            columns[name] = index
            continue
        match = _PRODUCT_COLUMN_RE.match(name)
        if match is None:
            unknown.append(name or "<empty>")
            continue
        products.setdefault(match.group("code").upper(), {})[match.group("field")] = index

    if unknown:
        raise ValidationError(f"unrecognized header column(s): {', '.join(unknown)}", line=line)
    missing = [name for name in BASE_COLUMNS if name not in columns]
    if missing:
        raise ValidationError(f"header is missing required column(s): {', '.join(missing)}", line=line)
    for code, fields in products.items():
        if "status" not in fields:
            raise ValidationError(f"product {code} has no {code.lower()}_status column", line=line)
    return columns, products


# ---------------------------------------------------------------------------
# Key-value layout
# ---------------------------------------------------------------------------


def _parse_key_value(rows: list[tuple[int, list[str]]], filename_host: Optional[str]) -> list[InspectionRecord]:
    """Parse a Parameter,Value export into its single record.

    Parameter names are case-insensitive. Rows with fewer than two cells are
    ignored. MAIN_FQDN defaults to <hostname>.local, where hostname comes from
    a HOSTNAME parameter or the file name. A header-only file has no record.
    """
    if not rows:
        return []

    values: dict[str, str] = {}
    products: dict[str, dict[str, str]] = {}
    lines: dict[str, int] = {}

    for line, row in rows:
        if len(row) < 2:
            continue
        parameter = row[0].strip().upper()
        value = row[1].strip()

        product = _split_product_parameter(parameter)
        if product is not None:
            code, suffix = product
            field_name = _KV_PRODUCT_FIELDS.get(suffix)
            if field_name is not None:
                products.setdefault(code, {})[field_name] = value
                lines[f"{code.lower()}_{field_name}"] = line
            continue

        name = parameter.lower()
        if name in KNOWN_COLUMNS:
            values[name] = value
            lines[name] = line

    if "detection_timestamp" not in values:
        raise ValidationError("missing required parameter DETECTION_TIMESTAMP")

    hostname = values.get("hostname") or filename_host or ""
    values["hostname"] = hostname
    if not values.get("main_fqdn") and hostname:
        values["main_fqdn"] = f"{hostname}.local"
    values.setdefault("is_virtualized", "unknown")

    try:
        record = _build_record(values, products)
    except _FieldError as exc:
        raise ValidationError(str(exc), line=lines.get(exc.field_name)) from exc
    record.line = lines["detection_timestamp"]
    return [record]


def _split_product_parameter(parameter: str) -> Optional[tuple[str, str]]:
    """Split IS_ONP_PRD_INSTALL_COUNT into ("IS_ONP_PRD", "INSTALL_COUNT").

    The product code runs up to and including the first PRD/NPR/NONPROD
    segment. A trailing numeric segment (INSTALL_PATH_01) is dropped.
    Returns None for system parameters.
    """
    parts = parameter.split("_")
    for index, part in enumerate(parts):
        if part in _KV_PRODUCT_MARKERS and index > 0:
            rest = parts[index + 1 :]
            if rest and rest[-1].isdigit():
                rest = rest[:-1]
            return "_".join(parts[: index + 1]), "_".join(rest)
    return None


# ---------------------------------------------------------------------------
# Field validation (shared by both layouts)
# ---------------------------------------------------------------------------


def _build_record(values: dict[str, str], products: dict[str, dict[str, str]]) -> InspectionRecord:
    raw_timestamp = values.get("detection_timestamp", "")
    try:
        detected_at = parse_timestamp(raw_timestamp)
    except (ValueError, OverflowError):
        raise _FieldError("detection_timestamp", f"unparseable detection_timestamp {raw_timestamp!r}") from None

    raw_cpu_count = values.get("cpu_count")
    cpu_count = None if raw_cpu_count is None else _parse_int("cpu_count", raw_cpu_count)

    partition_cpus = values.get("partition_cpus", "").strip()
    try:
        partition_count = count_cpu_list(partition_cpus)
        if partition_count is not None and partition_count > MAX_INTEGER:
            raise ValueError(partition_cpus)
    except ValueError:
        raise _FieldError(
            "partition_cpus", f"partition_cpus must be a CPU count or CPU list, got {partition_cpus!r}"
        ) from None

    return InspectionRecord(
        main_fqdn=values.get("main_fqdn", "").strip().lower(),
        detection_timestamp=detected_at,
        os_name=values.get("os_name", "").strip(),
        os_version=values.get("os_version", "").strip(),
        cpu_count=cpu_count,
        is_virtualized=_parse_choice("is_virtualized", values.get("is_virtualized", ""), VIRTUALIZED_VALUES),
        virt_type=values.get("virt_type", "").strip(),
        processor_vendor=values.get("processor_vendor", "").strip(),
        processor_brand=values.get("processor_brand", "").strip(),
        host_physical_cpus=_parse_int("host_physical_cpus", values.get("host_physical_cpus", ""), allow_unknown=True),
        partition_cpus="" if is_unknown(partition_cpus) else partition_cpus,
        physical_host_id=values.get("physical_host_id", "").strip(),
        host_id_method=values.get("host_id_method", "").strip(),
        host_id_confidence=_parse_choice(
            "host_id_confidence", values.get("host_id_confidence", ""), CONFIDENCE_LEVELS, default=""
        ),
        hostname=values.get("hostname", "").strip(),
        detection_result=values.get("detection_result", "").strip().upper(),
        error_message=values.get("error_message", "").strip(),
        products={code: _build_product(code, fields) for code, fields in sorted(products.items())},
    )


def _build_product(code: str, fields: dict[str, str]) -> ProductDetection:
    prefix = code.lower()
    return ProductDetection(
        product_code=code,
        status=_parse_choice(f"{prefix}_status", fields.get("status", ""), PRESENCE_VALUES),
        running_status=_parse_choice(
            f"{prefix}_running_status", fields.get("running_status", ""), RUNNING_VALUES, default="unknown"
        ),
        running_count=_parse_int(f"{prefix}_running_count", fields.get("running_count", ""), allow_unknown=True) or 0,
        install_status=_parse_choice(
            f"{prefix}_install_status", fields.get("install_status", ""), INSTALL_VALUES, default="unknown"
        ),
        install_count=_parse_int(f"{prefix}_install_count", fields.get("install_count", ""), allow_unknown=True) or 0,
    )


def _parse_int(field_name: str, value: str, allow_unknown: bool = False) -> Optional[int]:
    text = value.strip()
    if allow_unknown and is_unknown(text):
        return None
    if not (text.isascii() and text.isdigit()) or int(text) > MAX_INTEGER:
        raise _FieldError(field_name, f"{field_name} must be a non-negative integer, got {value!r}")
    return int(text)


def _parse_choice(field_name: str, value: str, choices: tuple[str, ...], default: Optional[str] = None) -> str:
    text = value.strip().lower()
    if not text and default is not None:
        return default
    if text not in choices:
        raise _FieldError(field_name, f"{field_name} must be one of {', '.join(choices)}; got {value!r}")
    return text


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _decode(content: Union[bytes, str]) -> str:
    if isinstance(content, str):
        return content.lstrip("\ufeff")
    try:
        return content.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise ValidationError(f"file is not valid UTF-8 text ({exc.reason} at byte {exc.start})") from exc


def _file_hostname(name: str, records: list[InspectionRecord]) -> str:
    """Hostname for the audit row: file name pattern, then first record, then file stem."""
    from_name = hostname_from_filename(name)
    if from_name:
        return from_name
    for record in records:
        if record.short_hostname:
            return record.short_hostname
    return Path(name).stem or "unknown"
