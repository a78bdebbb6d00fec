"""Data access layer for the invoice line synthesizer.

This module provides low-level helpers that read from and write to the
catalog workbook. The generation engine itself never calls into this module
for I/O; callers load a catalog snapshot here, hand it to the engine, and
decide afterwards whether to export the generated batch.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``, including the
   business-policy tolerances used by the engine.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet operations: loading catalog entries and appending generated lines.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Iterable, Optional, Sequence

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import SheetName


CONFIG_FILE_NAME = "config.ini"
PRODUCTS_SHEET = SheetName.PRODUCTS.value
GENERATED_LINES_SHEET = SheetName.GENERATED_LINES.value

_TRUE_STRINGS = {"1", "true", "yes", "y", "on"}


@dataclass(frozen=True)
class GenerationPolicy:
    """Business-policy tolerances and safety bounds for a generation run.

    The overshoot and shortfall values are policy decisions rather than
    derived constants, so every one of them can be overridden from the
    ``[Generation]`` section of ``config.ini``.
    """

    pool_overshoot: Decimal = Decimal("1.10")
    selection_overshoot: Decimal = Decimal("1.05")
    shortfall_threshold: Decimal = Decimal("0.20")
    epsilon: Decimal = Decimal("0.01")
    discount_step: Decimal = Decimal("0.5")
    max_attempts: int = 1000
    max_unlimited_quantity: int = 100
    quantity_headroom: int = 5

    def __post_init__(self) -> None:
        if self.pool_overshoot < Decimal("1") or self.selection_overshoot < Decimal("1"):
            raise ValueError("Overshoot tolerances must be at least 1")
        if not Decimal("0") <= self.shortfall_threshold <= Decimal("1"):
            raise ValueError("Shortfall threshold must lie between 0 and 1")
        if self.epsilon < Decimal("0"):
            raise ValueError("Epsilon must be zero or positive")
        if self.discount_step <= Decimal("0"):
            raise ValueError("Discount step must be greater than zero")
        if self.max_attempts <= 0 or self.max_unlimited_quantity <= 0:
            raise ValueError("Attempt and quantity bounds must be greater than zero")
        if self.quantity_headroom < 0:
            raise ValueError("Quantity headroom must be zero or positive")


@dataclass(frozen=True)
class GenerationDefaults:
    """Default request values used when the caller does not supply them."""

    max_lines: int = 10
    min_price_incl: Decimal = Decimal("0")
    max_price_incl: Decimal = Decimal("10000")
    stamp_duty_enabled: bool = True
    stamp_duty_amount: Decimal = Decimal("1.000")


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    organization_name: str
    schema_version: str
    policy: GenerationPolicy = field(default_factory=GenerationPolicy)
    defaults: GenerationDefaults = field(default_factory=GenerationDefaults)


@dataclass(frozen=True)
class CatalogEntry:
    """In-memory view of a row from the ``Products`` sheet."""

    product_id: str
    product_name: str
    reference: Optional[str]
    unit_price_excl: Decimal
    unit_price_incl: Decimal
    tax_rate: Decimal
    max_discount: Optional[Decimal]
    stock_quantity: Optional[Decimal]
    unlimited_stock: bool
    allow_backorder: bool

    @property
    def is_stock_limited(self) -> bool:
        """``True`` when recorded stock caps how many units may be sold."""
        return not (self.unlimited_stock or self.allow_backorder)


@dataclass(frozen=True)
class GeneratedLine:
    """A synthesized invoice line together with echoed catalog metadata."""

    product_id: str
    product_name: str
    product_reference: Optional[str]
    quantity: int
    unit_price_excl: Decimal
    tax_rate: Decimal
    discount_percent: Decimal
    line_total_excl: Decimal
    line_tax: Decimal
    line_total_incl: Decimal
    max_discount: Optional[Decimal]
    stock_quantity: Optional[Decimal]
    unlimited_stock: bool
    allow_backorder: bool


@dataclass(frozen=True)
class ExportedLineRow:
    """In-memory view of a row from the ``GeneratedLines`` sheet."""

    run_id: str
    line_number: int
    line: GeneratedLine


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. When no explicit path is given the function
    walks up from the current working directory toward the filesystem root
    looking for a file named ``CONFIG_FILE_NAME``.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute.

    Returns:
        configparser.ConfigParser: Initialized parser containing the raw
            configuration data.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    The ``[System]`` section is mandatory. The ``[Generation]`` and
    ``[Invoice]`` sections are optional and fall back to the defaults declared
    on :class:`GenerationPolicy` and :class:`GenerationDefaults`. Relative
    ``DataFile`` entries are expanded against ``base_path`` (or the current
    working directory) and resolved to an absolute path.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used as the anchor for relative
            ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required ``[System]`` options is missing.
        ValueError: If an optional numeric option cannot be parsed or violates
            the policy bounds.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc
    organization_name = parser.get("System", "OrganizationName", fallback="")

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        organization_name=organization_name,
        schema_version=schema_version,
        policy=parse_policy(parser),
        defaults=parse_defaults(parser),
    )


def parse_policy(parser: configparser.ConfigParser) -> GenerationPolicy:
    """Build a :class:`GenerationPolicy` from the ``[Generation]`` section."""

    base = GenerationPolicy()
    section = "Generation"
    try:
        return GenerationPolicy(
            pool_overshoot=_config_decimal(parser, section, "PoolOvershoot", base.pool_overshoot),
            selection_overshoot=_config_decimal(parser, section, "SelectionOvershoot", base.selection_overshoot),
            shortfall_threshold=_config_decimal(parser, section, "ShortfallThreshold", base.shortfall_threshold),
            epsilon=_config_decimal(parser, section, "Epsilon", base.epsilon),
            discount_step=_config_decimal(parser, section, "DiscountStep", base.discount_step),
            max_attempts=parser.getint(section, "MaxAttempts", fallback=base.max_attempts),
            max_unlimited_quantity=parser.getint(
                section, "MaxUnlimitedQuantity", fallback=base.max_unlimited_quantity
            ),
            quantity_headroom=parser.getint(section, "QuantityHeadroom", fallback=base.quantity_headroom),
        )
    except ValueError:
        log.error("Invalid [%s] configuration section", section)
        raise


def parse_defaults(parser: configparser.ConfigParser) -> GenerationDefaults:
    """Build :class:`GenerationDefaults` from ``[Generation]`` and ``[Invoice]``."""

    base = GenerationDefaults()
    return GenerationDefaults(
        max_lines=parser.getint("Generation", "MaxLines", fallback=base.max_lines),
        min_price_incl=_config_decimal(parser, "Generation", "MinPriceIncl", base.min_price_incl),
        max_price_incl=_config_decimal(parser, "Generation", "MaxPriceIncl", base.max_price_incl),
        stamp_duty_enabled=parser.getboolean("Invoice", "StampDutyEnabled", fallback=base.stamp_duty_enabled),
        stamp_duty_amount=_config_decimal(parser, "Invoice", "StampDutyAmount", base.stamp_duty_amount),
    )


def _config_decimal(parser: configparser.ConfigParser, section: str, option: str, default: Decimal) -> Decimal:
    raw = parser.get(section, option, fallback=None)
    if raw is None:
        return default
    try:
        return Decimal(raw.strip())
    except InvalidOperation as exc:
        raise ValueError(f"Invalid decimal for {section}.{option}: {raw!r}") from exc


def open_workbook(data_file: Path) -> Workbook:
    """Open the catalog workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the catalog workbook.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk at an explicitly provided destination.

    Parent directories are created on demand.

    Args:
        workbook (Workbook): Workbook instance to persist.
        destination (Path): Filesystem path that should receive the serialized
            workbook.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def iter_catalog(workbook: Workbook) -> Iterable[CatalogEntry]:
    """Iterate over catalog records stored on the ``Products`` worksheet.

    The iterator skips the header row and any fully empty rows. Each
    non-empty row is converted into a :class:`CatalogEntry` via
    :func:`deserialize_catalog_entry`.

    Args:
        workbook (Workbook): Workbook containing the ``Products`` sheet.

    Yields:
        CatalogEntry: One structured row for each meaningful record.
    """

    sheet = workbook[PRODUCTS_SHEET]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield deserialize_catalog_entry(raw)


def iter_exported_lines(workbook: Workbook) -> Iterable[ExportedLineRow]:
    """Stream previously exported lines from the ``GeneratedLines`` worksheet."""

    sheet = workbook[GENERATED_LINES_SHEET]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            yield deserialize_generated_line(raw)


def append_catalog_entry(workbook: Workbook, record: CatalogEntry) -> None:
    """Append a catalog record to the ``Products`` worksheet."""

    sheet = workbook[PRODUCTS_SHEET]
    sheet.append(serialize_catalog_entry(record))


def append_generated_lines(workbook: Workbook, lines: Sequence[GeneratedLine], *, run_id: str) -> int:
    """Append one accepted batch of generated lines to ``GeneratedLines``.

    Lines are numbered from 1 within the batch and tagged with ``run_id`` so
    several exported batches can share the worksheet.

    Args:
        workbook (Workbook): Workbook containing the generated lines sheet.
        lines (Sequence[GeneratedLine]): Batch returned by the engine.
        run_id (str): Identifier shared by every row of the batch.

    Returns:
        int: Number of rows appended.
    """

    sheet = workbook[GENERATED_LINES_SHEET]
    for line_number, line in enumerate(lines, start=1):
        sheet.append(serialize_generated_line(line, run_id=run_id, line_number=line_number))
    log.debug("Appended %d generated lines for run '%s'", len(lines), run_id)
    return len(lines)


def serialize_catalog_entry(record: CatalogEntry) -> list[object]:
    """Convert a catalog dataclass into the worksheet column ordering.

    Returns:
        list[object]: Values arranged as ``[ProductID, ProductName, Reference,
        PriceExclTax, PriceInclTax, TaxRate, MaxDiscount, StockQuantity,
        UnlimitedStock, AllowBackorder]``.
    """

    return [
        record.product_id,
        record.product_name,
        record.reference,
        record.unit_price_excl,
        record.unit_price_incl,
        record.tax_rate,
        record.max_discount,
        record.stock_quantity,
        record.unlimited_stock,
        record.allow_backorder,
    ]


def serialize_generated_line(record: GeneratedLine, *, run_id: str, line_number: int) -> list[object]:
    """Convert a generated line into the ``GeneratedLines`` column order."""

    return [
        run_id,
        line_number,
        record.product_id,
        record.product_name,
        record.product_reference,
        record.quantity,
        record.unit_price_excl,
        record.tax_rate,
        record.discount_percent,
        record.line_total_excl,
        record.line_tax,
        record.line_total_incl,
        record.max_discount,
        record.stock_quantity,
        record.unlimited_stock,
        record.allow_backorder,
    ]


def deserialize_catalog_entry(raw_row: Sequence[object]) -> CatalogEntry:
    """Convert a raw worksheet row into a strongly typed catalog record.

    Numeric cells are normalized into :class:`~decimal.Decimal` instances and
    identifiers are coerced to ``str`` to avoid surprises caused by Excel
    interpreting numeric-looking codes. Blank ``MaxDiscount`` and
    ``StockQuantity`` cells stay ``None``; a blank inclusive price is derived
    from the exclusive price and the tax rate.

    Args:
        raw_row (Sequence[object]): Raw cell values from the worksheet row.

    Returns:
        CatalogEntry: Dataclass containing consistent Python representations.
    """

    (
        product_id,
        product_name,
        reference,
        price_excl_raw,
        price_incl_raw,
        tax_rate_raw,
        max_discount_raw,
        stock_raw,
        unlimited_raw,
        backorder_raw,
    ) = tuple(raw_row[:10]) + (None,) * (10 - len(raw_row[:10]))

    unit_price_excl = to_decimal(price_excl_raw, Decimal("0"))
    tax_rate = to_decimal(tax_rate_raw, Decimal("0"))
    if price_incl_raw is None:
        unit_price_incl = unit_price_excl * (Decimal("1") + tax_rate / Decimal("100"))
    else:
        unit_price_incl = to_decimal(price_incl_raw, Decimal("0"))

    return CatalogEntry(
        product_id=str(product_id),
        product_name=str(product_name) if product_name is not None else "",
        reference=(str(reference) if reference is not None else None),
        unit_price_excl=unit_price_excl,
        unit_price_incl=unit_price_incl,
        tax_rate=tax_rate,
        max_discount=to_decimal(max_discount_raw, None),
        stock_quantity=to_decimal(stock_raw, None),
        unlimited_stock=to_bool(unlimited_raw),
        allow_backorder=to_bool(backorder_raw),
    )


def deserialize_generated_line(raw_row: Sequence[object]) -> ExportedLineRow:
    """Convert a raw ``GeneratedLines`` row back into an :class:`ExportedLineRow`."""

    (
        run_id,
        line_number,
        product_id,
        product_name,
        product_reference,
        quantity,
        unit_price_excl,
        tax_rate,
        discount_percent,
        line_total_excl,
        line_tax,
        line_total_incl,
        max_discount,
        stock_quantity,
        unlimited_stock,
        allow_backorder,
    ) = raw_row

    line = GeneratedLine(
        product_id=str(product_id),
        product_name=str(product_name) if product_name is not None else "",
        product_reference=(str(product_reference) if product_reference is not None else None),
        quantity=int(quantity),
        unit_price_excl=to_decimal(unit_price_excl, Decimal("0")),
        tax_rate=to_decimal(tax_rate, Decimal("0")),
        discount_percent=to_decimal(discount_percent, Decimal("0")),
        line_total_excl=to_decimal(line_total_excl, Decimal("0")),
        line_tax=to_decimal(line_tax, Decimal("0")),
        line_total_incl=to_decimal(line_total_incl, Decimal("0")),
        max_discount=to_decimal(max_discount, None),
        stock_quantity=to_decimal(stock_quantity, None),
        unlimited_stock=to_bool(unlimited_stock),
        allow_backorder=to_bool(allow_backorder),
    )
    return ExportedLineRow(run_id=str(run_id), line_number=int(line_number), line=line)


def to_decimal(raw: object, default: Optional[Decimal]) -> Optional[Decimal]:
    """Normalize a cell or payload value into a :class:`~decimal.Decimal`.

    ``None`` and blank strings map to ``default``. Floats go through ``str``
    so that Excel's binary representation does not leak extra digits.

    Raises:
        ValueError: If ``raw`` is not a decimal-compatible value.
    """

    if raw is None:
        return default
    if isinstance(raw, Decimal):
        return raw
    text = str(raw).strip()
    if not text:
        return default
    try:
        return Decimal(text)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid decimal value: {raw!r}") from exc


def to_bool(raw: object) -> bool:
    """Normalize workbook and payload flags, accepting common text spellings."""

    if isinstance(raw, str):
        return raw.strip().lower() in _TRUE_STRINGS
    return bool(raw)
