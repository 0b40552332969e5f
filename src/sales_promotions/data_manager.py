"""Data access layer for the promotion engine.

This module provides low-level helpers that read from and write to the
master workbook. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet operations: loading promotions, products and customers as domain
   objects, appending applied-promotion audit rows, and updating individual
   promotion cells such as the usage counter.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, FrozenSet, Iterable, Optional, Sequence

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import CustomerEligibility, CustomerType, PromotionType, SheetName
from .models import AppliedPromotion, Customer, Product, Promotion, ensure_aware
from .money import ZERO, to_decimal


CONFIG_FILE_NAME = "config.ini"
PROMOTIONS_SHEET = SheetName.PROMOTIONS.value
PRODUCTS_SHEET = SheetName.PRODUCTS.value
CUSTOMERS_SHEET = SheetName.CUSTOMERS.value
APPLIED_PROMOTIONS_SHEET = SheetName.APPLIED_PROMOTIONS.value

SCOPE_SEPARATOR = ","
_TRUE_STRINGS = {"true", "yes", "y", "1"}


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    store_name: str
    schema_version: str
    auto_apply_promotions: bool = True


@dataclass(frozen=True)
class AppliedPromotionRow:
    """In-memory view of a row from the ``AppliedPromotions`` sheet."""

    sale_id: str
    promotion_id: str
    promotion_name: str
    promotion_type: str
    coupon_code: Optional[str]
    discount_amount: Decimal
    original_amount: Decimal
    final_amount: Decimal
    is_auto_applied: bool
    applied_at_iso: str


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no parent directory holds ``CONFIG_FILE_NAME``.
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
            absolute. ``~`` is expanded.

    Returns:
        configparser.ConfigParser: Parser containing the raw configuration.
            Validation of required entries happens in :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    Relative ``DataFile`` entries are anchored to ``base_path`` (or the
    current working directory) and resolved. ``[Checkout] AutoApplyPromotions``
    is optional and defaults to ``True``.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used as the anchor for relative
            data file paths.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If ``AutoApplyPromotions`` is not a boolean literal.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        store_name = parser.get("System", "StoreName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    auto_apply = parser.getboolean("Checkout", "AutoApplyPromotions", fallback=True)

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        store_name=store_name,
        schema_version=schema_version,
        auto_apply_promotions=auto_apply,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to ``destination``, creating parent folders."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)
    log.debug("Saved workbook to '%s'", dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def _iter_sheet_rows(workbook: Workbook, sheet_name: str) -> Iterable[Sequence[object]]:
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


def iter_promotions(workbook: Workbook) -> Iterable[Promotion]:
    """Iterate over promotions stored on the ``Promotions`` worksheet.

    Rows are yielded in sheet order, which is the catalog order the engine
    preserves when filtering.

    Args:
        workbook (Workbook): Workbook containing the ``Promotions`` sheet.

    Rows that cannot be parsed are logged and skipped so one malformed
    promotion does not hide the rest of the catalog.

    Yields:
        Promotion: One mutable promotion per well-formed row.
    """

    for raw in _iter_sheet_rows(workbook, PROMOTIONS_SHEET):
        try:
            yield deserialize_promotion(raw)
        except (ValueError, TypeError, InvalidOperation) as exc:
            log.warning("Skipping malformed promotion row '%s': %s", raw[0], exc)


def iter_products(workbook: Workbook) -> Iterable[Product]:
    """Iterate over the ``Products`` worksheet and yield typed records."""

    for raw in _iter_sheet_rows(workbook, PRODUCTS_SHEET):
        yield deserialize_product(raw)


def iter_customers(workbook: Workbook) -> Iterable[Customer]:
    """Iterate over the ``Customers`` worksheet and yield typed records."""

    for raw in _iter_sheet_rows(workbook, CUSTOMERS_SHEET):
        yield deserialize_customer(raw)


def iter_applied_promotions(workbook: Workbook) -> Iterable[AppliedPromotionRow]:
    """Stream the applied-promotion audit log in append order."""

    for raw in _iter_sheet_rows(workbook, APPLIED_PROMOTIONS_SHEET):
        yield deserialize_applied_promotion(raw)


def append_promotion(workbook: Workbook, record: Promotion) -> None:
    workbook[PROMOTIONS_SHEET].append(serialize_promotion(record))


def append_product(workbook: Workbook, record: Product) -> None:
    workbook[PRODUCTS_SHEET].append(serialize_product(record))


def append_customer(workbook: Workbook, record: Customer) -> None:
    workbook[CUSTOMERS_SHEET].append(serialize_customer(record))


def append_applied_promotion(workbook: Workbook, record: AppliedPromotionRow) -> None:
    """Append an audit row to the ``AppliedPromotions`` worksheet.

    Numerical fields remain :class:`~decimal.Decimal` instances after
    serialization, allowing Excel to preserve precision when the workbook is
    saved.
    """

    workbook[APPLIED_PROMOTIONS_SHEET].append(serialize_applied_promotion(record))


def update_promotion(workbook: Workbook, promotion_id: str, *, field_values: dict[str, Any]) -> None:
    """Update selected columns for an existing promotion.

    Only the named columns are written; other cells are left untouched.

    Args:
        workbook (Workbook): Workbook containing the promotions sheet.
        promotion_id (str): Identifier used to locate the target row.
        field_values (dict[str, Any]): Mapping of column names to replacement
            values, e.g. ``{"UsageCount": 3}``.

    Raises:
        KeyError: If the promotion or any referenced column cannot be found.
    """

    row_index = locate_row(workbook, PROMOTIONS_SHEET, "PromotionID", promotion_id)
    if row_index is None:
        raise KeyError(f"Promotion not found: {promotion_id}")

    sheet = workbook[PROMOTIONS_SHEET]
    header_map = {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}

    for field_name, value in field_values.items():
        if field_name not in header_map:
            raise KeyError(f"Unknown promotion field: {field_name}")
        sheet.cell(row=row_index, column=header_map[field_name], value=value)


def delete_applied_promotion(workbook: Workbook, sale_id: str, promotion_id: str) -> Optional[AppliedPromotionRow]:
    """Delete the first audit row recorded for ``promotion_id`` on ``sale_id``.

    Returns:
        AppliedPromotionRow | None: The deleted row, or ``None`` when no row
            matches.
    """

    sheet = workbook[APPLIED_PROMOTIONS_SHEET]
    for row_idx, raw in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if raw[0] is None:
            continue
        if str(raw[0]) == str(sale_id) and str(raw[1]) == str(promotion_id):
            removed = deserialize_applied_promotion(raw)
            sheet.delete_rows(row_idx)
            return removed
    return None


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Cell values are compared as strings so identifiers that Excel stored as
    numbers still match.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the lookup column.
        key_value (str): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index of the first match, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_map = {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        cell_value = row[key_col_index - 1]
        if cell_value is not None and str(cell_value) == str(key_value):
            return row_idx

    return None


# ---------------------------------------------------------------------------
# Cell conversions
# ---------------------------------------------------------------------------


def _optional_str(value: object) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _parse_bool(value: object) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_STRINGS
    return bool(value)


def _parse_datetime(value: object) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_aware(value)
    if isinstance(value, date):
        return ensure_aware(datetime(value.year, value.month, value.day))
    return ensure_aware(datetime.fromisoformat(str(value)))


def _parse_scope(value: object) -> FrozenSet[str]:
    if value is None:
        return frozenset()
    return frozenset(part.strip() for part in str(value).split(SCOPE_SEPARATOR) if part.strip())


def _format_scope(values: FrozenSet[str]) -> Optional[str]:
    return SCOPE_SEPARATOR.join(sorted(values)) if values else None


def _format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def serialize_promotion(record: Promotion) -> list[object]:
    """Convert a promotion into the ``Promotions`` column ordering.

    Scope sets are written as sorted, comma-separated strings and datetimes as
    ISO-8601 text.
    """

    return [
        record.promotion_id,
        record.name,
        record.description,
        record.type.value,
        record.discount_value,
        record.minimum_order_amount,
        record.maximum_discount_amount,
        _format_datetime(record.start_date),
        _format_datetime(record.end_date),
        record.is_active,
        _format_scope(record.applicable_products),
        _format_scope(record.applicable_categories),
        record.usage_limit,
        record.usage_count,
        record.customer_eligibility.value,
        record.coupon_code,
        record.auto_apply,
    ]


def deserialize_promotion(raw_row: Sequence[object]) -> Promotion:
    """Convert a raw worksheet row into a :class:`Promotion`.

    Blank optional cells become ``None`` (or empty scope sets), numeric cells
    become :class:`~decimal.Decimal`, and the usage counter defaults to zero.

    Raises:
        ValueError: If the type, eligibility or a date cell cannot be parsed.
    """

    (
        promotion_id,
        name,
        description,
        promotion_type,
        discount_value,
        minimum_order_amount,
        maximum_discount_amount,
        start_date,
        end_date,
        is_active,
        applicable_products,
        applicable_categories,
        usage_limit,
        usage_count,
        customer_eligibility,
        coupon_code,
        auto_apply,
    ) = raw_row[:17]

    return Promotion(
        promotion_id=str(promotion_id),
        name=str(name) if name is not None else "",
        description=_optional_str(description),
        type=PromotionType(str(promotion_type)),
        discount_value=to_decimal(discount_value, default=ZERO),
        minimum_order_amount=to_decimal(minimum_order_amount),
        maximum_discount_amount=to_decimal(maximum_discount_amount),
        start_date=_parse_datetime(start_date),
        end_date=_parse_datetime(end_date),
        is_active=_parse_bool(is_active),
        applicable_products=_parse_scope(applicable_products),
        applicable_categories=_parse_scope(applicable_categories),
        usage_limit=int(usage_limit) if usage_limit not in (None, "") else None,
        usage_count=int(usage_count) if usage_count not in (None, "") else 0,
        customer_eligibility=(
            CustomerEligibility(str(customer_eligibility))
            if customer_eligibility not in (None, "")
            else CustomerEligibility.ALL
        ),
        coupon_code=_optional_str(coupon_code),
        auto_apply=_parse_bool(auto_apply),
    )


def serialize_product(record: Product) -> list[object]:
    """Return ``[ProductID, ProductName, SellPrice, CategoryName, IsActive]``."""

    return [record.product_id, record.product_name, record.sell_price, record.category_name, record.is_active]


def deserialize_product(raw_row: Sequence[object]) -> Product:
    product_id, product_name, sell_raw, category_name, is_active = raw_row[:5]
    return Product(
        product_id=str(product_id),
        product_name=str(product_name),
        sell_price=to_decimal(sell_raw, default=Decimal("0.00")),
        category_name=_optional_str(category_name),
        is_active=_parse_bool(is_active),
    )


def serialize_customer(record: Customer) -> list[object]:
    """Return ``[CustomerID, CustomerName, CustomerType, TotalPurchases]``."""

    return [record.customer_id, record.customer_name, record.customer_type.value, record.total_purchases]


def deserialize_customer(raw_row: Sequence[object]) -> Customer:
    customer_id, customer_name, customer_type, total_purchases = raw_row[:4]
    return Customer(
        customer_id=str(customer_id),
        customer_name=str(customer_name) if customer_name is not None else "",
        customer_type=CustomerType(str(customer_type)) if customer_type else CustomerType.REGULAR,
        total_purchases=to_decimal(total_purchases, default=ZERO),
    )


def applied_promotion_row(sale_id: str, applied: AppliedPromotion) -> AppliedPromotionRow:
    """Flatten an :class:`AppliedPromotion` into its audit-log row."""

    return AppliedPromotionRow(
        sale_id=sale_id,
        promotion_id=applied.promotion_id,
        promotion_name=applied.promotion_name,
        promotion_type=applied.promotion_type.value,
        coupon_code=applied.coupon_code,
        discount_amount=applied.discount_amount,
        original_amount=applied.original_amount,
        final_amount=applied.final_amount,
        is_auto_applied=applied.is_auto_applied,
        applied_at_iso=applied.applied_at.isoformat(),
    )


def serialize_applied_promotion(record: AppliedPromotionRow) -> list[object]:
    return [
        record.sale_id,
        record.promotion_id,
        record.promotion_name,
        record.promotion_type,
        record.coupon_code,
        record.discount_amount,
        record.original_amount,
        record.final_amount,
        record.is_auto_applied,
        record.applied_at_iso,
    ]


def deserialize_applied_promotion(raw_row: Sequence[object]) -> AppliedPromotionRow:
    (
        sale_id,
        promotion_id,
        promotion_name,
        promotion_type,
        coupon_code,
        discount_amount,
        original_amount,
        final_amount,
        is_auto_applied,
        applied_at_iso,
    ) = raw_row[:10]
    return AppliedPromotionRow(
        sale_id=str(sale_id),
        promotion_id=str(promotion_id),
        promotion_name=str(promotion_name) if promotion_name is not None else "",
        promotion_type=str(promotion_type) if promotion_type is not None else "",
        coupon_code=_optional_str(coupon_code),
        discount_amount=to_decimal(discount_amount, default=Decimal("0.00")),
        original_amount=to_decimal(original_amount, default=Decimal("0.00")),
        final_amount=to_decimal(final_amount, default=Decimal("0.00")),
        is_auto_applied=_parse_bool(is_auto_applied),
        applied_at_iso=str(applied_at_iso) if applied_at_iso is not None else "",
    )
