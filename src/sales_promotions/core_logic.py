"""Business logic layer for the promotion engine.

This module wires the pure :mod:`sales_promotions.promotion_engine` to the
workbook-backed Data Access Layer (DAL). It owns the runtime context and its
caches, exposes the promotion catalog the engine reads from, and runs the
checkout workflow: price a sale, apply automatic and coupon promotions, and
record the resulting applied promotions and usage counters in one unit of
work.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from openpyxl.workbook import Workbook

from . import data_manager, log, promotion_engine
from .constants import EXPECTED_SCHEMA_VERSION
from .models import Customer, Product, Promotion, Sale, SaleItem
from .money import ZERO, sum_money
from .promotion_engine import BusinessRuleViolation, InvalidCouponError, MissingReferenceError


OrderLine = Tuple[str, int]


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and workbook references used by the BLL."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class CheckoutCommand:
    """User intent for pricing a sale and applying its promotions.

    ``lines`` holds ``(product_id, quantity)`` pairs. ``auto_apply`` overrides
    the configured default when not ``None``. With ``commit`` unset the sale is
    priced and returned but nothing is written to the workbook.
    """

    lines: Tuple[OrderLine, ...]
    customer_id: Optional[str] = None
    coupon_code: Optional[str] = None
    tax_amount: Optional[Decimal] = None
    shipping_cost: Optional[Decimal] = None
    base_discount_amount: Decimal = ZERO
    sale_id: Optional[str] = None
    auto_apply: Optional[bool] = None
    commit: bool = True
    timestamp: Optional[datetime] = None


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` when provided, otherwise the current UTC datetime."""

    return candidate if candidate is not None else datetime.now(UTC)


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return a mutable cache bucket dedicated to the supplied name."""

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict one or more cache buckets after mutating workbook state.

    Missing buckets are ignored.
    """

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _ensure_promotions_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the promotion cache bucket on demand.

    The cached :class:`Promotion` objects are the live instances the engine
    mutates, so a usage counter bumped during checkout is visible to every
    later lookup on the same context.

    Returns:
        dict[str, Any]: Bucket containing ``all`` promotions in sheet order,
            a ``by_id`` lookup and a ``by_coupon`` lookup.
    """

    bucket = _get_cache_bucket(context, "promotions")
    if "all" not in bucket:
        all_promotions = list(data_manager.iter_promotions(context.workbook))
        bucket["all"] = all_promotions
        bucket["by_id"] = {promotion.promotion_id: promotion for promotion in all_promotions}
        bucket["by_coupon"] = {
            promotion.coupon_code: promotion for promotion in all_promotions if promotion.coupon_code
        }
        log.debug("Populated promotions cache with %d entries", len(all_promotions))
    return bucket


def _ensure_products_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "products")
    if "all" not in bucket:
        all_products = list(data_manager.iter_products(context.workbook))
        bucket["all"] = all_products
        bucket["by_id"] = {product.product_id: product for product in all_products}
        log.debug("Populated products cache with %d entries", len(all_products))
    return bucket


def _ensure_customers_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "customers")
    if "all" not in bucket:
        all_customers = list(data_manager.iter_customers(context.workbook))
        bucket["all"] = all_customers
        bucket["by_id"] = {customer.customer_id: customer for customer in all_customers}
        log.debug("Populated customers cache with %d entries", len(all_customers))
    return bucket


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the BLL.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer searches upward from the current
            working directory.

    Returns:
        RuntimeContext: Context with settings, workbook and an empty cache.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the configured schema version does not match
            ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Persist any in-memory workbook changes to the configured data file."""
    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    Returns a new context with an empty cache; promotion objects handed out by
    the previous context are no longer tracked.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook)


# ---------------------------------------------------------------------------
# Catalog queries
# ---------------------------------------------------------------------------


def list_promotions(context: RuntimeContext, *, include_inactive: bool = False) -> List[Promotion]:
    """Return cached promotions in sheet order.

    Promotions whose enabled flag is off are hidden unless
    ``include_inactive`` is set. The activity window is not consulted; use
    :func:`list_available_promotions` for that.
    """
    cache = _ensure_promotions_cache(context)
    if include_inactive:
        return list(cache["all"])
    return [promotion for promotion in cache["all"] if promotion.is_active]


def list_available_promotions(context: RuntimeContext, at: Optional[datetime] = None) -> List[Promotion]:
    """Return promotions active at ``at`` whose usage limit is not exhausted."""
    moment = _resolve_timestamp(at)
    return [
        promotion
        for promotion in _ensure_promotions_cache(context)["all"]
        if promotion.is_currently_active(moment) and not promotion.is_usage_limit_reached
    ]


def list_auto_apply_promotions(context: RuntimeContext, at: Optional[datetime] = None) -> List[Promotion]:
    return [promotion for promotion in list_available_promotions(context, at) if promotion.auto_apply]


def list_promotions_for_product(context: RuntimeContext, product_id: str) -> List[Promotion]:
    """Return promotions whose product scope names ``product_id`` explicitly."""
    return [
        promotion
        for promotion in _ensure_promotions_cache(context)["all"]
        if product_id in promotion.applicable_products
    ]


def list_promotions_for_category(context: RuntimeContext, category_name: str) -> List[Promotion]:
    """Return promotions whose category scope names ``category_name`` explicitly."""
    return [
        promotion
        for promotion in _ensure_promotions_cache(context)["all"]
        if category_name in promotion.applicable_categories
    ]


def get_promotion(context: RuntimeContext, promotion_id: str) -> Promotion:
    """Resolve a promotion by its identifier.

    Raises:
        MissingReferenceError: If ``promotion_id`` is absent from the workbook.
    """
    cache = _ensure_promotions_cache(context)
    try:
        return cache["by_id"][promotion_id]
    except KeyError as exc:
        log.warning("Promotion lookup failed for id '%s'", promotion_id)
        raise MissingReferenceError(f"Unknown promotion id: {promotion_id}") from exc


def find_promotion_by_coupon(context: RuntimeContext, code: str) -> Optional[Promotion]:
    """Return the promotion carrying exactly ``code``, or ``None``."""
    return _ensure_promotions_cache(context)["by_coupon"].get(code)


def get_product(context: RuntimeContext, product_id: str) -> Product:
    """Resolve a product record by its identifier.

    Raises:
        MissingReferenceError: If ``product_id`` is absent from the workbook.
    """
    cache = _ensure_products_cache(context)
    try:
        return cache["by_id"][product_id]
    except KeyError as exc:
        log.warning("Product lookup failed for id '%s'", product_id)
        raise MissingReferenceError(f"Unknown product id: {product_id}") from exc


def get_customer(context: RuntimeContext, customer_id: str) -> Customer:
    """Resolve a customer record by its identifier.

    Raises:
        MissingReferenceError: If ``customer_id`` is absent from the workbook.
    """
    cache = _ensure_customers_cache(context)
    try:
        return cache["by_id"][customer_id]
    except KeyError as exc:
        log.warning("Customer lookup failed for id '%s'", customer_id)
        raise MissingReferenceError(f"Unknown customer id: {customer_id}") from exc


def list_applied_promotions(context: RuntimeContext, *, sale_id: Optional[str] = None) -> List[data_manager.AppliedPromotionRow]:
    """Return the applied-promotion audit log, optionally for a single sale."""
    rows = list(data_manager.iter_applied_promotions(context.workbook))
    if sale_id is None:
        return rows
    return [row for row in rows if row.sale_id == sale_id]


class WorkbookPromotionCatalog:
    """:class:`~.promotion_engine.PromotionCatalog` backed by a runtime context.

    With ``detached`` set the catalog hands out copies of the cached
    promotions, one per promotion id, so usage counters bumped while pricing
    never reach the live objects that get written back to the workbook.
    """

    def __init__(self, context: RuntimeContext, *, detached: bool = False) -> None:
        self.context = context
        self.detached = detached
        self._copies: Dict[str, Promotion] = {}

    def _hand_out(self, promotion: Optional[Promotion]) -> Optional[Promotion]:
        if promotion is None or not self.detached:
            return promotion
        copy = self._copies.get(promotion.promotion_id)
        if copy is None:
            copy = replace(promotion)
            self._copies[promotion.promotion_id] = copy
        return copy

    def available_promotions(self, at: datetime) -> List[Promotion]:
        return [self._hand_out(promotion) for promotion in list_available_promotions(self.context, at)]

    def find_by_coupon_code(self, code: str) -> Optional[Promotion]:
        return self._hand_out(find_promotion_by_coupon(self.context, code))


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def require_positive_quantity(quantity: int) -> None:
    """Validate that a line quantity is strictly positive.

    Raises:
        ValueError: If ``quantity`` is zero or negative.
    """
    if quantity <= 0:
        log.error("Quantity validation failed: %s", quantity)
        raise ValueError("Quantity must be greater than zero")


def require_nonnegative_money(amount: Optional[Decimal]) -> None:
    """Validate that an optional monetary value is zero or positive.

    Raises:
        ValueError: If ``amount`` is less than zero.
    """
    if amount is not None and amount < ZERO:
        log.error("Monetary value validation failed: %s", amount)
        raise ValueError("Amount must be zero or positive")


def generate_sale_id(*, prefix: str = "S", when: Optional[datetime] = None) -> str:
    """Generate a sortable sale identifier formed as ``{prefix}{YYYYMMDDHHMMSSffffff}``."""
    when = when or _resolve_timestamp(None)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}"


# ---------------------------------------------------------------------------
# Sale workflows
# ---------------------------------------------------------------------------


def resolve_customer(context: RuntimeContext, customer_id: Optional[str]) -> Optional[Customer]:
    return get_customer(context, customer_id) if customer_id else None


def build_sale_items(context: RuntimeContext, lines: Sequence[OrderLine]) -> List[SaleItem]:
    """Price ``(product_id, quantity)`` lines at the products' list prices.

    Raises:
        MissingReferenceError: If a product id is unknown.
        BusinessRuleViolation: If a product is inactive.
        ValueError: If a quantity is not positive.
    """
    items: List[SaleItem] = []
    for product_id, quantity in lines:
        product = get_product(context, product_id)
        if not product.is_active:
            log.warning("Attempted sale on inactive product '%s'", product_id)
            raise BusinessRuleViolation(f"Product '{product_id}' is inactive")
        require_positive_quantity(quantity)
        items.append(SaleItem(product=product, quantity=quantity, unit_price=product.sell_price))
    return items


def build_sale(context: RuntimeContext, command: CheckoutCommand) -> Sale:
    """Materialize a :class:`CheckoutCommand` into a priced, promotion-free sale."""
    require_nonnegative_money(command.tax_amount)
    require_nonnegative_money(command.shipping_cost)
    require_nonnegative_money(command.base_discount_amount)

    items = build_sale_items(context, command.lines)
    sale = Sale(
        sale_id=command.sale_id or generate_sale_id(when=command.timestamp),
        customer=resolve_customer(context, command.customer_id),
        items=items,
        tax_amount=command.tax_amount,
        shipping_cost=command.shipping_cost,
        base_discount_amount=command.base_discount_amount,
    )
    sale.subtotal = sale.items_subtotal()
    return promotion_engine.update_totals(sale)


def quote_promotions(
    context: RuntimeContext,
    lines: Sequence[OrderLine],
    *,
    customer_id: Optional[str] = None,
    at: Optional[datetime] = None,
) -> List[Tuple[Promotion, Decimal]]:
    """Return every eligible promotion with the discount it would grant.

    Nothing is mutated. Each discount is computed independently against the
    full order, as promotions stack additively.
    """
    moment = _resolve_timestamp(at)
    customer = resolve_customer(context, customer_id)
    items = build_sale_items(context, lines)
    order_amount = sum_money(item.line_total for item in items)
    eligible = promotion_engine.find_eligible_promotions(
        WorkbookPromotionCatalog(context), customer, items, order_amount, at=moment
    )
    return [
        (promotion, promotion_engine.compute_discount(promotion, items, order_amount, at=moment))
        for promotion in eligible
    ]


def validate_coupon(
    context: RuntimeContext,
    code: str,
    lines: Sequence[OrderLine],
    *,
    customer_id: Optional[str] = None,
    at: Optional[datetime] = None,
) -> Promotion:
    """Resolve ``code`` for the described order without applying it.

    Raises:
        InvalidCouponError: If the code is unknown.
        BusinessRuleViolation: If the coupon cannot be used for this order.
    """
    customer = resolve_customer(context, customer_id)
    items = build_sale_items(context, lines)
    order_amount = sum_money(item.line_total for item in items)
    return promotion_engine.resolve_coupon(
        WorkbookPromotionCatalog(context), code, customer, items, order_amount, at=at
    )


def _rollback(sale: Sale) -> None:
    for applied in reversed(list(sale.applied_promotions)):
        promotion_engine.remove_promotion(sale, applied.promotion_id)


def checkout(context: RuntimeContext, command: CheckoutCommand) -> Sale:
    """Price a sale, apply its promotions and optionally record the result.

    Automatic promotions are applied in catalog order; one that grants nothing
    for this order is skipped. A coupon is then resolved and applied. If the
    coupon step fails every promotion already applied is withdrawn again, so
    usage counters are left as they were, and the error propagates.
    With ``commit`` unset the sale is priced against copies of the catalog
    promotions, so the cached usage counters are not touched either.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        command (CheckoutCommand): Structured checkout intent.

    Returns:
        Sale: The priced sale with its applied promotions and totals.

    Raises:
        MissingReferenceError: If a product or customer is unknown.
        InvalidCouponError: If the coupon code is unknown.
        BusinessRuleViolation: If a product is inactive or the coupon cannot be
            used for this order.
        ValueError: When quantity or money validations fail.
    """
    moment = _resolve_timestamp(command.timestamp)
    sale = build_sale(context, command)
    catalog = WorkbookPromotionCatalog(context, detached=not command.commit)
    order_amount = promotion_engine.order_amount_for(sale)

    auto_apply = command.auto_apply if command.auto_apply is not None else context.settings.auto_apply_promotions
    if auto_apply:
        candidates = promotion_engine.find_auto_applicable_promotions(
            catalog, sale.customer, sale.items, order_amount, at=moment
        )
        for promotion in candidates:
            try:
                promotion_engine.apply_promotion(sale, promotion, True, at=moment)
            except BusinessRuleViolation as exc:
                log.info("Skipping auto promotion '%s' for sale '%s': %s", promotion.promotion_id, sale.sale_id, exc)

    if command.coupon_code:
        try:
            promotion = promotion_engine.resolve_coupon(
                catalog, command.coupon_code, sale.customer, sale.items, order_amount, at=moment
            )
            if promotion.promotion_id in sale.applied_promotion_ids():
                raise BusinessRuleViolation(f"Coupon promotion is already applied: {command.coupon_code}")
            promotion_engine.apply_promotion(sale, promotion, False, at=moment)
        except BusinessRuleViolation:
            _rollback(sale)
            raise

    if command.commit:
        record_applied_promotions(context, sale)

    log.info(
        "Checked out sale '%s': original=%s promotions=%s final=%s",
        sale.sale_id,
        sale.original_total,
        sale.promotion_discount_amount,
        sale.final_total,
    )
    return sale


def record_applied_promotions(context: RuntimeContext, sale: Sale) -> List[data_manager.AppliedPromotionRow]:
    """Write a sale's applied promotions and the touched usage counters.

    One audit row is appended per applied promotion and each promotion's
    current usage count is written back to its row. Saving the workbook is left
    to :func:`persist_context`.

    Raises:
        BusinessRuleViolation: If the sale has no identifier.
    """
    if not sale.sale_id:
        raise BusinessRuleViolation("Cannot record promotions for a sale without an identifier")

    rows: List[data_manager.AppliedPromotionRow] = []
    touched: Dict[str, Promotion] = {}
    for applied in sale.applied_promotions:
        row = data_manager.applied_promotion_row(sale.sale_id, applied)
        data_manager.append_applied_promotion(context.workbook, row)
        rows.append(row)
        touched[applied.promotion_id] = applied.promotion

    for promotion_id, promotion in touched.items():
        data_manager.update_promotion(
            context.workbook,
            promotion_id,
            field_values={"UsageCount": promotion.usage_count},
        )

    log.info("Recorded %d applied promotions for sale '%s'", len(rows), sale.sale_id)
    return rows



def remove_applied_promotion(
    context: RuntimeContext, sale_id: str, promotion_id: str
) -> data_manager.AppliedPromotionRow:
    """Withdraw a recorded promotion from a sale.

    The first matching audit row is deleted and the promotion's usage count
    is decremented (never below zero) and written back, mirroring
    :func:`record_applied_promotions`. Saving the workbook is left to
    :func:`persist_context`.

    Raises:
        BusinessRuleViolation: If the sale has no recorded promotions.
        MissingReferenceError: If ``promotion_id`` is not recorded for the
            sale.
    """
    if not list_applied_promotions(context, sale_id=sale_id):
        log.warning("No promotions recorded for sale '%s'", sale_id)
        raise BusinessRuleViolation(f"No promotions applied to this sale: {sale_id}")

    promotion = get_promotion(context, promotion_id)
    removed = data_manager.delete_applied_promotion(context.workbook, sale_id, promotion_id)
    if removed is None:
        log.warning("Promotion '%s' is not recorded for sale '%s'", promotion_id, sale_id)
        raise MissingReferenceError(f"Promotion not found in this sale: {promotion_id}")

    promotion.decrement_usage_count()
    data_manager.update_promotion(
        context.workbook,
        promotion_id,
        field_values={"UsageCount": promotion.usage_count},
    )
    log.info("Removed promotion '%s' from sale '%s'", promotion_id, sale_id)
    return removed


__all__ = [
    "BusinessRuleViolation",
    "MissingReferenceError",
    "InvalidCouponError",
    "RuntimeContext",
    "CheckoutCommand",
    "WorkbookPromotionCatalog",
    "load_runtime_context",
    "ensure_schema_version",
    "persist_context",
    "refresh_context",
    "list_promotions",
    "list_available_promotions",
    "list_auto_apply_promotions",
    "list_promotions_for_product",
    "list_promotions_for_category",
    "get_promotion",
    "find_promotion_by_coupon",
    "get_product",
    "get_customer",
    "list_applied_promotions",
    "build_sale_items",
    "build_sale",
    "quote_promotions",
    "validate_coupon",
    "checkout",
    "record_applied_promotions",
    "remove_applied_promotion",
    "generate_sale_id",
]
