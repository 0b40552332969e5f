"""Promotion engine: eligibility, discount pricing and the application ledger.

The module is pure computation. It reads promotions through the
:class:`PromotionCatalog` protocol, mutates only the :class:`~.models.Sale`
and :class:`~.models.Promotion` objects handed to it, and never persists
anything. Callers serialize apply/remove per sale and commit the resulting
sale and promotion state in one unit of work.

Stacking is additive: every promotion's discount is computed against the full
applicable amount of the sale, never against the remainder left by other
promotions already applied to the same sale.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Protocol, Sequence

from . import log
from .constants import PromotionType
from .models import AppliedPromotion, Customer, Promotion, Sale, SaleItem, ensure_aware
from .money import ZERO, percentage_of, sum_money


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced promotion, product, or customer is unknown."""


class InvalidCouponError(BusinessRuleViolation):
    """Raised when a coupon code does not resolve to any promotion."""


class PromotionCatalog(Protocol):
    """Read access to stored promotions required by the engine."""

    def available_promotions(self, at: datetime) -> Sequence[Promotion]:
        """Return every promotion that is enabled, inside its window at ``at``
        and below its usage limit, in catalog order."""

    def find_by_coupon_code(self, code: str) -> Optional[Promotion]:
        """Return the promotion whose coupon code equals ``code`` exactly."""


DiscountStrategy = Callable[[Promotion, Decimal, Sequence[SaleItem]], Decimal]

DISCOUNT_STRATEGIES: Dict[PromotionType, DiscountStrategy] = {}


def register_discount_strategy(promotion_type: PromotionType) -> Callable[[DiscountStrategy], DiscountStrategy]:
    """Register the raw-discount function used for ``promotion_type``."""

    def decorator(strategy: DiscountStrategy) -> DiscountStrategy:
        DISCOUNT_STRATEGIES[promotion_type] = strategy
        return strategy

    return decorator


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` as an aware datetime, or the current UTC instant."""

    return ensure_aware(candidate) if candidate is not None else datetime.now(UTC)


# ---------------------------------------------------------------------------
# Eligibility
# ---------------------------------------------------------------------------


def is_applicable_to_items(promotion: Promotion, items: Sequence[SaleItem]) -> bool:
    """Return ``True`` if the promotion covers all items or at least one of ``items``."""

    if promotion.applies_to_all_items:
        return True
    return any(promotion.covers_item(item) for item in items)


def meets_minimum_order(promotion: Promotion, order_amount: Decimal) -> bool:
    minimum = promotion.minimum_order_amount
    return minimum is None or order_amount >= minimum


def is_eligible(
    promotion: Promotion,
    customer: Optional[Customer],
    items: Sequence[SaleItem],
    order_amount: Decimal,
    *,
    at: Optional[datetime] = None,
) -> bool:
    """Decide whether ``promotion`` may be used for the described order.

    The checks run in order and the first failure decides: activity window,
    customer scope, minimum order amount, then product/category scope. The
    order amount is taken as supplied and never recomputed from ``items``.

    Args:
        promotion (Promotion): Candidate promotion.
        customer (Customer | None): Buyer, or ``None`` for an anonymous sale.
        items (Sequence[SaleItem]): Line items of the order.
        order_amount (Decimal): Amount compared against the minimum order.
        at (datetime | None): Evaluation instant; defaults to now (UTC).

    Returns:
        bool: ``True`` when every check passes.
    """

    moment = _resolve_timestamp(at)
    if not promotion.is_currently_active(moment):
        return False
    if not promotion.is_applicable_to_customer(customer):
        return False
    if not meets_minimum_order(promotion, order_amount):
        return False
    return is_applicable_to_items(promotion, items)


def validate_promotion(
    promotion: Promotion,
    customer: Optional[Customer],
    items: Sequence[SaleItem],
    order_amount: Decimal,
    *,
    at: Optional[datetime] = None,
) -> bool:
    """Same as :func:`is_eligible`, but any evaluation fault yields ``False``.

    A malformed promotion is logged and treated as ineligible so that one bad
    catalog entry cannot abort the evaluation of the others.
    """

    try:
        return is_eligible(promotion, customer, items, order_amount, at=at)
    except Exception as exc:
        log.warning(
            "Promotion validation failed for promotion '%s' and customer '%s': %s",
            getattr(promotion, "promotion_id", None),
            getattr(customer, "customer_id", None),
            exc,
        )
        return False


def find_eligible_promotions(
    catalog: PromotionCatalog,
    customer: Optional[Customer],
    items: Sequence[SaleItem],
    order_amount: Decimal,
    *,
    at: Optional[datetime] = None,
) -> List[Promotion]:
    """Filter the catalog's available promotions down to the eligible ones.

    Catalog order is preserved.
    """

    moment = _resolve_timestamp(at)
    available = catalog.available_promotions(moment)
    eligible = [
        promotion
        for promotion in available
        if validate_promotion(promotion, customer, items, order_amount, at=moment)
    ]
    log.debug(
        "Found %d eligible promotions out of %d available (order amount %s)",
        len(eligible),
        len(available),
        order_amount,
    )
    return eligible


def find_auto_applicable_promotions(
    catalog: PromotionCatalog,
    customer: Optional[Customer],
    items: Sequence[SaleItem],
    order_amount: Decimal,
    *,
    at: Optional[datetime] = None,
) -> List[Promotion]:
    """Return the eligible promotions flagged for automatic application."""

    eligible = find_eligible_promotions(catalog, customer, items, order_amount, at=at)
    return [promotion for promotion in eligible if promotion.auto_apply]


# ---------------------------------------------------------------------------
# Discount calculation
# ---------------------------------------------------------------------------


def applicable_amount(promotion: Promotion, items: Sequence[SaleItem]) -> Decimal:
    """Sum ``unit_price * quantity`` over the items the promotion covers."""

    return sum_money(item.line_total for item in items if promotion.covers_item(item))


@register_discount_strategy(PromotionType.PERCENTAGE)
def _percentage_discount(promotion: Promotion, base_amount: Decimal, items: Sequence[SaleItem]) -> Decimal:
    return percentage_of(base_amount, promotion.discount_value)


@register_discount_strategy(PromotionType.FIXED_AMOUNT)
def _fixed_amount_discount(promotion: Promotion, base_amount: Decimal, items: Sequence[SaleItem]) -> Decimal:
    return promotion.discount_value


@register_discount_strategy(PromotionType.FREE_SHIPPING)
def _free_shipping_discount(promotion: Promotion, base_amount: Decimal, items: Sequence[SaleItem]) -> Decimal:
    # The shipping waiver is settled by the shipping calculation, not here.
    return ZERO


@register_discount_strategy(PromotionType.BUY_X_GET_Y)
def _buy_x_get_y_discount(promotion: Promotion, base_amount: Decimal, items: Sequence[SaleItem]) -> Decimal:
    # TODO: price buy-X-get-Y once the promotion stores its X and Y quantities.
    log.warning("Buy X Get Y calculation not yet implemented for promotion '%s'", promotion.promotion_id)
    return ZERO


def compute_discount(
    promotion: Promotion,
    items: Sequence[SaleItem],
    order_amount: Decimal,
    *,
    at: Optional[datetime] = None,
) -> Decimal:
    """Price ``promotion`` against ``items``.

    Inactive promotions, unmet minimum order amounts and an empty applicable
    amount all yield zero. Otherwise the raw discount for the promotion type is
    clamped to the maximum discount amount (when configured), then to the
    applicable amount, then floored at zero.

    Args:
        promotion (Promotion): Promotion to price.
        items (Sequence[SaleItem]): Line items of the order.
        order_amount (Decimal): Amount compared against the minimum order.
        at (datetime | None): Evaluation instant; defaults to now (UTC).

    Returns:
        Decimal: Discount in ``[0, min(applicable, maximum)]``.
    """

    moment = _resolve_timestamp(at)
    if not promotion.is_currently_active(moment):
        return ZERO
    if not meets_minimum_order(promotion, order_amount):
        return ZERO

    base_amount = applicable_amount(promotion, items)
    if base_amount <= ZERO:
        return ZERO

    strategy = DISCOUNT_STRATEGIES.get(promotion.type)
    if strategy is None:
        log.warning("No discount strategy registered for promotion type '%s'", promotion.type)
        return ZERO
    discount = strategy(promotion, base_amount, items)

    maximum = promotion.maximum_discount_amount
    if maximum is not None and discount > maximum:
        discount = maximum
    if discount > base_amount:
        discount = base_amount
    return max(discount, ZERO)


# ---------------------------------------------------------------------------
# Application ledger
# ---------------------------------------------------------------------------


def order_amount_for(sale: Sale) -> Decimal:
    """Amount a sale's promotions are evaluated against.

    The subtotal wins; a sale that never had one set falls back to its total
    amount and, failing that, to the sum of its line items.
    """

    if sale.subtotal is not None:
        return sale.subtotal
    if sale.total_amount is not None:
        return sale.total_amount
    return sale.items_subtotal()


def update_totals(sale: Sale) -> Sale:
    """Recompute a sale's derived totals from its current state.

    ``final_total = original_total - promotion_discount_amount + tax + shipping``
    and ``total_amount`` mirrors ``final_total``. The sale-level
    ``discount_amount`` is rebuilt from ``base_discount_amount`` so repeated
    calls never accumulate.
    """

    original_total = sale.subtotal if sale.subtotal is not None else sale.items_subtotal()
    promotion_discount = sale.total_savings()

    final_total = original_total - promotion_discount
    if sale.tax_amount is not None:
        final_total += sale.tax_amount
    if sale.shipping_cost is not None:
        final_total += sale.shipping_cost

    sale.original_total = original_total
    sale.promotion_discount_amount = promotion_discount
    sale.final_total = final_total
    sale.total_amount = final_total
    sale.discount_amount = sale.base_discount_amount + promotion_discount
    return sale


def apply_promotion(
    sale: Sale,
    promotion: Promotion,
    is_auto_applied: bool = False,
    *,
    at: Optional[datetime] = None,
) -> AppliedPromotion:
    """Apply ``promotion`` to ``sale`` and bump the promotion's usage counter.

    Args:
        sale (Sale): Sale receiving the promotion.
        promotion (Promotion): Promotion to apply.
        is_auto_applied (bool): ``True`` when chosen automatically rather than
            through a coupon or a manual selection.
        at (datetime | None): Application instant; defaults to now (UTC).

    Returns:
        AppliedPromotion: The record appended to ``sale.applied_promotions``.

    Raises:
        BusinessRuleViolation: If the promotion grants no discount for the
            order. Neither the sale nor the counter changes in that case.
    """

    moment = _resolve_timestamp(at)
    log.info("Applying promotion '%s' to sale '%s'", promotion.promotion_id, sale.sale_id)

    order_amount = order_amount_for(sale)
    discount = compute_discount(promotion, sale.items, order_amount, at=moment)
    if discount <= ZERO:
        log.warning(
            "Promotion '%s' grants no discount for sale '%s' (order amount %s)",
            promotion.promotion_id,
            sale.sale_id,
            order_amount,
        )
        raise BusinessRuleViolation("Promotion does not provide any discount for this order")

    applied = AppliedPromotion.snapshot(
        sale=sale,
        promotion=promotion,
        discount_amount=discount,
        original_amount=order_amount,
        is_auto_applied=is_auto_applied,
        applied_at=moment,
    )
    sale.applied_promotions.append(applied)
    update_totals(sale)
    promotion.increment_usage_count()

    log.info(
        "Applied promotion '%s' to sale '%s' with discount %s",
        promotion.promotion_id,
        sale.sale_id,
        discount,
    )
    return applied


def remove_promotion(sale: Sale, promotion_id: str) -> AppliedPromotion:
    """Withdraw the first applied record for ``promotion_id`` from ``sale``.

    Returns:
        AppliedPromotion: The removed record.

    Raises:
        BusinessRuleViolation: If the sale has no applied promotions at all.
        MissingReferenceError: If none of them belongs to ``promotion_id``.
    """

    log.info("Removing promotion '%s' from sale '%s'", promotion_id, sale.sale_id)
    if not sale.applied_promotions:
        raise BusinessRuleViolation("No promotions applied to this sale")

    for index, applied in enumerate(sale.applied_promotions):
        if applied.promotion_id == promotion_id:
            break
    else:
        log.warning("Promotion '%s' is not applied to sale '%s'", promotion_id, sale.sale_id)
        raise MissingReferenceError(f"Promotion not found in this sale: {promotion_id}")

    removed = sale.applied_promotions.pop(index)
    update_totals(sale)
    removed.promotion.decrement_usage_count()
    log.info("Removed promotion '%s' from sale '%s'", promotion_id, sale.sale_id)
    return removed


# ---------------------------------------------------------------------------
# Coupons
# ---------------------------------------------------------------------------


def resolve_coupon(
    catalog: PromotionCatalog,
    code: str,
    customer: Optional[Customer],
    items: Sequence[SaleItem],
    order_amount: Decimal,
    *,
    at: Optional[datetime] = None,
) -> Promotion:
    """Resolve a human-entered coupon code to an applicable promotion.

    Nothing is mutated; applying the returned promotion is a separate call to
    :func:`apply_promotion`.

    Raises:
        InvalidCouponError: If no promotion carries ``code``.
        BusinessRuleViolation: If the promotion is not currently active, has
            exhausted its usage limit, or is not applicable to the order.
    """

    moment = _resolve_timestamp(at)
    promotion = catalog.find_by_coupon_code(code)
    if promotion is None:
        log.warning("Unknown coupon code '%s'", code)
        raise InvalidCouponError(f"Invalid coupon code: {code}")
    if not promotion.is_currently_active(moment):
        raise BusinessRuleViolation(f"Coupon code is not currently active: {code}")
    if promotion.is_usage_limit_reached:
        raise BusinessRuleViolation(f"Coupon code usage limit has been reached: {code}")
    if not is_eligible(promotion, customer, items, order_amount, at=moment):
        raise BusinessRuleViolation(f"Coupon code is not applicable to this order: {code}")
    return promotion


__all__ = [
    "BusinessRuleViolation",
    "MissingReferenceError",
    "InvalidCouponError",
    "PromotionCatalog",
    "DISCOUNT_STRATEGIES",
    "register_discount_strategy",
    "is_applicable_to_items",
    "meets_minimum_order",
    "is_eligible",
    "validate_promotion",
    "find_eligible_promotions",
    "find_auto_applicable_promotions",
    "applicable_amount",
    "compute_discount",
    "order_amount_for",
    "update_totals",
    "apply_promotion",
    "remove_promotion",
    "resolve_coupon",
]
