"""In-memory domain types consumed and mutated by the promotion engine.

The engine never talks to storage directly. Callers hydrate these objects
(usually through :mod:`sales_promotions.data_manager`), hand them to
:mod:`sales_promotions.promotion_engine`, and persist whatever changed.
Only two things are ever mutated by the engine: a :class:`Sale` (its applied
promotions and derived totals) and a :class:`Promotion` usage counter.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import Callable, Dict, FrozenSet, List, Optional

from .constants import CustomerEligibility, CustomerType, PromotionStatus, PromotionType
from .money import HUNDRED, ZERO, line_total, quantize_money, sum_money


CustomerPolicy = Callable[[Optional["Customer"]], bool]


def _utcnow() -> datetime:
    return datetime.now(UTC)


def ensure_aware(moment: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC so window comparisons never mix kinds."""

    if moment is None or moment.tzinfo is not None:
        return moment
    return moment.replace(tzinfo=UTC)


@dataclass(frozen=True)
class Customer:
    """Buyer attributes that customer-scope policies inspect."""

    customer_id: str
    customer_name: str = ""
    customer_type: CustomerType = CustomerType.REGULAR
    total_purchases: Decimal = ZERO


@dataclass(frozen=True)
class Product:
    """Catalog entry referenced by a sale line."""

    product_id: str
    product_name: str
    sell_price: Decimal
    category_name: Optional[str] = None
    is_active: bool = True


@dataclass(frozen=True)
class SaleItem:
    """One line of a sale: a product, its unit price and a quantity."""

    product: Product
    quantity: int
    unit_price: Decimal

    @property
    def line_total(self) -> Decimal:
        return line_total(self.unit_price, self.quantity)


def _accept_everyone(customer: Optional[Customer]) -> bool:
    return True


def _vip_only(customer: Optional[Customer]) -> bool:
    return customer is not None and customer.customer_type == CustomerType.VIP


def _premium_only(customer: Optional[Customer]) -> bool:
    return customer is not None and customer.customer_type == CustomerType.PREMIUM


def _new_customers(customer: Optional[Customer]) -> bool:
    return customer is not None and customer.total_purchases == ZERO


def _returning_customers(customer: Optional[Customer]) -> bool:
    return customer is not None and customer.total_purchases > ZERO


# Default customer-scope policies keyed by the eligibility stored on a promotion.
ELIGIBILITY_POLICIES: Dict[CustomerEligibility, CustomerPolicy] = {
    CustomerEligibility.ALL: _accept_everyone,
    CustomerEligibility.VIP_ONLY: _vip_only,
    CustomerEligibility.PREMIUM_ONLY: _premium_only,
    CustomerEligibility.NEW_CUSTOMERS: _new_customers,
    CustomerEligibility.RETURNING_CUSTOMERS: _returning_customers,
}


@dataclass
class Promotion:
    """A reusable, time-bounded discount rule.

    ``applicable_products`` holds product identifiers and
    ``applicable_categories`` holds category names. When both are empty the
    promotion covers every line item. ``customer_policy`` may be injected to
    replace the default policy selected by ``customer_eligibility``.
    """

    promotion_id: str
    name: str
    type: PromotionType
    discount_value: Decimal
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    is_active: bool = True
    minimum_order_amount: Optional[Decimal] = None
    maximum_discount_amount: Optional[Decimal] = None
    applicable_products: FrozenSet[str] = frozenset()
    applicable_categories: FrozenSet[str] = frozenset()
    auto_apply: bool = False
    coupon_code: Optional[str] = None
    usage_count: int = 0
    usage_limit: Optional[int] = None
    customer_eligibility: CustomerEligibility = CustomerEligibility.ALL
    description: Optional[str] = None
    customer_policy: Optional[CustomerPolicy] = field(default=None, repr=False, compare=False)

    def __post_init__(self) -> None:
        self.applicable_products = frozenset(self.applicable_products or ())
        self.applicable_categories = frozenset(self.applicable_categories or ())
        self.start_date = ensure_aware(self.start_date)
        self.end_date = ensure_aware(self.end_date)
        if self.usage_count < 0:
            raise ValueError("Usage count cannot be negative")

    @property
    def applies_to_all_items(self) -> bool:
        return not self.applicable_products and not self.applicable_categories

    def covers_item(self, item: SaleItem) -> bool:
        """Return ``True`` when ``item`` falls inside the product/category scope."""

        if self.applies_to_all_items:
            return True
        product = item.product
        if product.product_id in self.applicable_products:
            return True
        return product.category_name is not None and product.category_name in self.applicable_categories

    def is_currently_active(self, at: Optional[datetime] = None) -> bool:
        """Return ``True`` if enabled and ``at`` lies within ``[start, end)``."""

        moment = ensure_aware(at) or _utcnow()
        if not self.is_active:
            return False
        if self.start_date is not None and moment < self.start_date:
            return False
        if self.end_date is not None and moment >= self.end_date:
            return False
        return True

    def is_expired(self, at: Optional[datetime] = None) -> bool:
        moment = ensure_aware(at) or _utcnow()
        return self.end_date is not None and moment >= self.end_date

    def is_not_yet_started(self, at: Optional[datetime] = None) -> bool:
        moment = ensure_aware(at) or _utcnow()
        return self.start_date is not None and moment < self.start_date

    @property
    def is_usage_limit_reached(self) -> bool:
        return self.usage_limit is not None and self.usage_count >= self.usage_limit

    @property
    def remaining_usage(self) -> Optional[int]:
        """Uses left before the limit, or ``None`` when the promotion is unlimited."""

        if self.usage_limit is None:
            return None
        return max(0, self.usage_limit - self.usage_count)

    def days_until_expiry(self, at: Optional[datetime] = None) -> Optional[int]:
        if self.end_date is None:
            return None
        moment = ensure_aware(at) or _utcnow()
        if moment >= self.end_date:
            return 0
        return (self.end_date - moment).days

    def status(self, at: Optional[datetime] = None) -> PromotionStatus:
        if not self.is_active:
            return PromotionStatus.INACTIVE
        if self.is_not_yet_started(at):
            return PromotionStatus.SCHEDULED
        if self.is_expired(at):
            return PromotionStatus.EXPIRED
        if self.is_usage_limit_reached:
            return PromotionStatus.USAGE_LIMIT_REACHED
        return PromotionStatus.ACTIVE

    def is_applicable_to_customer(self, customer: Optional[Customer]) -> bool:
        policy = self.customer_policy or ELIGIBILITY_POLICIES[self.customer_eligibility]
        return policy(customer)

    def increment_usage_count(self) -> int:
        self.usage_count += 1
        return self.usage_count

    def decrement_usage_count(self) -> int:
        # Clamped: an unpaired removal must not drive the counter negative.
        self.usage_count = max(0, self.usage_count - 1)
        return self.usage_count


@dataclass(frozen=True)
class AppliedPromotion:
    """Immutable record of one promotion's effect on one sale."""

    promotion: Promotion
    discount_amount: Decimal
    original_amount: Decimal
    is_auto_applied: bool
    applied_at: datetime
    promotion_name: str
    promotion_type: PromotionType
    coupon_code: Optional[str]
    final_amount: Decimal
    discount_percentage: Optional[Decimal]
    sale: Optional["Sale"] = field(default=None, repr=False, compare=False)

    @classmethod
    def snapshot(
        cls,
        *,
        sale: Optional["Sale"],
        promotion: Promotion,
        discount_amount: Decimal,
        original_amount: Decimal,
        is_auto_applied: bool,
        applied_at: datetime,
    ) -> "AppliedPromotion":
        """Capture ``promotion``'s effect at ``applied_at``.

        The promotion's name, type and coupon code are copied so the record
        stays meaningful even if the promotion is later edited. The discount
        percentage is the configured value for percentage promotions and the
        effective rate otherwise.
        """

        if promotion.type == PromotionType.PERCENTAGE:
            percentage: Optional[Decimal] = promotion.discount_value
        elif original_amount > ZERO:
            percentage = quantize_money(discount_amount * HUNDRED / original_amount)
        else:
            percentage = None
        return cls(
            promotion=promotion,
            discount_amount=discount_amount,
            original_amount=original_amount,
            is_auto_applied=is_auto_applied,
            applied_at=applied_at,
            promotion_name=promotion.name,
            promotion_type=promotion.type,
            coupon_code=promotion.coupon_code,
            final_amount=original_amount - discount_amount,
            discount_percentage=percentage,
            sale=sale,
        )

    @property
    def promotion_id(self) -> str:
        return self.promotion.promotion_id

    @property
    def display_text(self) -> str:
        if self.promotion_type == PromotionType.PERCENTAGE and self.discount_percentage is not None:
            return f"{self.promotion_name} ({self.discount_percentage:.1f}% off)"
        return f"{self.promotion_name} (${self.discount_amount:.2f} off)"


@dataclass
class Sale:
    """Partial view of a sale: line items, applied promotions and totals.

    ``base_discount_amount`` holds any discount granted outside the promotion
    engine; ``discount_amount`` is always that baseline plus the promotion
    discount, recomputed from scratch by
    :func:`sales_promotions.promotion_engine.update_totals`.
    """

    sale_id: Optional[str] = None
    customer: Optional[Customer] = None
    items: List[SaleItem] = field(default_factory=list)
    subtotal: Optional[Decimal] = None
    tax_amount: Optional[Decimal] = None
    shipping_cost: Optional[Decimal] = None
    base_discount_amount: Decimal = ZERO
    original_total: Decimal = ZERO
    promotion_discount_amount: Decimal = ZERO
    discount_amount: Decimal = ZERO
    final_total: Decimal = ZERO
    total_amount: Optional[Decimal] = None
    applied_promotions: List[AppliedPromotion] = field(default_factory=list)

    def items_subtotal(self) -> Decimal:
        return sum_money(item.line_total for item in self.items)

    def has_promotions(self) -> bool:
        return bool(self.applied_promotions)

    def total_savings(self) -> Decimal:
        return sum_money(applied.discount_amount for applied in self.applied_promotions)

    def applied_promotion_ids(self) -> List[str]:
        return [applied.promotion_id for applied in self.applied_promotions]


__all__ = [
    "CustomerPolicy",
    "ELIGIBILITY_POLICIES",
    "Customer",
    "Product",
    "SaleItem",
    "Promotion",
    "AppliedPromotion",
    "Sale",
    "ensure_aware",
]
