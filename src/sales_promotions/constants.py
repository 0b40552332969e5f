"""Enumerations shared across the promotion engine modules.

Centralises domain constants so that the data access layer (DAL), the
promotion engine, and the business logic layer (BLL) agree on the identifiers
stored in the workbook and exchanged between layers.
"""

from __future__ import annotations

from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"


class PromotionType(str, Enum):
    """Enumerate the discount rules a promotion can express."""

    PERCENTAGE = "PERCENTAGE"
    FIXED_AMOUNT = "FIXED_AMOUNT"
    FREE_SHIPPING = "FREE_SHIPPING"
    BUY_X_GET_Y = "BUY_X_GET_Y"


class CustomerEligibility(str, Enum):
    """Enumerate the customer segments a promotion can be restricted to."""

    ALL = "ALL"
    VIP_ONLY = "VIP_ONLY"
    NEW_CUSTOMERS = "NEW_CUSTOMERS"
    RETURNING_CUSTOMERS = "RETURNING_CUSTOMERS"
    PREMIUM_ONLY = "PREMIUM_ONLY"


class CustomerType(str, Enum):
    """Enumerate customer tiers recorded on the ``Customers`` sheet."""

    REGULAR = "REGULAR"
    VIP = "VIP"
    PREMIUM = "PREMIUM"
    CORPORATE = "CORPORATE"
    WHOLESALE = "WHOLESALE"


class PromotionStatus(str, Enum):
    """Enumerate the display states derived from a promotion's window."""

    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    SCHEDULED = "SCHEDULED"
    EXPIRED = "EXPIRED"
    USAGE_LIMIT_REACHED = "USAGE_LIMIT_REACHED"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    PROMOTIONS = "Promotions"
    PRODUCTS = "Products"
    CUSTOMERS = "Customers"
    APPLIED_PROMOTIONS = "AppliedPromotions"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "PromotionType",
    "CustomerEligibility",
    "CustomerType",
    "PromotionStatus",
    "SheetName",
]
