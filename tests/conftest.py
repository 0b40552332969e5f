"""Shared pytest fixtures and utilities for the promotion engine tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from sales_promotions import constants, core_logic, data_manager  # noqa: E402
from sales_promotions.models import Customer, Product, Promotion, Sale, SaleItem  # noqa: E402
from sales_promotions.setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
FIXED_NOW = datetime(2025, 6, 1, 12, 0, tzinfo=UTC)
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "StoreName = {store_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Checkout]\n"
    "AutoApplyPromotions = {auto_apply}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    store_name: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


# ---------------------------------------------------------------------------
# Workbook and configuration fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized master workbook in a temp folder."""

    def _create_workbook(*, subdir: str | None = None, filename: str = "master_workbook.xlsx") -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh master workbook ready for use in a test."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        store_name: str = "Test Store",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        auto_apply: bool = True,
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=f"bundle_{bundle_id}")
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                store_name=store_name,
                schema_version=schema_version,
                auto_apply="true" if auto_apply else "false",
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            store_name=store_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


@pytest.fixture
def seeded_context(runtime_context: core_logic.RuntimeContext) -> core_logic.RuntimeContext:
    """Runtime context whose workbook holds a small store catalog.

    Promotion windows are relative to the real clock so the default "now"
    used by the business layer falls inside them.
    """

    now = datetime.now(UTC)
    workbook = runtime_context.workbook
    for product in (
        Product("P-TV", "Television", Decimal("80.00"), "ELECTRONICS"),
        Product("P-MUG", "Mug", Decimal("10.00"), "KITCHEN"),
        Product("P-OLD", "Discontinued", Decimal("5.00"), "KITCHEN", is_active=False),
    ):
        data_manager.append_product(workbook, product)
    for customer in (
        Customer("C-REG", "Regular Joe", constants.CustomerType.REGULAR, Decimal("250.00")),
        Customer("C-VIP", "Very Important", constants.CustomerType.VIP, Decimal("9000.00")),
    ):
        data_manager.append_customer(workbook, customer)
    for promotion in (
        Promotion(
            promotion_id="PR-AUTO10",
            name="Ten percent off",
            type=constants.PromotionType.PERCENTAGE,
            discount_value=Decimal("10"),
            start_date=now - timedelta(days=1),
            end_date=now + timedelta(days=30),
            auto_apply=True,
        ),
        Promotion(
            promotion_id="PR-KITCHEN5",
            name="Kitchen five off",
            type=constants.PromotionType.FIXED_AMOUNT,
            discount_value=Decimal("5.00"),
            start_date=now - timedelta(days=1),
            end_date=now + timedelta(days=30),
            applicable_categories=frozenset({"KITCHEN"}),
            coupon_code="KITCHEN5",
        ),
        Promotion(
            promotion_id="PR-VIP",
            name="VIP twenty",
            type=constants.PromotionType.PERCENTAGE,
            discount_value=Decimal("20"),
            start_date=now - timedelta(days=1),
            end_date=now + timedelta(days=30),
            customer_eligibility=constants.CustomerEligibility.VIP_ONLY,
            coupon_code="VIP20",
        ),
        Promotion(
            promotion_id="PR-EXPIRED",
            name="Last season",
            type=constants.PromotionType.PERCENTAGE,
            discount_value=Decimal("50"),
            start_date=now - timedelta(days=60),
            end_date=now - timedelta(days=30),
            coupon_code="OLD50",
            auto_apply=True,
        ),
    ):
        data_manager.append_promotion(workbook, promotion)
    core_logic.persist_context(runtime_context)
    return core_logic.refresh_context(runtime_context)


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="promo-cli", description="Promotion CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


# ---------------------------------------------------------------------------
# Domain fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def now() -> datetime:
    return FIXED_NOW


@pytest.fixture
def make_product() -> Callable[..., Product]:
    def _make(product_id: str = "P1", price: str = "10.00", category: str | None = "GENERAL") -> Product:
        return Product(product_id=product_id, product_name=f"Product {product_id}", sell_price=Decimal(price), category_name=category)

    return _make


@pytest.fixture
def make_item(make_product: Callable[..., Product]) -> Callable[..., SaleItem]:
    """Build a sale item; the unit price defaults to the product's price."""

    def _make(product_id: str = "P1", price: str = "10.00", quantity: int = 1, category: str | None = "GENERAL") -> SaleItem:
        product = make_product(product_id, price, category)
        return SaleItem(product=product, quantity=quantity, unit_price=product.sell_price)

    return _make


@pytest.fixture
def make_promotion(now: datetime) -> Callable[..., Promotion]:
    """Build a promotion that is active around :data:`FIXED_NOW` by default."""

    def _make(**overrides) -> Promotion:
        values = {
            "promotion_id": "PROMO-1",
            "name": "Test promotion",
            "type": constants.PromotionType.PERCENTAGE,
            "discount_value": Decimal("10"),
            "start_date": now - timedelta(days=1),
            "end_date": now + timedelta(days=1),
        }
        values.update(overrides)
        return Promotion(**values)

    return _make


@pytest.fixture
def make_sale(make_item: Callable[..., SaleItem]) -> Callable[..., Sale]:
    """Build a sale whose subtotal equals the sum of its items."""

    def _make(*items: SaleItem, **overrides) -> Sale:
        line_items = list(items) if items else [make_item("P1", "100.00")]
        sale = Sale(sale_id=overrides.pop("sale_id", "S-1"), items=line_items, **overrides)
        if sale.subtotal is None:
            sale.subtotal = sale.items_subtotal()
        return sale

    return _make


@pytest.fixture
def customer() -> Customer:
    return Customer("C1", "Test Customer", constants.CustomerType.REGULAR, Decimal("100.00"))
