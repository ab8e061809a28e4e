"""Per-product timeline merged from purchases, stock arrivals and sales.

Each source is fetched independently and mapped to :class:`ProductEvent` at
the boundary, so nothing downstream knows which sheet an event came from.
The merged list is stable-sorted by date; events sharing a timestamp keep the
causal order purchase, arrival, sale.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from . import core_logic, data_manager, log
from .constants import (
    DEFAULT_CUSTOMER_LABEL,
    DEFAULT_WAREHOUSE_LABEL,
    EVENT_PRECEDENCE,
    OWN_INVENTORY_LABEL,
    EventKind,
)
from .results import (
    CustomerSales,
    ErrorCategory,
    ErrorKind,
    OperationError,
    OperationStatus,
    ProductEvent,
    ProductSummary,
    TimelineResult,
    rejection_error,
)


class TimelineIntegrityError(RuntimeError):
    """Raised when the customer grouping disagrees with the raw sale records."""


def parse_event_date(raw: str) -> datetime:
    """Parse an ISO timestamp, treating naive values as UTC.

    Raises:
        ValueError: If ``raw`` is not an ISO 8601 date or datetime.
    """
    parsed = datetime.fromisoformat(raw.strip())
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def purchase_event(row: data_manager.PurchaseRow) -> ProductEvent:
    return ProductEvent(
        date=parse_event_date(row.timestamp_iso),
        kind=EventKind.PURCHASE,
        quantity_delta=row.quantity,
        amount=row.amount,
        counterparty_name=row.supplier_name or OWN_INVENTORY_LABEL,
        description=row.description or "",
    )


def arrival_event(row: data_manager.ArrivalRow) -> ProductEvent:
    description = ""
    if row.remaining_in_shipping is not None:
        description = f"{row.remaining_in_shipping} still in shipping"
    return ProductEvent(
        date=parse_event_date(row.timestamp_iso),
        kind=EventKind.ARRIVAL,
        quantity_delta=row.quantity,
        amount=Decimal("0"),
        counterparty_name=row.warehouse_name or DEFAULT_WAREHOUSE_LABEL,
        description=description,
    )


def sale_event(row: data_manager.SaleRow) -> ProductEvent:
    return ProductEvent(
        date=parse_event_date(row.timestamp_iso),
        kind=EventKind.SALE,
        quantity_delta=-row.quantity,
        amount=row.total,
        counterparty_name=row.customer_name or DEFAULT_CUSTOMER_LABEL,
        description=f"{row.quantity} @ {row.unit_price}",
    )


def order_events(events: Iterable[ProductEvent]) -> List[ProductEvent]:
    """Sort ascending by date, breaking ties purchase < arrival < sale."""

    return sorted(events, key=lambda event: (event.date, EVENT_PRECEDENCE[event.kind]))


def group_sales_by_customer(sales: Sequence[data_manager.SaleRow]) -> Tuple[CustomerSales, ...]:
    """Aggregate raw sales per customer, in order of first appearance."""

    totals: Dict[str, List] = {}
    for sale in sales:
        name = sale.customer_name or DEFAULT_CUSTOMER_LABEL
        bucket = totals.setdefault(name, [Decimal("0"), Decimal("0"), 0])
        bucket[0] += sale.quantity
        bucket[1] += sale.total
        bucket[2] += 1
    return tuple(
        CustomerSales(customer_name=name, total_quantity=qty, total_amount=amount, sale_count=count)
        for name, (qty, amount, count) in totals.items()
    )


def summarize_product(
    context: core_logic.RuntimeContext,
    product: data_manager.InventoryRow,
    purchases: Sequence[data_manager.PurchaseRow],
    arrivals: Sequence[data_manager.ArrivalRow],
    sales: Sequence[data_manager.SaleRow],
) -> ProductSummary:
    """Derive the product metrics reported next to its timeline.

    Sold totals come from the customer grouping and are checked against a
    direct fold over ``sales``.

    Raises:
        TimelineIntegrityError: If the two folds disagree.
    """
    by_customer = group_sales_by_customer(sales)
    sold_quantity = sum((group.total_quantity for group in by_customer), Decimal("0"))
    sold_amount = sum((group.total_amount for group in by_customer), Decimal("0"))
    raw_quantity = sum((sale.quantity for sale in sales), Decimal("0"))
    raw_amount = sum((sale.total for sale in sales), Decimal("0"))
    if sold_quantity != raw_quantity or sold_amount != raw_amount:
        log.error(
            "Sales grouping mismatch for product '%s': grouped %s/%s, raw %s/%s",
            product.product_id,
            sold_quantity,
            sold_amount,
            raw_quantity,
            raw_amount,
        )
        raise TimelineIntegrityError(f"Sales totals disagree for product '{product.product_id}'")

    purchased_quantity = sum((row.quantity for row in purchases), Decimal("0"))
    purchased_amount = sum((row.amount for row in purchases), Decimal("0"))
    arrived_quantity = sum((row.quantity for row in arrivals), Decimal("0"))

    warehouses: Dict[str, Decimal] = {}
    for row in arrivals:
        name = row.warehouse_name or DEFAULT_WAREHOUSE_LABEL
        warehouses[name] = warehouses.get(name, Decimal("0")) + row.quantity

    reported = [row for row in arrivals if row.remaining_in_shipping is not None]
    if reported:
        latest = max(reported, key=lambda row: parse_event_date(row.timestamp_iso))
        in_shipping = latest.remaining_in_shipping
    else:
        in_shipping = max(purchased_quantity - arrived_quantity, Decimal("0"))

    return ProductSummary(
        product_id=product.product_id,
        product_name=product.product_name,
        supplier_name=_supplier_name(context, product),
        purchased_quantity=purchased_quantity,
        purchased_amount=purchased_amount,
        arrived_quantity=arrived_quantity,
        in_shipping_quantity=in_shipping,
        sold_quantity=sold_quantity,
        sold_amount=sold_amount,
        on_hand_quantity=arrived_quantity - sold_quantity,
        warehouses=warehouses,
        sales_by_customer=by_customer,
    )


def _supplier_name(context: core_logic.RuntimeContext, product: data_manager.InventoryRow) -> str:
    if not product.supplier_id:
        return OWN_INVENTORY_LABEL
    try:
        return data_manager.get_supplier(context.workbook, product.supplier_id).supplier_name
    except KeyError:
        log.warning("Supplier '%s' of product '%s' is missing", product.supplier_id, product.product_id)
        return product.supplier_id


def _load_source(fetch: Callable, mapper: Callable, workbook, product_id: str) -> Tuple[list, List[ProductEvent]]:
    rows = fetch(workbook, product_id)
    return rows, [mapper(row) for row in rows]


def _find_product(workbook, product_id: str) -> Optional[data_manager.InventoryRow]:
    try:
        return data_manager.get_inventory(workbook, product_id)
    except KeyError:
        return None


def _source_failed(step: str, product_id: str, exc: core_logic.StepFailed) -> TimelineResult:
    return TimelineResult(
        status=OperationStatus.FAILED,
        error=OperationError(
            kind=ErrorKind.SOURCE_FETCH_FAILED,
            category=ErrorCategory.OPERATION_FAILED,
            message=f"Could not read {step.split('_', 1)[1]} of product '{product_id}': {exc.cause}",
            failed_step=step,
        ),
    )


def build_timeline(context: core_logic.RuntimeContext, product_id: str) -> TimelineResult:
    """Merge the purchase, arrival and sale records of one product.

    Returns:
        TimelineResult: ``SUCCESS`` with the ordered events and the product
            summary, or ``FAILED`` with no events when the product is unknown
            or any source, the inventory row included, could not be read.

    Raises:
        TimelineIntegrityError: If the sales totals disagree (internal fault).
    """
    try:
        product = core_logic.run_step(context, "fetch_inventory", _find_product, context.workbook, product_id)
    except core_logic.StepFailed as exc:
        return _source_failed("fetch_inventory", product_id, exc)
    if product is None:
        log.warning("Timeline requested for unknown product '%s'", product_id)
        return TimelineResult(
            status=OperationStatus.FAILED,
            error=rejection_error(core_logic.ProductNotFound(product_id)),
        )

    sources = (
        ("fetch_purchases", data_manager.fetch_product_purchases, purchase_event),
        ("fetch_arrivals", data_manager.fetch_product_arrivals, arrival_event),
        ("fetch_sales", data_manager.fetch_product_sales, sale_event),
    )
    loaded = []
    for step, fetch, mapper in sources:
        try:
            loaded.append(core_logic.run_step(context, step, _load_source, fetch, mapper, context.workbook, product_id))
        except core_logic.StepFailed as exc:
            return _source_failed(step, product_id, exc)

    (purchases, purchase_events), (arrivals, arrival_events), (sales, sale_events) = loaded
    events = order_events([*purchase_events, *arrival_events, *sale_events])
    summary = summarize_product(context, product, purchases, arrivals, sales)
    log.info("Built timeline for product '%s' with %d events", product_id, len(events))
    return TimelineResult(status=OperationStatus.SUCCESS, events=tuple(events), summary=summary)
