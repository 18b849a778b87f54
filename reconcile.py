"""
Reconciliation pipeline: one pass fetches every source, merges courier
tracking, registers customers with the directory and recomputes the
dashboard statistics from scratch.

Pass order (each step feeds the next):
  1. note whether the commerce store is configured (the pass continues either way)
  2. fetch orders, products, expenses and categories concurrently
  3. back-fill product images onto order line items
  4. derive one customer per valid phone (last order seen wins)
  5. upsert those customers concurrently
  6. reload the canonical customer list from the directory
  7. compute statistics
  8. publish the assembled snapshot in one assignment

Every source adapter fails soft to an empty result, so a dead source only
zeroes its own share of the snapshot.
"""
import asyncio
import logging
import time
from datetime import datetime
from typing import Dict, List, NamedTuple, Optional, Sequence

from pydantic import BaseModel, Field

from commerce_source import CommerceSource, map_courier_status
from couriers import (
    ConsignmentResult,
    CourierRejected,
    PathaoClient,
    PathaoLocation,
    SteadfastClient,
)
from customer_directory import CustomerDirectory, normalize_phone
from expense_store import ExpenseStore
from models import (
    TERMINAL_STATUSES,
    Category,
    CourierProvider,
    Customer,
    DashboardStats,
    Expense,
    InventoryProduct,
    Order,
    OrderCustomer,
    OrderStatus,
    display_date,
    display_day,
)
from pos_cart import Cart
from tracking_store import TrackingStore

logger = logging.getLogger(__name__)

# Business placeholders, not derived from cost or channel data.
GROSS_MARGIN = 0.45
ONLINE_SHARE = 0.2

POS_ORDER_PREFIX = 'POS-'
POS_ADDRESS = 'Point of Sale Entry'


class DerivedCustomer(NamedTuple):
    customer: OrderCustomer
    latest_order_total: float
    latest_address: str


class DashboardSnapshot(BaseModel):
    stats: DashboardStats = Field(default_factory=DashboardStats)
    orders: List[Order] = Field(default_factory=list)
    products: List[InventoryProduct] = Field(default_factory=list)
    customers: List[Customer] = Field(default_factory=list)
    categories: List[Category] = Field(default_factory=list)
    expenses: List[Expense] = Field(default_factory=list)
    configured: bool = False
    refreshed_at: Optional[datetime] = None

    def to_wire(self) -> dict:
        return {
            'stats': self.stats.to_wire(),
            'orders': [o.to_wire() for o in self.orders],
            'products': [p.to_wire() for p in self.products],
            'customers': [c.to_wire() for c in self.customers],
            'categories': [c.to_wire() for c in self.categories],
            'expenses': [e.to_wire() for e in self.expenses],
            'configured': self.configured,
            'refreshedAt': self.refreshed_at.isoformat() if self.refreshed_at else None,
            'statusCounts': status_counts(self.orders),
        }


def enrich_line_items(orders: Sequence[Order], products: Sequence[InventoryProduct]) -> List[Order]:
    """Attach catalogue images to line items; unmatched items stay as they are."""
    images = {p.id: p.img for p in products if p.img}
    enriched = []
    for order in orders:
        items = [
            item.model_copy(update={'img': images[item.id]}) if item.id in images else item
            for item in order.products
        ]
        enriched.append(order.model_copy(update={'products': items}))
    return enriched


def derive_customers(orders: Sequence[Order]) -> Dict[str, DerivedCustomer]:
    """One entry per valid trimmed phone, in first-seen order, holding the last order's data."""
    derived: Dict[str, DerivedCustomer] = {}
    for order in orders:
        phone = normalize_phone(order.customer.phone)
        if phone is None:
            continue
        derived[phone] = DerivedCustomer(
            customer=order.customer.model_copy(update={'phone': phone}),
            latest_order_total=order.total,
            latest_address=order.address,
        )
    return derived


def compute_stats(
    orders: Sequence[Order],
    expenses: Sequence[Expense],
    customer_count: int,
    product_count: int,
) -> DashboardStats:
    total_sales = sum(o.total for o in orders)
    total_expenses = sum(e.amount for e in expenses)
    return DashboardStats(
        net_profit=total_sales - total_expenses,
        gross_profit=total_sales * GROSS_MARGIN,
        total_expenses=total_expenses,
        total_pos_sale=total_sales,
        online_sold=total_sales * ONLINE_SHARE,
        orders=len(orders),
        customers=customer_count,
        total_products=product_count,
    )


def status_counts(orders: Sequence[Order]) -> Dict[str, int]:
    counts = {'All': len(orders)}
    counts.update({status.value: 0 for status in OrderStatus})
    for order in orders:
        counts[order.status.value] += 1
    return counts


class ReconciliationEngine:
    def __init__(self, commerce: CommerceSource, expenses: ExpenseStore, directory: CustomerDirectory):
        self.commerce = commerce
        self.expenses = expenses
        self.directory = directory

    async def sync_customers(self, orders: Sequence[Order]) -> List[Customer]:
        derived = derive_customers(orders)
        if derived:
            results = await asyncio.gather(*(
                self.directory.upsert(d.customer, d.latest_order_total, d.latest_address)
                for d in derived.values()
            ))
            failed = [r.phone for r in results if not r.ok]
            if failed:
                logger.warning("Directory upsert failed for %d customer(s): %s", len(failed), ', '.join(failed))
        return await self.directory.list()

    async def run_pass(self) -> DashboardSnapshot:
        configured = await self.commerce.is_configured()
        if not configured:
            logger.info("Commerce store not configured; continuing with local sources only")

        orders, products, expenses, categories = await asyncio.gather(
            self.commerce.fetch_orders(),
            self.commerce.fetch_products(),
            self.expenses.list_expenses(),
            self.commerce.fetch_categories(),
        )
        orders = enrich_line_items(orders, products)
        customers = await self.sync_customers(orders)
        stats = compute_stats(orders, expenses, len(customers), len(products))
        logger.info(
            "Reconciled %d orders, %d products, %d customers, %d expenses",
            len(orders), len(products), len(customers), len(expenses)
        )
        return DashboardSnapshot(
            stats=stats,
            orders=orders,
            products=products,
            customers=customers,
            categories=categories,
            expenses=expenses,
            configured=configured,
            refreshed_at=datetime.now(),
        )


class Dashboard:
    """Owns the published snapshot and the actions that replace it.

    The snapshot is only ever swapped for a fully built one. Overlapping
    passes are not serialized: whichever completes last is what readers see.
    """

    def __init__(
        self,
        engine: ReconciliationEngine,
        tracking: TrackingStore,
        steadfast: SteadfastClient,
        pathao: PathaoClient,
    ):
        self.engine = engine
        self.tracking = tracking
        self.steadfast = steadfast
        self.pathao = pathao
        self._snapshot = DashboardSnapshot()

    @property
    def snapshot(self) -> DashboardSnapshot:
        return self._snapshot

    @property
    def stats(self) -> DashboardStats:
        return self._snapshot.stats

    async def reconcile(self) -> DashboardStats:
        try:
            snapshot = await self.engine.run_pass()
        except Exception:
            logger.exception("Reconciliation pass failed; keeping the previous snapshot")
            return self._snapshot.stats
        self._snapshot = snapshot
        return snapshot.stats

    def _publish_orders(self, orders: List[Order], customers: Optional[List[Customer]] = None) -> None:
        current = self._snapshot
        customers = current.customers if customers is None else customers
        stats = compute_stats(orders, current.expenses, len(customers), len(current.products))
        self._snapshot = current.model_copy(update={'orders': orders, 'customers': customers, 'stats': stats})

    def find_order(self, order_id: str) -> Optional[Order]:
        for order in self._snapshot.orders:
            if order.id == str(order_id):
                return order
        return None

    def _replace_order(self, updated: Order) -> None:
        orders = [updated if o.id == updated.id else o for o in self._snapshot.orders]
        self._publish_orders(orders)

    def status_counts(self) -> Dict[str, int]:
        return status_counts(self._snapshot.orders)

    def override_status(self, order_id: str, status: OrderStatus) -> Optional[Order]:
        """Local-only status change; the store is not told."""
        order = self.find_order(order_id)
        if order is None:
            return None
        updated = order.with_status(status)
        self._replace_order(updated)
        return updated

    async def place_pos_order(
        self,
        cart: Cart,
        customer: Optional[OrderCustomer],
        payment_method: str = 'Cash',
        discount: float = 0.0,
    ) -> Order:
        if not len(cart):
            raise ValueError("Cart is empty!")
        if customer is None:
            raise ValueError("Please select a customer!")
        timestamp = int(time.time() * 1000)
        order = Order(
            id=f"{POS_ORDER_PREFIX}{timestamp}",
            timestamp=timestamp,
            date=display_date(timestamp),
            customer=customer,
            address=POS_ADDRESS,
            products=cart.line_items(),
            subtotal=cart.subtotal,
            shipping_charge=0.0,
            discount=discount,
            total=cart.total(discount),
            status=OrderStatus.DELIVERED,
            status_history={'placed': display_day(timestamp)},
            payment_method=payment_method,
        )
        customers = await self.engine.sync_customers([order])
        self._publish_orders([order] + list(self._snapshot.orders), customers)
        cart.clear()
        logger.info("Placed POS order %s for %s", order.id, order.total)
        return order

    async def send_to_courier(
        self,
        order_id: str,
        provider: CourierProvider,
        location: Optional[PathaoLocation] = None,
    ) -> ConsignmentResult:
        order = self.find_order(order_id)
        if order is None:
            raise LookupError(f"Order {order_id} not found")
        if order.courier_tracking_code:
            raise CourierRejected(f"Order {order_id} already has consignment {order.courier_tracking_code}")
        if provider == CourierProvider.PATHAO:
            result = await self.pathao.create_consignment(order, location)
        else:
            result = await self.steadfast.create_consignment(order)
        await self.tracking.save_tracking(order.id, result.tracking_code, provider.value, result.status)
        # a pass may have published a new snapshot while the courier call was in flight
        latest = self.find_order(order.id)
        if latest is not None:
            updated = latest.model_copy(update={
                'courier_tracking_code': result.tracking_code,
                'courier_provider': provider,
                'courier_status': result.status,
            })
            if latest.status not in TERMINAL_STATUSES:
                updated = updated.with_status(map_courier_status(result.status or ''))
            self._replace_order(updated)
        logger.info("Order %s sent to %s as %s", order.id, provider.value, result.tracking_code)
        return result

    async def create_manual_order(
        self,
        name: str,
        phone: str,
        address: str,
        amount: float,
        note: Optional[str] = None,
    ) -> ConsignmentResult:
        invoice, result = await self.steadfast.create_manual_order(name, phone, address, amount, note)
        await self.tracking.save_tracking(invoice, result.tracking_code, CourierProvider.STEADFAST.value, result.status)
        return result

    async def refresh_courier_statuses(self) -> int:
        """Poll Steadfast for open consignments and fold changes back in."""
        candidates = [
            o for o in self._snapshot.orders
            if o.courier_tracking_code
            and o.courier_provider == CourierProvider.STEADFAST
            and o.status not in TERMINAL_STATUSES
        ]
        if not candidates:
            return 0
        statuses = await asyncio.gather(*(
            self.steadfast.get_delivery_status(o.courier_tracking_code) for o in candidates
        ))
        changed: Dict[str, Order] = {}
        for order, courier_status in zip(candidates, statuses):
            if not courier_status or courier_status == order.courier_status:
                continue
            await self.tracking.save_tracking(
                order.id, order.courier_tracking_code, CourierProvider.STEADFAST.value, courier_status
            )
            changed[order.id] = order.model_copy(
                update={'courier_status': courier_status}
            ).with_status(map_courier_status(courier_status))
        if changed:
            self._publish_orders([changed.get(o.id, o) for o in self._snapshot.orders])
            logger.info("Courier status changed for %d order(s)", len(changed))
        return len(changed)

    async def courier_balance(self, provider: CourierProvider) -> float:
        client = self.pathao if provider == CourierProvider.PATHAO else self.steadfast
        return await client.get_balance()
