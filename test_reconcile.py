import unittest

from couriers import ConsignmentResult, CourierRejected
from customer_directory import UpsertResult
from models import (
    CourierProvider,
    Customer,
    Expense,
    InventoryProduct,
    LineItem,
    Order,
    OrderCustomer,
    OrderStatus,
)
from pos_cart import Cart
import reconcile as rc


def _order(order_id, total, phone="01711111111", status=OrderStatus.PENDING, timestamp=1_700_000_000_000, **extra):
    return Order(
        id=order_id,
        timestamp=timestamp,
        customer=OrderCustomer(name="Rahim", phone=phone),
        address=f"Address {order_id}",
        products=[LineItem(id="11", name="Shirt", price=total)],
        total=total,
        status=status,
        status_history={"placed": "01 May 2024"},
        **extra,
    )


class FakeCommerce:
    def __init__(self, orders=(), products=(), configured=True):
        self.orders = list(orders)
        self.products = list(products)
        self.configured = configured

    async def is_configured(self):
        return self.configured

    async def fetch_orders(self):
        return list(self.orders)

    async def fetch_products(self):
        return list(self.products)

    async def fetch_categories(self):
        return []


class FakeExpenses:
    def __init__(self, amounts=()):
        self.expenses = [Expense(id=str(i), amount=a) for i, a in enumerate(amounts)]

    async def list_expenses(self):
        return list(self.expenses)


class FakeDirectory:
    """Accumulates like the real directory and records every upsert."""

    def __init__(self):
        self.calls = []
        self.rows = {}

    async def upsert(self, customer, latest_order_total=0.0, latest_address=""):
        self.calls.append((customer.phone, latest_order_total, latest_address))
        row = self.rows.setdefault(customer.phone, Customer(phone=customer.phone, name=customer.name))
        self.rows[customer.phone] = row.model_copy(update={
            "order_count": row.order_count + 1,
            "total_spent": row.total_spent + latest_order_total,
        })
        return UpsertResult(ok=True, phone=customer.phone, order_count=self.rows[customer.phone].order_count)

    async def list(self):
        return list(self.rows.values())


class FakeTracking:
    def __init__(self):
        self.saved = []

    async def save_tracking(self, order_id, code, provider, status=None):
        self.saved.append((order_id, code, provider, status))


class FakeSteadfast:
    def __init__(self, statuses=None):
        self.statuses = statuses or {}
        self.created = []

    async def create_consignment(self, order):
        self.created.append(order.id)
        return ConsignmentResult(provider=CourierProvider.STEADFAST, tracking_code=f"SF{order.id}", provider_id="1", status="in_review")

    async def get_delivery_status(self, code):
        return self.statuses.get(code)

    async def get_balance(self):
        return 1500.0


class BrokenCommerce(FakeCommerce):
    async def fetch_orders(self):
        raise RuntimeError("unexpected payload shape")


def _dashboard(commerce, expenses=None, directory=None, steadfast=None):
    directory = directory or FakeDirectory()
    engine = rc.ReconciliationEngine(commerce, expenses or FakeExpenses(), directory)
    tracking = FakeTracking()
    return rc.Dashboard(engine, tracking, steadfast or FakeSteadfast(), None), directory, tracking


class DeriveCustomersTest(unittest.TestCase):
    def test_short_phone_excluded(self):
        derived = rc.derive_customers([_order("1", 100, phone="123"), _order("2", 200, phone="01712345678")])
        self.assertEqual(list(derived), ["01712345678"])

    def test_last_order_wins_per_phone(self):
        derived = rc.derive_customers([_order("1", 500), _order("2", 300, phone=" 01711111111 ")])
        self.assertEqual(len(derived), 1)
        entry = derived["01711111111"]
        self.assertEqual(entry.latest_order_total, 300)
        self.assertEqual(entry.latest_address, "Address 2")

    def test_stats_identity(self):
        orders = [_order("1", 120.5), _order("2", 79.5)]
        expenses = [Expense(id="1", amount=50), Expense(id="2", amount=25)]
        stats = rc.compute_stats(orders, expenses, customer_count=3, product_count=9)
        self.assertAlmostEqual(stats.total_pos_sale, 200.0)
        self.assertAlmostEqual(stats.net_profit, 200.0 - 75.0)
        self.assertAlmostEqual(stats.gross_profit, 0.45 * 200.0)
        self.assertAlmostEqual(stats.online_sold, 0.2 * 200.0)
        self.assertEqual((stats.orders, stats.customers, stats.total_products), (2, 3, 9))

    def test_enrich_keeps_unmatched_items(self):
        order = _order("1", 100)
        order = order.model_copy(update={"products": order.products + [LineItem(id="99", name="Gone", img="old.png")]})
        product = InventoryProduct(id="11", name="Shirt", img="https://img.test/shirt.png")
        (enriched,) = rc.enrich_line_items([order], [product])
        self.assertEqual(enriched.products[0].img, "https://img.test/shirt.png")
        self.assertEqual(enriched.products[1].img, "old.png")

    def test_status_counts(self):
        counts = rc.status_counts([_order("1", 1), _order("2", 1, status=OrderStatus.DELIVERED)])
        self.assertEqual(counts["All"], 2)
        self.assertEqual(counts["Pending"], 1)
        self.assertEqual(counts["Delivered"], 1)
        self.assertEqual(counts["Returned"], 0)


class ReconcileTest(unittest.IsolatedAsyncioTestCase):
    async def test_two_orders_one_phone_one_expense(self):
        dashboard, directory, _ = _dashboard(
            FakeCommerce([_order("1", 500), _order("2", 300)]),
            FakeExpenses([100]),
        )
        stats = await dashboard.reconcile()
        self.assertEqual(directory.calls, [("01711111111", 300, "Address 2")])
        self.assertEqual(stats.total_pos_sale, 800)
        self.assertEqual(stats.total_expenses, 100)
        self.assertEqual(stats.net_profit, 700)
        self.assertEqual(stats.customers, 1)
        self.assertIs(dashboard.stats, stats)

    async def test_repeat_pass_accumulates_in_directory_only(self):
        dashboard, directory, _ = _dashboard(FakeCommerce([_order("1", 500)]))
        await dashboard.reconcile()
        await dashboard.reconcile()
        (customer,) = dashboard.snapshot.customers
        self.assertEqual(customer.order_count, 2)
        self.assertEqual(len(directory.rows), 1)

    async def test_unconfigured_store_still_sums_expenses(self):
        dashboard, _, _ = _dashboard(FakeCommerce(configured=False), FakeExpenses([40, 60]))
        stats = await dashboard.reconcile()
        self.assertFalse(dashboard.snapshot.configured)
        self.assertEqual(stats.orders, 0)
        self.assertEqual(stats.total_products, 0)
        self.assertEqual(stats.total_expenses, 100)
        self.assertEqual(stats.net_profit, -100)

    async def test_unexpected_error_keeps_previous_snapshot(self):
        commerce = FakeCommerce([_order("1", 500)])
        dashboard, _, _ = _dashboard(commerce)
        await dashboard.reconcile()
        before = dashboard.snapshot
        dashboard.engine.commerce = BrokenCommerce()
        with self.assertLogs("reconcile", level="ERROR"):
            stats = await dashboard.reconcile()
        self.assertIs(dashboard.snapshot, before)
        self.assertEqual(stats.total_pos_sale, 500)

    async def test_wire_shape(self):
        dashboard, _, _ = _dashboard(FakeCommerce([_order("1", 500)]), FakeExpenses([100]))
        await dashboard.reconcile()
        wire = dashboard.snapshot.to_wire()
        self.assertEqual(wire["stats"]["netProfit"], 400)
        self.assertEqual(wire["statusCounts"]["All"], 1)
        self.assertIn("shippingCharge", wire["orders"][0])
        self.assertIn("courier_tracking_code", wire["orders"][0])


class DashboardActionsTest(unittest.IsolatedAsyncioTestCase):
    async def test_place_pos_order(self):
        dashboard, directory, _ = _dashboard(FakeCommerce([_order("1", 500)]))
        await dashboard.reconcile()
        cart = Cart()
        shirt = InventoryProduct(id="11", name="Shirt", price=250, stock=5)
        cart.add(shirt)
        cart.add(shirt)
        order = await dashboard.place_pos_order(cart, OrderCustomer(name="Karim", phone="01899999999"), discount=50)
        self.assertTrue(order.id.startswith("POS-"))
        self.assertEqual(order.status, OrderStatus.DELIVERED)
        self.assertEqual(order.address, rc.POS_ADDRESS)
        self.assertEqual(order.total, 450)
        self.assertEqual(len(cart), 0)
        self.assertEqual(dashboard.snapshot.orders[0].id, order.id)
        self.assertEqual(dashboard.stats.total_pos_sale, 950)
        self.assertEqual(dashboard.stats.customers, 2)
        self.assertIn(("01899999999", 450, rc.POS_ADDRESS), directory.calls)

    async def test_pos_order_requires_items_and_customer(self):
        dashboard, _, _ = _dashboard(FakeCommerce())
        with self.assertRaises(ValueError):
            await dashboard.place_pos_order(Cart(), OrderCustomer(name="Karim", phone="01899999999"))
        cart = Cart()
        cart.add(InventoryProduct(id="11", name="Shirt", price=250))
        with self.assertRaises(ValueError):
            await dashboard.place_pos_order(cart, None)

    async def test_send_to_courier_records_tracking(self):
        steadfast = FakeSteadfast()
        dashboard, _, tracking = _dashboard(FakeCommerce([_order("7", 500)]), steadfast=steadfast)
        await dashboard.reconcile()
        result = await dashboard.send_to_courier("7", CourierProvider.STEADFAST)
        self.assertEqual(result.tracking_code, "SF7")
        self.assertEqual(tracking.saved, [("7", "SF7", "Steadfast", "in_review")])
        order = dashboard.find_order("7")
        self.assertEqual(order.courier_tracking_code, "SF7")
        self.assertEqual(order.status, OrderStatus.PACKAGING)
        self.assertIn("placed", order.status_history)

        with self.assertRaises(CourierRejected):
            await dashboard.send_to_courier("7", CourierProvider.STEADFAST)
        self.assertEqual(steadfast.created, ["7"])

    async def test_send_unknown_order(self):
        dashboard, _, _ = _dashboard(FakeCommerce())
        with self.assertRaises(LookupError):
            await dashboard.send_to_courier("404", CourierProvider.STEADFAST)

    async def test_refresh_courier_statuses(self):
        orders = [
            _order("1", 100, courier_tracking_code="SF1", courier_provider=CourierProvider.STEADFAST, courier_status="in_review", status=OrderStatus.PACKAGING),
            _order("2", 100, courier_tracking_code="SF2", courier_provider=CourierProvider.STEADFAST, courier_status="delivered", status=OrderStatus.DELIVERED),
            _order("3", 100, courier_tracking_code="555", courier_provider=CourierProvider.PATHAO, status=OrderStatus.SHIPPING),
        ]
        steadfast = FakeSteadfast({"SF1": "in_transit", "SF2": "cancelled", "555": "delivered"})
        dashboard, _, tracking = _dashboard(FakeCommerce(orders), steadfast=steadfast)
        await dashboard.reconcile()
        changed = await dashboard.refresh_courier_statuses()
        self.assertEqual(changed, 1)
        self.assertEqual(tracking.saved, [("1", "SF1", "Steadfast", "in_transit")])
        self.assertEqual(dashboard.find_order("1").status, OrderStatus.SHIPPING)
        self.assertEqual(dashboard.find_order("2").status, OrderStatus.DELIVERED)

    async def test_override_status_is_local(self):
        dashboard, _, tracking = _dashboard(FakeCommerce([_order("1", 100)]))
        await dashboard.reconcile()
        updated = dashboard.override_status("1", OrderStatus.CANCELLED)
        self.assertEqual(updated.status, OrderStatus.CANCELLED)
        self.assertIn("cancelled", updated.status_history)
        self.assertEqual(dashboard.status_counts()["Cancelled"], 1)
        self.assertEqual(tracking.saved, [])
        self.assertIsNone(dashboard.override_status("missing", OrderStatus.CANCELLED))


if __name__ == "__main__":
    unittest.main()
