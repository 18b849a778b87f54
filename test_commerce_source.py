import json
import unittest

import httpx
import respx

import commerce_source as cs
from expense_store import ExpenseStore
from models import CourierProvider, OrderStatus, TrackingAnnotation
from reconcile import Dashboard, ReconciliationEngine
from settings_store import SettingsStore
from test_reconcile import FakeDirectory
from tracking_store import TrackingStore

LOCAL = "http://local.test/api"
STORE_CONFIG = {"url": "https://shop.test", "consumerKey": "ck_1", "consumerSecret": "cs_1"}


def _raw_order(order_id, status="processing", total="500.00", shipping="60.00", date="2024-05-01T10:00:00", phone="01711111111"):
    return {
        "id": order_id,
        "status": status,
        "date_created": date,
        "total": total,
        "shipping_total": shipping,
        "discount_total": "0.00",
        "payment_method_title": "Cash on delivery",
        "billing": {
            "first_name": "Rahim",
            "last_name": "Uddin",
            "email": "rahim@example.com",
            "phone": phone,
            "address_1": "House 1",
            "city": "Dhaka",
        },
        "line_items": [{"product_id": 11, "name": "Shirt", "price": 220, "quantity": 2}],
    }


class StatusMappingTest(unittest.TestCase):
    def test_courier_status_overrides_native(self):
        annotation = TrackingAnnotation(order_id="5", courier_status="in transit")
        self.assertEqual(cs.derive_status("completed", annotation), OrderStatus.SHIPPING)

    def test_returned_to_sender(self):
        annotation = TrackingAnnotation(order_id="5", courier_status="Returned to sender")
        self.assertEqual(cs.derive_status("completed", annotation), OrderStatus.RETURNED)

    def test_keyword_precedence(self):
        self.assertEqual(cs.map_courier_status("Delivered, return requested"), OrderStatus.DELIVERED)
        self.assertEqual(cs.map_courier_status("cancelled_approval_pending"), OrderStatus.CANCELLED)
        self.assertEqual(cs.map_courier_status("Pickup requested"), OrderStatus.SHIPPING)
        self.assertEqual(cs.map_courier_status("in_review"), OrderStatus.PACKAGING)

    def test_blank_courier_status_falls_back_to_native(self):
        annotation = TrackingAnnotation(order_id="5", courier_tracking_code="SF1", courier_status="  ")
        self.assertEqual(cs.derive_status("completed", annotation), OrderStatus.DELIVERED)

    def test_native_table(self):
        self.assertEqual(cs.map_native_status("processing"), OrderStatus.PACKAGING)
        self.assertEqual(cs.map_native_status("on-hold"), OrderStatus.PENDING)
        self.assertEqual(cs.map_native_status("failed"), OrderStatus.REJECTED)
        self.assertEqual(cs.map_native_status("refunded"), OrderStatus.RETURNED)
        self.assertEqual(cs.map_native_status("checkout-draft"), OrderStatus.PENDING)
        self.assertEqual(cs.map_native_status(None), OrderStatus.PENDING)

    def test_provider_detection(self):
        self.assertEqual(
            cs.detect_provider(TrackingAnnotation(order_id="1", courier_tracking_code="2305123456")),
            CourierProvider.PATHAO,
        )
        self.assertEqual(
            cs.detect_provider(TrackingAnnotation(order_id="1", courier_tracking_code="SFR2305AB")),
            CourierProvider.STEADFAST,
        )
        self.assertEqual(
            cs.detect_provider(TrackingAnnotation(order_id="1", courier_tracking_code="123", courier_provider="Steadfast")),
            CourierProvider.STEADFAST,
        )
        self.assertIsNone(cs.detect_provider(None))


class NormalizeTest(unittest.TestCase):
    def test_money_parsing(self):
        self.assertEqual(cs.parse_money("1200.50"), 1200.5)
        self.assertEqual(cs.parse_money(None), 0.0)
        self.assertEqual(cs.parse_money("n/a"), 0.0)

    def test_non_finite_amounts_are_zero(self):
        for text in ("NaN", "inf", "-Infinity"):
            self.assertEqual(cs.parse_money(text), 0.0)
        order = cs.normalize_order(_raw_order(7, total="NaN"))
        self.assertEqual(order.total, 0.0)

    def test_order_totals_and_customer(self):
        order = cs.normalize_order(_raw_order(7, total="560.00", shipping="60.00"))
        self.assertEqual(order.id, "7")
        self.assertEqual(order.total, 560.0)
        self.assertEqual(order.subtotal, 500.0)
        self.assertEqual(order.shipping_charge, 60.0)
        self.assertEqual(order.customer.name, "Rahim Uddin")
        self.assertEqual(order.address, "House 1, Dhaka")
        self.assertEqual(order.products[0].id, "11")
        self.assertEqual(order.products[0].qty, 2)
        self.assertIn("placed", order.status_history)
        self.assertIsNone(order.courier_tracking_code)

    def test_guest_name_fallback(self):
        raw = _raw_order(8)
        raw["billing"] = {"email": "", "phone": ""}
        self.assertEqual(cs.normalize_order(raw).customer.name, "Guest Customer")

    def test_product_discount(self):
        product = cs.normalize_product({
            "id": 3, "name": "Shoe", "price": "800", "regular_price": "1000",
            "stock_quantity": 4, "status": "publish", "categories": [{"name": "Footwear"}], "images": [],
        })
        self.assertEqual(product.original_price, 1000.0)
        self.assertEqual(product.discount_percent, 20.0)
        self.assertEqual(product.category, "Footwear")
        self.assertTrue(product.status)
        self.assertTrue(product.img)


class CommerceSourceFetchTest(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.settings = SettingsStore(base_url=LOCAL)
        self.tracking = TrackingStore(base_url=LOCAL)
        self.source = cs.CommerceSource(self.settings, self.tracking)
        self.mock = respx.mock(assert_all_called=False)
        self.mock.start()
        self.tracking_rows = []
        self.stored_config = STORE_CONFIG
        self.mock.route(method="GET", host="local.test", path="/api/settings").mock(side_effect=self._settings)
        self.mock.route(method="GET", host="local.test", path="/api/local_tracking").mock(
            side_effect=lambda request: httpx.Response(200, json=self.tracking_rows)
        )

    def tearDown(self):
        self.mock.stop()

    def _settings(self, request):
        if request.url.params.get("key") == cs.CONFIG_KEY and self.stored_config is not None:
            # the settings endpoint returns the stored JSON text as a JSON string
            return httpx.Response(200, json=json.dumps(self.stored_config))
        return httpx.Response(200, json=None)

    def _store(self, path, **kwargs):
        return self.mock.route(method="GET", host="shop.test", path=f"/wp-json/wc/v3{path}").mock(**kwargs)

    async def test_tracking_joined_onto_orders(self):
        self._store("/orders", return_value=httpx.Response(200, json=[_raw_order(5, status="completed")]))
        self.tracking_rows = [{"id": "5", "courier_tracking_code": "SF5", "courier_provider": "Steadfast", "courier_status": "Returned to sender"}]
        (order,) = await self.source.fetch_orders()
        self.assertEqual(order.status, OrderStatus.RETURNED)
        self.assertEqual(order.courier_tracking_code, "SF5")
        self.assertEqual(order.courier_provider, CourierProvider.STEADFAST)

    async def test_orders_request_carries_credentials_and_page_size(self):
        route = self._store("/orders", return_value=httpx.Response(200, json=[]))
        await self.source.fetch_orders()
        params = route.calls.last.request.url.params
        self.assertEqual(params["consumer_key"], "ck_1")
        self.assertEqual(params["consumer_secret"], "cs_1")
        self.assertEqual(params["per_page"], "100")

    async def test_tracking_only_orders_and_newest_first(self):
        self._store("/orders", return_value=httpx.Response(200, json=[
            _raw_order(1, date="2024-01-01T10:00:00"),
            _raw_order(2, date="2024-03-01T10:00:00"),
        ]))
        self.tracking_rows = [{"id": "EXT-99", "courier_tracking_code": "SF99", "courier_status": "in_review"}]
        orders = await self.source.fetch_orders()
        self.assertEqual([o.id for o in orders], ["EXT-99", "2", "1"])
        placeholder = orders[0]
        self.assertEqual(placeholder.payment_method, "Tracking Only")
        self.assertEqual(placeholder.total, 0.0)
        self.assertEqual(placeholder.status, OrderStatus.PACKAGING)

    async def test_unreachable_store_reads_empty(self):
        for path in ("/orders", "/products", "/products/categories"):
            self._store(path, side_effect=httpx.ConnectError("store down"))
        self.assertEqual(await self.source.fetch_orders(), [])
        self.assertEqual(await self.source.fetch_products(), [])
        self.assertEqual(await self.source.fetch_categories(), [])

    async def test_error_status_reads_empty(self):
        self._store("/products", return_value=httpx.Response(401, json={"code": "woocommerce_rest_cannot_view"}))
        self.assertEqual(await self.source.fetch_products(), [])

    async def test_missing_config_skips_store(self):
        self.stored_config = None
        route = self._store("/orders", return_value=httpx.Response(200, json=[_raw_order(1)]))
        self.assertEqual(await self.source.fetch_orders(), [])
        self.assertFalse(await self.source.is_configured())
        self.assertFalse(route.called)

    async def test_malformed_store_url_reads_empty(self):
        self.stored_config = dict(STORE_CONFIG, url="https://shop.test:80a")
        self.assertFalse(await self.source.is_configured())
        self.assertEqual(await self.source.fetch_orders(), [])
        self.assertEqual(await self.source.fetch_products(), [])
        self.assertEqual(await self.source.fetch_categories(), [])

    async def test_malformed_store_url_keeps_expense_total(self):
        self.stored_config = dict(STORE_CONFIG, url="https://shop.test:80a")
        self.mock.route(method="GET", host="local.test", path="/api/expenses").mock(
            return_value=httpx.Response(200, json=[{"id": "1", "amount": 100, "category": "Rent"}])
        )
        engine = ReconciliationEngine(self.source, ExpenseStore(base_url=LOCAL), FakeDirectory())
        dashboard = Dashboard(engine, self.tracking, None, None)
        stats = await dashboard.reconcile()
        self.assertEqual(stats.total_expenses, 100)
        self.assertEqual(stats.orders, 0)
        self.assertEqual(stats.net_profit, -100)

    async def test_invalid_url_counts_as_read_failure(self):
        self.assertIn(httpx.InvalidURL, cs._READ_ERRORS)

    async def test_config_cached_until_invalidated(self):
        self.assertTrue(await self.source.is_configured())
        self.stored_config = None
        self.assertTrue(await self.source.is_configured())
        self.source.invalidate()
        self.assertFalse(await self.source.is_configured())

    async def test_categories(self):
        self._store("/products/categories", return_value=httpx.Response(200, json=[
            {"id": 4, "name": "Shirts", "slug": "shirts", "count": 12},
        ]))
        (category,) = await self.source.fetch_categories()
        self.assertEqual(category.name, "Shirts")
        self.assertEqual(category.count, 12)


if __name__ == "__main__":
    unittest.main()
