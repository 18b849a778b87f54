"""
WooCommerce source adapter.

Pulls orders, products and categories from the store's REST API
(`/wp-json/wc/v3`) and normalizes them into the dashboard records. Every
read fails soft: a missing configuration, an unreachable store or a payload
that does not parse all produce an empty list.

Order status is derived in two tiers. When a local tracking annotation with
a courier status exists, the courier keyword table decides; otherwise the
store's own order status is looked up in the native table.
"""
import asyncio
import logging
import math
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

import dashboard_config as cfg
from models import (
    Category,
    CourierProvider,
    InventoryProduct,
    LineItem,
    Order,
    OrderCustomer,
    OrderStatus,
    TrackingAnnotation,
    display_date,
    display_day,
)
from settings_store import SettingsStore
from tracking_store import TrackingStore, index_by_order

logger = logging.getLogger(__name__)

CONFIG_KEY = 'wp_config'
PAGE_SIZE = 100

# Checked in order against the lowercased courier status; first hit wins.
COURIER_STATUS_KEYWORDS: Tuple[Tuple[str, OrderStatus], ...] = (
    ('delivered', OrderStatus.DELIVERED),
    ('cancelled', OrderStatus.CANCELLED),
    ('return', OrderStatus.RETURNED),
    ('transit', OrderStatus.SHIPPING),
    ('shipping', OrderStatus.SHIPPING),
    ('pickup', OrderStatus.SHIPPING),
)
COURIER_STATUS_DEFAULT = OrderStatus.PACKAGING

NATIVE_STATUS_MAP: Dict[str, OrderStatus] = {
    'processing': OrderStatus.PACKAGING,
    'completed': OrderStatus.DELIVERED,
    'on-hold': OrderStatus.PENDING,
    'cancelled': OrderStatus.CANCELLED,
    'refunded': OrderStatus.RETURNED,
    'failed': OrderStatus.REJECTED,
}
NATIVE_STATUS_DEFAULT = OrderStatus.PENDING

# InvalidURL is not an HTTPError; a mistyped store URL must still read as empty.
_READ_ERRORS = (httpx.HTTPError, httpx.InvalidURL, ValueError, KeyError, TypeError, AttributeError, ValidationError)


class WooConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    url: str = ''
    consumer_key: str = ''
    consumer_secret: str = ''

    @property
    def is_complete(self) -> bool:
        if not (self.url.strip() and self.consumer_key.strip() and self.consumer_secret.strip()):
            return False
        try:
            httpx.URL(self.api_base)
        except httpx.InvalidURL:
            return False
        return True

    @property
    def api_base(self) -> str:
        return self.url.strip().rstrip('/') + '/wp-json/wc/v3'

    def auth_params(self) -> Dict[str, Any]:
        return {
            'consumer_key': self.consumer_key,
            'consumer_secret': self.consumer_secret,
            'per_page': PAGE_SIZE,
        }


def parse_money(value: Any) -> float:
    """Parse a store amount string; anything non-numeric counts as zero."""
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        amount = float(value)
    except (TypeError, ValueError):
        return 0.0
    # "NaN" and "inf" parse as floats but are not amounts
    return amount if math.isfinite(amount) else 0.0


def map_courier_status(courier_status: str) -> OrderStatus:
    cs = courier_status.lower()
    for keyword, status in COURIER_STATUS_KEYWORDS:
        if keyword in cs:
            return status
    return COURIER_STATUS_DEFAULT


def map_native_status(native_status: Optional[str]) -> OrderStatus:
    return NATIVE_STATUS_MAP.get((native_status or '').strip().lower(), NATIVE_STATUS_DEFAULT)


def derive_status(native_status: Optional[str], annotation: Optional[TrackingAnnotation]) -> OrderStatus:
    """Courier reality overrides the store's status once a shipment exists."""
    if annotation is not None and (annotation.courier_status or '').strip():
        return map_courier_status(annotation.courier_status)
    return map_native_status(native_status)


def detect_provider(annotation: Optional[TrackingAnnotation]) -> Optional[CourierProvider]:
    """Stored provider, else inferred from the code: Pathao codes are numeric."""
    if annotation is None:
        return None
    named = (annotation.courier_provider or '').strip().lower()
    for provider in CourierProvider:
        if named == provider.value.lower():
            return provider
    code = (annotation.courier_tracking_code or '').strip()
    if not code:
        return None
    return CourierProvider.PATHAO if code.isdigit() else CourierProvider.STEADFAST


def avatar_url(first_name: str, last_name: str) -> str:
    return "https://ui-avatars.com/api/?name={}+{}&background=random".format(
        quote(first_name or 'U'), quote(last_name or 'C')
    )


def placeholder_image(product_id: Any) -> str:
    return f"https://picsum.photos/seed/{product_id}/100/100"


def _timestamp_ms(raw_date: Optional[str]) -> int:
    if raw_date:
        try:
            return int(datetime.fromisoformat(str(raw_date).replace('Z', '+00:00')).timestamp() * 1000)
        except ValueError:
            logger.debug("Unparseable order date %r", raw_date)
    return int(datetime.now().timestamp() * 1000)


def normalize_order(raw: Dict[str, Any], annotation: Optional[TrackingAnnotation] = None) -> Order:
    billing = raw.get('billing') or {}
    first = (billing.get('first_name') or '').strip()
    last = (billing.get('last_name') or '').strip()
    email = billing.get('email') or ''
    name = f"{first} {last}".strip() or email or 'Guest Customer'
    city = billing.get('city') or ''
    address = (billing.get('address_1') or '') + (f", {city}" if city else '')
    timestamp = _timestamp_ms(raw.get('date_created'))

    total = parse_money(raw.get('total'))
    shipping = parse_money(raw.get('shipping_total'))

    products = [
        LineItem(
            id=item['product_id'],
            name=item.get('name') or '',
            price=parse_money(item.get('price')),
            qty=int(item.get('quantity') or 0),
            img=placeholder_image(item['product_id']),
        )
        for item in raw.get('line_items') or []
    ]

    return Order(
        id=raw['id'],
        timestamp=timestamp,
        date=display_date(timestamp),
        customer=OrderCustomer(
            name=name,
            phone=str(billing.get('phone') or ''),
            email=email,
            avatar=avatar_url(first, last),
        ),
        address=address,
        products=products,
        subtotal=total - shipping,
        shipping_charge=shipping,
        discount=parse_money(raw.get('discount_total')),
        total=total,
        status=derive_status(raw.get('status'), annotation),
        status_history={'placed': display_day(timestamp)},
        payment_method=raw.get('payment_method_title') or 'Unknown',
        courier_tracking_code=(annotation.courier_tracking_code or None) if annotation else None,
        courier_provider=detect_provider(annotation),
        courier_status=(annotation.courier_status or None) if annotation else None,
    )


def tracking_only_order(annotation: TrackingAnnotation) -> Order:
    """Placeholder for a consignment whose order the store does not return."""
    timestamp = int(datetime.now().timestamp() * 1000)
    status = OrderStatus.PENDING
    if (annotation.courier_status or '').strip():
        status = map_courier_status(annotation.courier_status)
    return Order(
        id=annotation.order_id,
        timestamp=timestamp,
        date=display_date(timestamp),
        customer=OrderCustomer(name='Local Tracking Customer', avatar=avatar_url('L', '')),
        address='Local Tracking Entry',
        status=status,
        status_history={'placed': display_day(timestamp)},
        payment_method='Tracking Only',
        courier_tracking_code=annotation.courier_tracking_code or None,
        courier_provider=detect_provider(annotation),
        courier_status=annotation.courier_status or None,
    )


def normalize_product(raw: Dict[str, Any]) -> InventoryProduct:
    categories = raw.get('categories') or []
    images = raw.get('images') or []
    price = parse_money(raw.get('price'))
    regular = parse_money(raw.get('regular_price'))
    original_price = None
    discount_percent = 0.0
    if regular > price > 0:
        original_price = regular
        discount_percent = round((regular - price) / regular * 100, 2)
    return InventoryProduct(
        id=raw['id'],
        name=raw.get('name') or '',
        category=(categories[0].get('name') if categories else None) or 'Uncategorized',
        price=price,
        original_price=original_price,
        discount_percent=discount_percent,
        stock=int(raw.get('stock_quantity') or 0),
        status=raw.get('status') == 'publish',
        img=(images[0].get('src') if images else None) or placeholder_image(raw['id']),
    )


class CommerceSource:
    """Read-only WooCommerce adapter holding its own cached configuration."""

    def __init__(
        self,
        settings: SettingsStore,
        tracking: TrackingStore,
        timeout: Optional[float] = None,
    ):
        self.settings = settings
        self.tracking = tracking
        self.timeout = timeout or cfg.HTTP_TIMEOUT
        self._config: Optional[WooConfig] = None

    async def get_config(self) -> Optional[WooConfig]:
        if self._config is not None:
            return self._config
        raw = await self.settings.get(CONFIG_KEY)
        if not isinstance(raw, dict):
            return None
        try:
            self._config = WooConfig.model_validate(raw)
        except ValidationError as exc:
            logger.warning("Stored commerce configuration is invalid: %s", exc)
            return None
        return self._config

    def invalidate(self) -> None:
        """Drop the cached configuration so the next call reloads it."""
        self._config = None

    async def save_config(self, config: WooConfig) -> bool:
        self._config = config
        return await self.settings.save(CONFIG_KEY, config.model_dump(by_alias=True))

    async def is_configured(self) -> bool:
        config = await self.get_config()
        return bool(config and config.is_complete)

    async def _get(self, config: WooConfig, path: str) -> Any:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.get(config.api_base + path, params=config.auth_params())
        resp.raise_for_status()
        return resp.json()

    async def _complete_config(self) -> Optional[WooConfig]:
        config = await self.get_config()
        if config is None or not config.is_complete:
            return None
        return config

    async def fetch_orders(self) -> List[Order]:
        config = await self._complete_config()
        if config is None:
            return []
        try:
            raw_orders, annotations = await asyncio.gather(
                self._get(config, '/orders'),
                self.tracking.list_tracking(),
            )
            if not isinstance(raw_orders, list):
                logger.warning("Unexpected orders payload from store: %s", type(raw_orders).__name__)
                return []
            tracking = index_by_order(annotations)
            orders = [normalize_order(raw, tracking.get(str(raw['id']))) for raw in raw_orders]
            seen = {o.id for o in orders}
            orders.extend(tracking_only_order(a) for a in tracking.values() if a.order_id not in seen)
        except _READ_ERRORS as exc:
            logger.warning("Fetch orders failed: %s", exc)
            return []
        orders.sort(key=lambda o: o.timestamp, reverse=True)
        return orders

    async def fetch_products(self) -> List[InventoryProduct]:
        config = await self._complete_config()
        if config is None:
            return []
        try:
            data = await self._get(config, '/products')
            if not isinstance(data, list):
                return []
            return [normalize_product(raw) for raw in data]
        except _READ_ERRORS as exc:
            logger.warning("Fetch products failed: %s", exc)
            return []

    async def fetch_categories(self) -> List[Category]:
        config = await self._complete_config()
        if config is None:
            return []
        try:
            data = await self._get(config, '/products/categories')
            if not isinstance(data, list):
                return []
            return [Category.model_validate(raw) for raw in data]
        except _READ_ERRORS as exc:
            logger.warning("Fetch categories failed: %s", exc)
            return []
