"""Canonical records shared by the adapters, the engine and the server.

Fields use snake_case in Python and camelCase on the wire (the shape the
dashboard views consume). Courier fields keep their snake_case wire names.
"""
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, BeforeValidator, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class OrderStatus(str, Enum):
    PENDING = 'Pending'
    PACKAGING = 'Packaging'
    SHIPPING = 'Shipping'
    DELIVERED = 'Delivered'
    RETURNED = 'Returned'
    REJECTED = 'Rejected'
    CANCELLED = 'Cancelled'


TERMINAL_STATUSES = (OrderStatus.DELIVERED, OrderStatus.CANCELLED, OrderStatus.RETURNED)


class CourierProvider(str, Enum):
    STEADFAST = 'Steadfast'
    PATHAO = 'Pathao'


class DashboardModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode='json', by_alias=True)


def _as_id(value: Any) -> Any:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(int(value))
    return value


RecordId = Annotated[str, BeforeValidator(_as_id)]


def display_date(timestamp_ms: int) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000).strftime('%d %b %Y, %I:%M %p')


def display_day(timestamp_ms: int) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000).strftime('%d %b %Y')


class LineItem(DashboardModel):
    id: RecordId
    name: str
    brand: str = 'N/A'
    price: float = 0.0
    qty: int = 1
    img: str = ''


class OrderCustomer(DashboardModel):
    """Denormalized purchaser snapshot embedded in an order."""
    name: str = ''
    phone: str = ''
    email: str = ''
    avatar: str = ''
    order_count: int = 0


class Order(DashboardModel):
    id: RecordId
    timestamp: int
    date: str = ''
    customer: OrderCustomer = Field(default_factory=OrderCustomer)
    address: str = ''
    products: List[LineItem] = Field(default_factory=list)
    subtotal: float = 0.0
    shipping_charge: float = 0.0
    discount: float = 0.0
    total: float = 0.0
    status: OrderStatus = OrderStatus.PENDING
    status_history: Dict[str, str] = Field(default_factory=dict)
    payment_method: str = 'Unknown'
    courier_tracking_code: Optional[str] = Field(None, alias='courier_tracking_code')
    courier_provider: Optional[CourierProvider] = Field(None, alias='courier_provider')
    courier_status: Optional[str] = Field(None, alias='courier_status')

    def with_status(self, status: OrderStatus, when: Optional[str] = None) -> 'Order':
        """Copy with a new status; the history only ever gains entries."""
        history = dict(self.status_history)
        step = status.value.lower()
        if step not in history:
            history[step] = when or datetime.now().strftime('%d %b %Y')
        return self.model_copy(update={'status': status, 'status_history': history})


class InventoryProduct(DashboardModel):
    id: RecordId
    name: str
    brand: str = 'N/A'
    category: str = 'Uncategorized'
    price: float = 0.0
    original_price: Optional[float] = None
    discount_percent: float = 0.0
    stock: int = 0
    status: bool = True
    img: str = ''


class Category(DashboardModel):
    id: int
    name: str
    slug: str = ''
    count: int = 0


class Customer(DashboardModel):
    name: str = ''
    phone: RecordId
    email: str = ''
    address: str = ''
    avatar: str = ''
    order_count: int = Field(0, validation_alias=AliasChoices('orderCount', 'order_count'))
    total_spent: float = Field(0.0, validation_alias=AliasChoices('totalSpent', 'total_spent', 'total'))

    @field_validator('name', 'email', 'address', 'avatar', mode='before')
    @classmethod
    def blank_if_none(cls, value):
        return '' if value is None else value


class Expense(DashboardModel):
    id: RecordId
    amount: float = 0.0
    category: str = ''
    description: str = ''
    timestamp: int = 0


class TrackingAnnotation(DashboardModel):
    order_id: RecordId = Field(alias='orderId', validation_alias=AliasChoices('orderId', 'order_id', 'id'))
    courier_tracking_code: Optional[str] = Field(None, alias='courier_tracking_code')
    courier_provider: Optional[str] = Field(
        None,
        alias='courier_provider',
        validation_alias=AliasChoices('courier_provider', 'courier_name'),
    )
    courier_status: Optional[str] = Field(None, alias='courier_status')


class DashboardStats(DashboardModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel, frozen=True)

    net_profit: float = 0.0
    gross_profit: float = 0.0
    total_expenses: float = 0.0
    total_pos_sale: float = 0.0
    online_sold: float = 0.0
    orders: int = 0
    customers: int = 0
    total_products: int = 0
