"""
Outbound SMS through a query-string HTTP gateway.

One GET per message carrying `api_key`, `sender_id`, `number` and `message`.
A message counts as sent when the gateway answers with a 2xx status. Bulk
sends go one recipient at a time with a short pause between requests and
report a per-recipient log.
"""
import asyncio
import logging
from typing import Dict, List, Optional, Sequence

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

import dashboard_config as cfg
from models import Customer, InventoryProduct, Order
from settings_store import SettingsStore

logger = logging.getLogger(__name__)

SMS_CONFIG_KEY = 'sms_api_config'
SMS_TEMPLATES_KEY = 'sms_templates'
ALL = 'All'


class SmsNotConfigured(Exception):
    """No gateway endpoint or key has been saved."""


class SmsConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    endpoint: str = ''
    api_key: str = ''
    sender_id: str = ''

    @property
    def is_complete(self) -> bool:
        return bool(self.endpoint and self.api_key)


class SendLog(BaseModel):
    phone: str
    status: str  # 'sent' | 'failed'


async def send_sms(config: SmsConfig, phone: str, message: str, timeout: Optional[float] = None) -> bool:
    params = {
        'api_key': config.api_key,
        'sender_id': config.sender_id,
        'number': phone,
        'message': message,
    }
    try:
        async with httpx.AsyncClient(timeout=timeout or cfg.HTTP_TIMEOUT) as client:
            resp = await client.get(config.endpoint, params=params)
    except httpx.HTTPError as exc:
        logger.error("SMS API call failed for %s: %s", phone, exc)
        return False
    if not resp.is_success:
        logger.warning("SMS gateway returned HTTP %s for %s", resp.status_code, phone)
    return resp.is_success


def filter_recipients(
    customers: Sequence[Customer],
    orders: Sequence[Order],
    products: Sequence[InventoryProduct],
    search: str = '',
    category: str = ALL,
    product: str = ALL,
) -> List[Customer]:
    """Customers matching a name/phone search and, optionally, a purchase history.

    A specific `product` (id or name) takes precedence over `category`.
    """
    term = (search or '').strip()
    needle = term.lower()
    by_phone: Dict[str, List[Order]] = {}
    for order in orders:
        by_phone.setdefault(order.customer.phone, []).append(order)

    def bought_product(history: List[Order]) -> bool:
        return any(item.id == product or item.name == product for o in history for item in o.products)

    def bought_in_category(history: List[Order]) -> bool:
        for o in history:
            for item in o.products:
                info = next((p for p in products if p.id == item.id or p.name == item.name), None)
                if info is not None and info.category == category:
                    return True
        return False

    matched = []
    for customer in customers:
        if needle and needle not in customer.name.lower() and term not in customer.phone:
            continue
        history = by_phone.get(customer.phone, [])
        if product and product != ALL:
            if not bought_product(history):
                continue
        elif category and category != ALL:
            if not bought_in_category(history):
                continue
        matched.append(customer)
    return matched


class SmsGateway:
    def __init__(self, settings: SettingsStore, delay: Optional[float] = None, timeout: Optional[float] = None):
        self.settings = settings
        self.delay = cfg.SMS_SEND_DELAY if delay is None else delay
        self.timeout = timeout

    async def get_config(self) -> Optional[SmsConfig]:
        data = await self.settings.get(SMS_CONFIG_KEY)
        if not isinstance(data, dict):
            return None
        try:
            config = SmsConfig.model_validate(data)
        except ValidationError:
            return None
        return config if config.is_complete else None

    async def save_config(self, config: SmsConfig) -> bool:
        return await self.settings.save(SMS_CONFIG_KEY, config.model_dump(by_alias=True))

    async def send_bulk(self, phones: Sequence[str], message: str) -> List[SendLog]:
        message = (message or '').strip()
        if not message:
            raise ValueError("Message is empty")
        config = await self.get_config()
        if config is None:
            raise SmsNotConfigured("SMS gateway not configured")
        logs: List[SendLog] = []
        for i, phone in enumerate(dict.fromkeys(phones)):
            if i and self.delay:
                await asyncio.sleep(self.delay)
            ok = await send_sms(config, phone, message, self.timeout)
            logs.append(SendLog(phone=phone, status='sent' if ok else 'failed'))
        sent = sum(1 for log in logs if log.status == 'sent')
        logger.info("Bulk SMS: %d sent, %d failed", sent, len(logs) - sent)
        return logs

    async def list_templates(self) -> List[str]:
        data = await self.settings.get(SMS_TEMPLATES_KEY)
        if not isinstance(data, list):
            return []
        return [t for t in data if isinstance(t, str) and t.strip()]

    async def save_template(self, text: str) -> List[str]:
        text = (text or '').strip()
        if not text:
            raise ValueError("Template is empty")
        templates = await self.list_templates()
        if text not in templates:
            templates.append(text)
            if not await self.settings.save(SMS_TEMPLATES_KEY, templates):
                raise RuntimeError("Could not save template")
        return templates
