"""Client for the persistent customer directory.

The directory owns order counts and accumulated spend. Callers only submit
the latest observed order total and address as a hint; accumulation happens
atomically on the server side (see `local_store.upsert_customer`).
"""
import logging
from typing import List, Optional

import httpx
from pydantic import BaseModel, ValidationError

from local_api import LocalApiClient
from models import Customer, OrderCustomer

logger = logging.getLogger(__name__)

MIN_PHONE_LENGTH = 6


def normalize_phone(phone: Optional[str]) -> Optional[str]:
    """Trimmed phone, or None when it is too short to identify a customer."""
    clean = (phone or '').strip()
    return clean if len(clean) >= MIN_PHONE_LENGTH else None


class UpsertResult(BaseModel):
    ok: bool
    phone: str = ''
    order_count: int = 0
    error: Optional[str] = None


class CustomerDirectory(LocalApiClient):
    resource = 'customers'

    async def list(self) -> List[Customer]:
        customers: List[Customer] = []
        for row in await self._get_list():
            try:
                customers.append(Customer.model_validate(row))
            except ValidationError as exc:
                logger.warning("Skipping malformed customer row: %s", exc)
        return customers

    async def upsert(
        self,
        customer: OrderCustomer,
        latest_order_total: float = 0.0,
        latest_address: str = '',
    ) -> UpsertResult:
        phone = normalize_phone(customer.phone)
        if phone is None:
            return UpsertResult(ok=False, error='invalid phone')
        payload = {
            'phone': phone,
            'name': customer.name,
            'email': customer.email,
            'address': latest_address,
            'total': latest_order_total or 0,
            'avatar': customer.avatar,
        }
        try:
            resp = await self._post(payload)
            body = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Error syncing customer %s: %s", phone, exc)
            return UpsertResult(ok=False, phone=phone, error=str(exc))
        if resp.status_code >= 400 or not isinstance(body, dict) or body.get('status') == 'error':
            message = body.get('message') if isinstance(body, dict) else None
            logger.error("Directory rejected customer %s: %s", phone, message or resp.status_code)
            return UpsertResult(ok=False, phone=phone, error=message or f"HTTP {resp.status_code}")
        record = body.get('customer') or {}
        return UpsertResult(ok=True, phone=phone, order_count=int(record.get('orderCount') or 0))
