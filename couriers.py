"""
Courier provider adapters.

Steadfast authenticates every call with a static API key/secret header pair.
Pathao needs an OAuth access token (cached in the settings store until shortly
before it expires) and a resolved city -> zone -> area location plus a pickup
store before an order can be created; its calls go through the internal
proxy with the token as a query parameter.

Both adapters expose `get_balance()` and `create_consignment(...)`. Balance
reads fail soft to 0. Consignment creation raises `CourierNotConfigured` when
credentials are missing or refused (fix the settings) and `CourierRejected`
when the provider refuses the order itself (fix the form).
"""
import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

import dashboard_config as cfg
from models import CourierProvider, Order
from settings_store import SettingsStore

logger = logging.getLogger(__name__)

STEADFAST_CONFIG_KEY = 'courier_config'
PATHAO_CONFIG_KEY = 'pathao_config'
PATHAO_TOKEN_KEY = 'pathao_token'
TOKEN_SAFETY_MARGIN = 60  # seconds
DEFAULT_TOKEN_TTL = 3600  # seconds, when the token response omits expires_in

PATHAO_DELIVERY_TYPE_NORMAL = 48
PATHAO_ITEM_TYPE_PARCEL = 2
PATHAO_DEFAULT_WEIGHT = 0.5


class CourierError(Exception):
    """A consignment could not be created."""


class CourierNotConfigured(CourierError):
    """Credentials are missing or were refused by the provider."""


class CourierRejected(CourierError):
    """The provider refused the order payload."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}


class CourierModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)


class SteadfastConfig(CourierModel):
    api_key: str = ''
    secret_key: str = ''

    @property
    def is_complete(self) -> bool:
        return bool(self.api_key.strip() and self.secret_key.strip())


class PathaoConfig(CourierModel):
    client_id: str = ''
    client_secret: str = ''
    username: str = ''
    password: str = ''
    store_id: str = ''
    is_sandbox: bool = True

    @property
    def is_complete(self) -> bool:
        return all(v.strip() for v in (self.client_id, self.client_secret, self.username, self.password))


class PathaoToken(BaseModel):
    access_token: str
    expiry: float

    def is_valid(self, now: float) -> bool:
        return bool(self.access_token) and self.expiry > now


class City(BaseModel):
    city_id: int
    city_name: str = ''


class Zone(BaseModel):
    zone_id: int
    zone_name: str = ''


class Area(BaseModel):
    area_id: int
    area_name: str = ''
    home_delivery_available: bool = True


class Store(BaseModel):
    store_id: int
    store_name: str = ''
    store_address: str = ''


class PathaoLocation(BaseModel):
    city_id: int
    zone_id: int
    area_id: Optional[int] = None
    store_id: Optional[int] = None


class ConsignmentResult(BaseModel):
    provider: CourierProvider
    tracking_code: str
    provider_id: str
    status: Optional[str] = None


def extract_pathao_data(res: Any) -> List[Dict[str, Any]]:
    """Pull the record list out of a proxied Pathao response.

    Depending on the endpoint the list sits at `data.data.data`, `data.data`
    or `data`.
    """
    if not isinstance(res, dict) or res.get('error'):
        return []
    node: Any = res
    candidates = []
    for _ in range(3):
        node = node.get('data') if isinstance(node, dict) else None
        if node is None:
            break
        candidates.append(node)
    for candidate in reversed(candidates):
        if isinstance(candidate, list):
            return candidate
    return []


def _parse_records(model, rows: List[Dict[str, Any]]) -> list:
    parsed = []
    for row in rows:
        try:
            parsed.append(model.model_validate(row))
        except ValidationError as exc:
            logger.warning("Skipping malformed %s record: %s", model.__name__, exc)
    return parsed


class SteadfastClient:
    provider = CourierProvider.STEADFAST

    def __init__(self, settings: SettingsStore, base_url: Optional[str] = None, timeout: Optional[float] = None):
        self.settings = settings
        self.base_url = (base_url or cfg.STEADFAST_API_BASE).rstrip('/')
        self.timeout = timeout or cfg.HTTP_TIMEOUT

    async def get_config(self) -> Optional[SteadfastConfig]:
        raw = await self.settings.get(STEADFAST_CONFIG_KEY)
        if not isinstance(raw, dict):
            return None
        try:
            config = SteadfastConfig.model_validate(raw)
        except ValidationError:
            return None
        return config if config.is_complete else None

    async def save_config(self, config: SteadfastConfig) -> bool:
        return await self.settings.save(STEADFAST_CONFIG_KEY, config.model_dump(by_alias=True))

    @staticmethod
    def _headers(config: SteadfastConfig) -> Dict[str, str]:
        return {
            'Api-Key': config.api_key,
            'Secret-Key': config.secret_key,
            'Content-Type': 'application/json',
        }

    async def get_balance(self) -> float:
        config = await self.get_config()
        if config is None:
            return 0.0
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.get(f"{self.base_url}/get_balance", headers=self._headers(config))
            data = resp.json()
            return float(data.get('current_balance') or 0)
        except (httpx.HTTPError, ValueError, TypeError, AttributeError) as exc:
            logger.warning("Steadfast balance lookup failed: %s", exc)
            return 0.0

    async def get_delivery_status(self, tracking_code: str) -> Optional[str]:
        """Current delivery status for a consignment, or None when unknown."""
        config = await self.get_config()
        if config is None or not tracking_code:
            return None
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.get(
                    f"{self.base_url}/status_by_trackingcode/{tracking_code}",
                    headers=self._headers(config),
                )
            data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Steadfast status lookup failed for %s: %s", tracking_code, exc)
            return None
        if not isinstance(data, dict) or data.get('status') != 200:
            return None
        return data.get('delivery_status') or None

    async def _submit(self, payload: Dict[str, Any]) -> ConsignmentResult:
        config = await self.get_config()
        if config is None:
            raise CourierNotConfigured("Courier API not configured")
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(
                    f"{self.base_url}/create_order",
                    headers=self._headers(config),
                    json=payload,
                )
        except httpx.HTTPError as exc:
            logger.error("Steadfast order creation failed for %s: %s", payload.get('invoice'), exc)
            raise CourierError("Courier service unreachable") from exc
        if resp.status_code in (401, 403):
            raise CourierNotConfigured("Steadfast rejected the API credentials")
        try:
            result = resp.json()
        except ValueError as exc:
            raise CourierError(f"Invalid response from Steadfast (HTTP {resp.status_code})") from exc
        if not isinstance(result, dict):
            raise CourierError(f"Invalid response from Steadfast (HTTP {resp.status_code})")
        consignment = result.get('consignment')
        if result.get('status') == 200 and isinstance(consignment, dict):
            return ConsignmentResult(
                provider=self.provider,
                tracking_code=str(consignment.get('tracking_code') or ''),
                provider_id=str(consignment.get('consignment_id') or ''),
                status=consignment.get('status'),
            )
        raise CourierRejected(
            result.get('message') or "Check API Connection and Keys.",
            details=result.get('errors') or {},
        )

    async def create_consignment(self, order: Order, note: str = 'Order from Admin Dashboard') -> ConsignmentResult:
        return await self._submit({
            'invoice': order.id,
            'recipient_name': order.customer.name,
            'recipient_phone': order.customer.phone,
            'recipient_address': order.address,
            'cod_amount': order.total,
            'note': note,
        })

    async def create_manual_order(
        self,
        name: str,
        phone: str,
        address: str,
        amount: float,
        note: Optional[str] = None,
    ) -> Tuple[str, ConsignmentResult]:
        """Consignment for an order taken outside the store (Facebook, WhatsApp)."""
        invoice = f"EXT-{int(time.time() * 1000)}"
        result = await self._submit({
            'invoice': invoice,
            'recipient_name': name,
            'recipient_phone': phone,
            'recipient_address': address,
            'cod_amount': amount,
            'note': note or 'Manual Order from Dashboard',
        })
        return invoice, result


class PathaoClient:
    provider = CourierProvider.PATHAO

    def __init__(
        self,
        settings: SettingsStore,
        proxy_url: Optional[str] = None,
        timeout: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.proxy_url = proxy_url or cfg.PATHAO_PROXY_URL
        self.timeout = timeout or cfg.HTTP_TIMEOUT
        self._clock = clock
        self._token: Optional[PathaoToken] = None

    async def get_config(self) -> Optional[PathaoConfig]:
        raw = await self.settings.get(PATHAO_CONFIG_KEY)
        if not isinstance(raw, dict):
            return None
        try:
            return PathaoConfig.model_validate(raw)
        except ValidationError:
            return None

    def forget_token(self) -> None:
        self._token = None

    async def save_config(self, config: PathaoConfig) -> bool:
        # a token issued for the old credentials must not be reused
        self.forget_token()
        saved = await self.settings.save(PATHAO_CONFIG_KEY, config.model_dump(by_alias=True))
        await self.settings.save(PATHAO_TOKEN_KEY, None)
        return saved

    async def _require_config(self) -> PathaoConfig:
        config = await self.get_config()
        if config is None or not config.is_complete:
            raise CourierNotConfigured("Pathao not configured")
        return config

    async def _proxy(self, body: Dict[str, Any], token: Optional[str] = None) -> httpx.Response:
        params = {'token': token} if token else None
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(self.proxy_url, params=params, json=body)

    async def get_token(self, force: bool = False) -> str:
        """Cached access token; re-authenticates once the cached one expires."""
        now = self._clock()
        if not force:
            if self._token is None:
                stored = await self.settings.get(PATHAO_TOKEN_KEY)
                if isinstance(stored, dict):
                    try:
                        self._token = PathaoToken.model_validate(stored)
                    except ValidationError:
                        self._token = None
            if self._token is not None and self._token.is_valid(now):
                return self._token.access_token

        config = await self._require_config()
        try:
            resp = await self._proxy({
                'endpoint': 'aladdin/api/v1/issue-token',
                'method': 'POST',
                'sandbox': config.is_sandbox,
                'data': {
                    'client_id': config.client_id,
                    'client_secret': config.client_secret,
                    'username': config.username,
                    'password': config.password,
                    'grant_type': 'password',
                },
            })
            data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Pathao token exchange failed: %s", exc)
            raise CourierError("Pathao authentication service unreachable") from exc
        access_token = data.get('access_token') if isinstance(data, dict) else None
        if resp.status_code >= 400 or not access_token:
            raise CourierNotConfigured("Pathao credentials were rejected")
        try:
            ttl = float(data.get('expires_in') or 0)
        except (TypeError, ValueError):
            ttl = 0
        if ttl <= 0:
            logger.warning(
                "Pathao token response has no usable expires_in (%r); assuming %ss",
                data.get('expires_in'), DEFAULT_TOKEN_TTL
            )
            ttl = DEFAULT_TOKEN_TTL
        self._token = PathaoToken(access_token=access_token, expiry=now + ttl - TOKEN_SAFETY_MARGIN)
        await self.settings.save(PATHAO_TOKEN_KEY, self._token.model_dump())
        return access_token

    async def request(self, endpoint: str, method: str = 'GET', data: Optional[Dict[str, Any]] = None) -> Any:
        config = await self._require_config()
        token = await self.get_token()
        try:
            resp = await self._proxy(
                {'endpoint': endpoint, 'method': method, 'data': data, 'sandbox': config.is_sandbox},
                token=token,
            )
        except httpx.HTTPError as exc:
            logger.error("Pathao API request failed (%s): %s", endpoint, exc)
            raise CourierError("Pathao service unreachable") from exc
        if resp.status_code == 401:
            self.forget_token()
            await self.settings.save(PATHAO_TOKEN_KEY, None)
            raise CourierNotConfigured("Pathao token was refused")
        try:
            return resp.json()
        except ValueError as exc:
            raise CourierError(f"Invalid response from Pathao (HTTP {resp.status_code})") from exc

    async def _lookup(self, endpoint: str, model) -> list:
        try:
            res = await self.request(endpoint)
        except CourierError as exc:
            logger.warning("Pathao lookup %s failed: %s", endpoint, exc)
            return []
        return _parse_records(model, extract_pathao_data(res))

    async def cities(self) -> List[City]:
        return await self._lookup('aladdin/api/v1/cities', City)

    async def zones(self, city_id: int) -> List[Zone]:
        return await self._lookup(f'aladdin/api/v1/cities/{city_id}/zone-list', Zone)

    async def areas(self, zone_id: int) -> List[Area]:
        return await self._lookup(f'aladdin/api/v1/zones/{zone_id}/area-list', Area)

    async def stores(self) -> List[Store]:
        return await self._lookup('aladdin/api/v1/stores', Store)

    async def get_balance(self) -> float:
        """Always 0: the merchant API has no balance endpoint."""
        return 0.0

    async def create_consignment(self, order: Order, location: Optional[PathaoLocation] = None) -> ConsignmentResult:
        config = await self._require_config()
        if location is None:
            raise CourierRejected("Please select City, Zone and Store.")
        store_id = location.store_id or (int(config.store_id) if config.store_id.strip().isdigit() else None)
        if not store_id:
            raise CourierRejected("Please select City, Zone and Store.")
        payload = {
            'store_id': store_id,
            'merchant_order_id': order.id,
            'recipient_name': order.customer.name,
            'recipient_phone': order.customer.phone,
            'recipient_address': order.address,
            'recipient_city': location.city_id,
            'recipient_zone': location.zone_id,
            'delivery_type': PATHAO_DELIVERY_TYPE_NORMAL,
            'item_type': PATHAO_ITEM_TYPE_PARCEL,
            'special_instruction': '',
            'item_quantity': sum(p.qty for p in order.products) or 1,
            'item_weight': PATHAO_DEFAULT_WEIGHT,
            'amount_to_collect': order.total,
            'item_description': ', '.join(p.name for p in order.products),
        }
        if location.area_id:
            payload['recipient_area'] = location.area_id
        res = await self.request('aladdin/api/v1/orders', 'POST', payload)
        body = res
        # a wrapping proxy nests the upstream envelope one level down
        if isinstance(res, dict) and 'code' not in res and isinstance(res.get('data'), dict):
            body = res['data']
        if isinstance(body, dict) and body.get('code') == 200 and isinstance(body.get('data'), dict):
            consignment_id = str(body['data'].get('consignment_id') or '')
            return ConsignmentResult(
                provider=self.provider,
                tracking_code=consignment_id,
                provider_id=consignment_id,
                status=body['data'].get('order_status'),
            )
        message = body.get('message') if isinstance(body, dict) else None
        errors = body.get('errors') if isinstance(body, dict) else None
        raise CourierRejected(message or "Failed to create order", details=errors or {})


class LocationSelection:
    """City -> zone -> area picker state for a Pathao dispatch.

    Changing the city clears zone and area; changing the zone clears the
    area. Lists load lazily and a response that arrives after the selection
    moved on is discarded.
    """

    def __init__(self, client: PathaoClient):
        self.client = client
        self.cities: List[City] = []
        self.stores: List[Store] = []
        self.zones: List[Zone] = []
        self.areas: List[Area] = []
        self.city_id: Optional[int] = None
        self.zone_id: Optional[int] = None
        self.area_id: Optional[int] = None
        self.store_id: Optional[int] = None

    async def load(self) -> None:
        self.cities, self.stores = await asyncio.gather(self.client.cities(), self.client.stores())
        if self.stores and self.store_id is None:
            self.store_id = self.stores[0].store_id

    async def select_city(self, city_id: Optional[int]) -> None:
        self.city_id = city_id
        self.zone_id = None
        self.area_id = None
        self.zones = []
        self.areas = []
        if not city_id:
            return
        zones = await self.client.zones(city_id)
        if self.city_id == city_id:
            self.zones = zones

    async def select_zone(self, zone_id: Optional[int]) -> None:
        self.zone_id = zone_id
        self.area_id = None
        self.areas = []
        if not zone_id:
            return
        areas = await self.client.areas(zone_id)
        if self.zone_id == zone_id:
            self.areas = areas

    def select_area(self, area_id: Optional[int]) -> None:
        self.area_id = area_id

    def select_store(self, store_id: Optional[int]) -> None:
        self.store_id = store_id

    def to_location(self) -> PathaoLocation:
        if not self.city_id or not self.zone_id or not self.store_id:
            raise CourierRejected("Please select City, Zone and Store.")
        return PathaoLocation(
            city_id=self.city_id,
            zone_id=self.zone_id,
            area_id=self.area_id,
            store_id=self.store_id,
        )
