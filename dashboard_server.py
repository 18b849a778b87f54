from flask import Flask, request, jsonify
import httpx
import json as _json
import logging
import os
import sqlite3
from typing import Any, Dict, Optional

from pydantic import ValidationError

import dashboard_config as cfg
import local_store as ls
from commerce_source import CONFIG_KEY as COMMERCE_CONFIG_KEY, CommerceSource, WooConfig
from couriers import (
    CourierError,
    CourierNotConfigured,
    CourierRejected,
    LocationSelection,
    PathaoClient,
    PathaoConfig,
    PathaoLocation,
    SteadfastClient,
    SteadfastConfig,
)
from customer_directory import CustomerDirectory
from expense_store import ExpenseStore
from insights import InsightsClient
from models import CourierProvider, InventoryProduct, OrderCustomer, OrderStatus
from pos_cart import Cart
from reconcile import Dashboard, ReconciliationEngine
from settings_store import SettingsStore
from sms_gateway import SmsConfig, SmsGateway, SmsNotConfigured, filter_recipients
from tracking_store import TrackingStore

app = Flask(__name__)

cfg.configure_logging('dashboard')
app.logger.setLevel(cfg.log_level())
logging.getLogger('werkzeug').setLevel(cfg.log_level())

DB_PATH = cfg.DASHBOARD_DB_PATH

settings = SettingsStore()
tracking = TrackingStore()
commerce = CommerceSource(settings, tracking)
steadfast = SteadfastClient(settings)
pathao = PathaoClient(settings)
engine = ReconciliationEngine(commerce, ExpenseStore(), CustomerDirectory())
dashboard = Dashboard(engine, tracking, steadfast, pathao)
sms = SmsGateway(settings)
insights_client = InsightsClient()


def _db_connect() -> sqlite3.Connection:
    return ls.connect(DB_PATH)


def _error(message: str, code: int = 400, **extra):
    body = {'status': 'error', 'message': message}
    body.update(extra)
    return jsonify(body), code


def _payload() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _provider(value: Any) -> Optional[CourierProvider]:
    for provider in CourierProvider:
        if str(value or '').strip().lower() == provider.value.lower():
            return provider
    return None


@app.after_request
def add_no_cache_headers(response):
    response.headers['Cache-Control'] = 'no-store, no-cache, must-revalidate, max-age=0'
    response.headers['Pragma'] = 'no-cache'
    if 'Expires' in response.headers:
        del response.headers['Expires']
    response.headers['X-Content-Type-Options'] = 'nosniff'
    return response


# ========== LOCAL PERSISTENCE API ==========

@app.route('/api/settings', methods=['GET'])
def api_get_setting():
    """Return the stored value as a JSON string (readers decode it), or null."""
    key = (request.args.get('key') or '').strip()
    if not key:
        return _error('Missing key')
    conn = _db_connect()
    try:
        return jsonify(ls.get_setting(conn, key))
    finally:
        conn.close()


@app.route('/api/settings', methods=['POST'])
def api_set_setting():
    data = _payload()
    key = (data.get('key') or '').strip()
    if not key:
        return _error('Missing key')
    value = data.get('value')
    if value is not None and not isinstance(value, str):
        value = _json.dumps(value)
    conn = _db_connect()
    try:
        ls.set_setting(conn, key, value)
    finally:
        conn.close()
    if key == COMMERCE_CONFIG_KEY:
        # a raw write bypasses the adapter; make it reload on next use
        commerce.invalidate()
    return jsonify({'status': 'success'})


@app.route('/api/local_tracking', methods=['GET'])
def api_list_tracking():
    conn = _db_connect()
    try:
        return jsonify(ls.list_tracking(conn))
    finally:
        conn.close()


@app.route('/api/local_tracking', methods=['POST'])
def api_save_tracking():
    data = _payload()
    conn = _db_connect()
    try:
        ls.upsert_tracking(
            conn,
            data.get('id') or data.get('order_id'),
            data.get('courier_tracking_code'),
            data.get('courier_provider'),
            data.get('courier_status'),
        )
    except ValueError as exc:
        return _error(str(exc))
    finally:
        conn.close()
    return jsonify({'status': 'success'})


@app.route('/api/customers', methods=['GET'])
def api_list_customers():
    conn = _db_connect()
    try:
        return jsonify(ls.list_customers(conn))
    finally:
        conn.close()


@app.route('/api/customers', methods=['POST'])
def api_upsert_customer():
    conn = _db_connect()
    try:
        customer = ls.upsert_customer(conn, _payload())
    except ValueError as exc:
        return _error(str(exc))
    finally:
        conn.close()
    return jsonify({'status': 'success', 'customer': customer})


@app.route('/api/expenses', methods=['GET'])
def api_list_expenses():
    conn = _db_connect()
    try:
        return jsonify(ls.list_expenses(conn))
    finally:
        conn.close()


@app.route('/api/expenses', methods=['POST'])
def api_add_expense():
    data = _payload()
    conn = _db_connect()
    try:
        expense = ls.add_expense(conn, data.get('amount'), data.get('category') or '', data.get('description') or '')
    except ValueError as exc:
        return _error(str(exc))
    finally:
        conn.close()
    return jsonify({'status': 'success', 'expense': expense})


@app.route('/api/pathao/proxy', methods=['POST'])
async def api_pathao_proxy():
    """Forward `{endpoint, method, data, sandbox}` to Pathao with the bearer token."""
    data = _payload()
    endpoint = (data.get('endpoint') or '').strip().lstrip('/')
    if not endpoint or '://' in endpoint:
        return _error('Invalid endpoint')
    method = (data.get('method') or 'GET').upper()
    base = cfg.PATHAO_SANDBOX_API_BASE if data.get('sandbox') else cfg.PATHAO_API_BASE
    headers = {'Accept': 'application/json'}
    token = request.args.get('token')
    if token:
        headers['Authorization'] = f'Bearer {token}'
    body = data.get('data')
    try:
        async with httpx.AsyncClient(timeout=cfg.HTTP_TIMEOUT) as client:
            upstream = await client.request(
                method,
                f"{base.rstrip('/')}/{endpoint}",
                headers=headers,
                params=body if method == 'GET' and isinstance(body, dict) else None,
                json=body if method != 'GET' else None,
            )
    except httpx.HTTPError as exc:
        app.logger.error("Pathao proxy call to %s failed: %s", endpoint, exc)
        return _error('Pathao unreachable', 502)
    try:
        return jsonify(upstream.json()), upstream.status_code
    except ValueError:
        return _error(upstream.text or f'HTTP {upstream.status_code}', upstream.status_code if upstream.status_code >= 400 else 502)


# ========== PROVIDER CONFIGURATION ==========

def _config_targets() -> Dict[str, Any]:
    return {
        'store': (commerce, WooConfig),
        'steadfast': (steadfast, SteadfastConfig),
        'pathao': (pathao, PathaoConfig),
        'sms': (sms, SmsConfig),
    }


@app.route('/api/config/<kind>', methods=['POST'])
async def api_save_config(kind):
    """Validate credentials and store them through the adapter that uses them.

    Going through the adapter keeps its cached state in step: the commerce
    config cache is replaced and a Pathao token issued for old credentials
    is dropped.
    """
    target = _config_targets().get(kind)
    if target is None:
        return _error(f'Unknown configuration {kind}', 404)
    client, model = target
    try:
        config = model.model_validate(_payload())
    except ValidationError as exc:
        return _error(f'Invalid configuration ({exc.error_count()} field error(s))')
    if not config.is_complete:
        return _error('Configuration is incomplete')
    if not await client.save_config(config):
        return _error('Failed to save configuration', 500)
    app.logger.info("Saved %s configuration", kind)
    return jsonify({'status': 'success'})


# ========== DASHBOARD ==========

@app.route('/api/dashboard', methods=['GET'])
def api_dashboard():
    return jsonify({'status': 'success', **dashboard.snapshot.to_wire()})


@app.route('/api/dashboard/refresh', methods=['POST'])
async def api_dashboard_refresh():
    await dashboard.reconcile()
    return jsonify({'status': 'success', **dashboard.snapshot.to_wire()})


@app.route('/api/orders/<order_id>/status', methods=['POST'])
def api_order_status(order_id):
    """Change an order's status on the dashboard only; the store is not updated."""
    try:
        status = OrderStatus(_payload().get('status'))
    except ValueError:
        return _error('Unknown status')
    order = dashboard.override_status(order_id, status)
    if order is None:
        return _error('Order not found', 404)
    return jsonify({'status': 'success', 'order': order.to_wire()})


@app.route('/api/orders/<order_id>/courier', methods=['POST'])
async def api_send_to_courier(order_id):
    data = _payload()
    provider = _provider(data.get('provider'))
    if provider is None:
        return _error('Unknown courier provider')
    location = None
    loc = data.get('location')
    if provider == CourierProvider.PATHAO and isinstance(loc, dict):
        city_id, zone_id = _as_int(loc.get('cityId')), _as_int(loc.get('zoneId'))
        if city_id and zone_id:
            location = PathaoLocation(
                city_id=city_id,
                zone_id=zone_id,
                area_id=_as_int(loc.get('areaId')),
                store_id=_as_int(loc.get('storeId')),
            )
    try:
        result = await dashboard.send_to_courier(order_id, provider, location)
    except LookupError as exc:
        return _error(str(exc), 404)
    except CourierNotConfigured as exc:
        return _error(str(exc), 412, code='not_configured')
    except CourierRejected as exc:
        return _error(str(exc), 422, code='rejected', details=exc.details)
    except CourierError as exc:
        return _error(str(exc), 502)
    return jsonify({'status': 'success', 'consignment': result.model_dump(mode='json')})


@app.route('/api/courier/manual', methods=['POST'])
async def api_manual_courier_order():
    data = _payload()
    try:
        amount = float(data.get('amount') or 0)
    except (TypeError, ValueError):
        return _error('amount must be a number')
    if not (data.get('name') and data.get('phone') and data.get('address')):
        return _error('Name, phone and address are required')
    try:
        result = await dashboard.create_manual_order(
            data['name'], data['phone'], data['address'], amount, data.get('note')
        )
    except CourierNotConfigured as exc:
        return _error(str(exc), 412, code='not_configured')
    except CourierRejected as exc:
        return _error(str(exc), 422, code='rejected', details=exc.details)
    except CourierError as exc:
        return _error(str(exc), 502)
    return jsonify({'status': 'success', 'consignment': result.model_dump(mode='json')})


@app.route('/api/courier/refresh', methods=['POST'])
async def api_refresh_courier_statuses():
    changed = await dashboard.refresh_courier_statuses()
    return jsonify({'status': 'success', 'changed': changed})


@app.route('/api/courier/balance', methods=['GET'])
async def api_courier_balance():
    provider = _provider(request.args.get('provider') or CourierProvider.STEADFAST.value)
    if provider is None:
        return _error('Unknown courier provider')
    balance = await dashboard.courier_balance(provider)
    return jsonify({'status': 'success', 'provider': provider.value, 'balance': balance})


@app.route('/api/pathao/cities', methods=['GET'])
async def api_pathao_cities():
    cities = await pathao.cities()
    return jsonify({'status': 'success', 'cities': [c.model_dump() for c in cities]})


@app.route('/api/pathao/zones', methods=['GET'])
async def api_pathao_zones():
    city_id = _as_int(request.args.get('city_id'))
    if not city_id:
        return _error('Missing city_id')
    zones = await pathao.zones(city_id)
    return jsonify({'status': 'success', 'zones': [z.model_dump() for z in zones]})


@app.route('/api/pathao/areas', methods=['GET'])
async def api_pathao_areas():
    zone_id = _as_int(request.args.get('zone_id'))
    if not zone_id:
        return _error('Missing zone_id')
    areas = await pathao.areas(zone_id)
    return jsonify({'status': 'success', 'areas': [a.model_dump() for a in areas]})


@app.route('/api/pathao/stores', methods=['GET'])
async def api_pathao_stores():
    stores = await pathao.stores()
    return jsonify({'status': 'success', 'stores': [s.model_dump() for s in stores]})


@app.route('/api/pathao/location', methods=['GET'])
async def api_pathao_location():
    """Dispatch form state for `city_id`, `zone_id`, `area_id`, `store_id`.

    A zone outside the chosen city, or an area outside the chosen zone, is
    dropped along with everything below it.
    """
    selection = LocationSelection(pathao)
    await selection.load()
    store_id = _as_int(request.args.get('store_id'))
    if store_id:
        selection.select_store(store_id)
    await selection.select_city(_as_int(request.args.get('city_id')))
    zone_id = _as_int(request.args.get('zone_id'))
    if zone_id in {z.zone_id for z in selection.zones}:
        await selection.select_zone(zone_id)
    area_id = _as_int(request.args.get('area_id'))
    if area_id in {a.area_id for a in selection.areas}:
        selection.select_area(area_id)
    try:
        location = selection.to_location().model_dump()
    except CourierRejected:
        location = None
    return jsonify({
        'status': 'success',
        'cities': [c.model_dump() for c in selection.cities],
        'zones': [z.model_dump() for z in selection.zones],
        'areas': [a.model_dump() for a in selection.areas],
        'stores': [s.model_dump() for s in selection.stores],
        'cityId': selection.city_id,
        'zoneId': selection.zone_id,
        'areaId': selection.area_id,
        'storeId': selection.store_id,
        'location': location,
    })


@app.route('/api/pos/orders', methods=['POST'])
async def api_place_pos_order():
    """Body: {items: [{id, qty}], customer: {name, phone, email}, paymentMethod, discount}."""
    data = _payload()
    catalogue: Dict[str, InventoryProduct] = {p.id: p for p in dashboard.snapshot.products}
    cart = Cart()
    for line in data.get('items') or []:
        product = catalogue.get(str((line or {}).get('id')))
        if product is None:
            return _error(f"Unknown product {(line or {}).get('id')}")
        cart.add(product)
        qty = _as_int(line.get('qty')) or 1
        if qty > 1:
            cart.update_qty(product.id, qty - 1)
    raw_customer = data.get('customer')
    customer = OrderCustomer.model_validate(raw_customer) if isinstance(raw_customer, dict) else None
    try:
        discount = float(data.get('discount') or 0)
    except (TypeError, ValueError):
        return _error('discount must be a number')
    try:
        order = await dashboard.place_pos_order(cart, customer, data.get('paymentMethod') or 'Cash', discount)
    except ValueError as exc:
        return _error(str(exc))
    return jsonify({'status': 'success', 'order': order.to_wire()})


# ========== SMS & INSIGHTS ==========

@app.route('/api/sms/bulk', methods=['POST'])
async def api_sms_bulk():
    """Send one message to `phones`, or to every customer matching the filters."""
    data = _payload()
    phones = data.get('phones')
    if not phones:
        snap = dashboard.snapshot
        recipients = filter_recipients(
            snap.customers,
            snap.orders,
            snap.products,
            search=data.get('search') or '',
            category=data.get('category') or 'All',
            product=data.get('product') or 'All',
        )
        phones = [c.phone for c in recipients]
    if not phones:
        return _error('No recipients selected')
    try:
        logs = await sms.send_bulk([str(p) for p in phones], data.get('message') or '')
    except SmsNotConfigured as exc:
        return _error(str(exc), 412, code='not_configured')
    except ValueError as exc:
        return _error(str(exc))
    return jsonify({'status': 'success', 'logs': [log.model_dump() for log in logs]})


@app.route('/api/sms/template', methods=['POST'])
async def api_sms_template():
    data = _payload()
    purpose = (data.get('purpose') or '').strip()
    if not purpose:
        return _error('Missing purpose')
    text = await insights_client.generate_sms_template(purpose, data.get('businessName'))
    templates = None
    if data.get('save'):
        try:
            templates = await sms.save_template(text)
        except (ValueError, RuntimeError) as exc:
            return _error(str(exc), 500)
    return jsonify({'status': 'success', 'template': text, 'templates': templates})


@app.route('/api/sms/templates', methods=['GET'])
async def api_sms_templates():
    return jsonify({'status': 'success', 'templates': await sms.list_templates()})


@app.route('/api/insights', methods=['GET'])
async def api_insights():
    return jsonify({'status': 'success', 'insights': await insights_client.generate_insights(dashboard.stats)})


if __name__ == '__main__':
    debug = os.getenv('FLASK_DEBUG', '0') == '1'
    port = int(os.getenv('PORT', '5000'))
    host = os.getenv('HOST', '0.0.0.0')
    app.run(host=host, port=port, debug=debug)
