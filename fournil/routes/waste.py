from datetime import datetime
from flask import Blueprint, request, jsonify, current_app
from flask_babel import gettext as _
from ..models import WASTE_REASONS, WASTE_REASON_BAD_PRODUCTION, ProductsUnavailableError, InsufficientStockError
from ..offline_cache import (
    get_offline_cache, fetch_and_cache_products, save_waste_record, sync_waste_records, list_waste_records
)
from .utils import get_operator, to_int

waste_blueprint = Blueprint('waste', __name__)

def _check_stock(product, quantity):
    if quantity > (product.get('stock') or 0):
        raise InsufficientStockError(_('Quantity exceeds the available stock'))

# ----------------------------
# Waste Management
# ----------------------------
@waste_blueprint.route('/waste')
def waste_records():
    operator = get_operator()
    records = list_waste_records(get_offline_cache(), operator['company'], operator['agency'])

    search = (request.args.get('q') or '').strip().lower()
    if search:
        records = [r for r in records if search in (r.get('product_name') or '').lower()]

    return jsonify({'records': records})

@waste_blueprint.route('/waste/reasons')
def reasons():
    return jsonify({'reasons': WASTE_REASONS})

@waste_blueprint.route('/waste/add', methods=['POST'])
def add_waste():
    data = request.get_json(silent=True) or request.form
    operator = get_operator()
    cache = get_offline_cache()

    quantity = to_int(data.get('quantity'))
    if quantity <= 0:
        return jsonify({'success': False, 'error': _('Quantity must be a positive number')}), 400

    reason = data.get('reason') or WASTE_REASON_BAD_PRODUCTION
    if reason not in WASTE_REASONS:
        return jsonify({'success': False, 'error': _('Unknown waste reason')}), 400

    try:
        products, _from_cache = fetch_and_cache_products(cache, operator['company'], agency=operator['agency'])
    except ProductsUnavailableError:
        return jsonify({
            'success': False,
            'error': _('An internet connection is required for the first product load')
        }), 503

    product_id = to_int(data.get('product_id'), default=None)
    product = next((p for p in products if p['id'] == product_id), None)
    if product is None:
        return jsonify({'success': False, 'error': _('Product not found')}), 404

    try:
        _check_stock(product, quantity)
    except InsufficientStockError as e:
        return jsonify({'success': False, 'error': str(e)}), 400

    row = save_waste_record(cache, {
        'product_id': product['id'],
        'product_name': product['name'],
        'quantity': quantity,
        'reason': reason,
        'timestamp': datetime.utcnow(),
        'user_id': operator['user_id'],
        'user_name': operator['user_name'],
        'company': operator['company'],
        'agency': operator['agency']
    })

    synced = not any(
        r['client_id'] == row['client_id']
        for r in cache.get_unsynced_waste_records()
    )
    if synced:
        message = _('Waste recorded successfully')
    else:
        message = _('Offline mode: the waste record will be synchronised when the connection returns')

    return jsonify({
        'success': True,
        'message': message,
        'client_id': row['client_id'],
        'synced': synced
    }), 201

@waste_blueprint.route('/waste/sync', methods=['POST'])
def sync_waste():
    result = sync_waste_records(get_offline_cache())
    if result.failed:
        current_app.logger.warning("%d waste record(s) could not be synchronised", result.failed)
        return jsonify({
            'success': False,
            'error': _('Error while synchronising waste records'),
            'synced': result.synced,
            'failed': result.failed
        }), 503

    return jsonify({'success': True, 'synced': result.synced, 'failed': 0})
