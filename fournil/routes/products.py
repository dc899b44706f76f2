from flask import Blueprint, request, jsonify
from flask_babel import gettext as _
from ..models import db, Product, ProductionSheetProduct, WasteRecord, DEPARTMENTS, ProductsUnavailableError
from ..offline_cache import get_offline_cache, fetch_and_cache_products
from .utils import log_audit, get_operator, to_float, to_int, adjust_agency_stock

products_blueprint = Blueprint('products', __name__)

def _get_product_or_404(product_id):
    operator = get_operator()
    return Product.query.filter_by(id=product_id, company=operator['company']).first_or_404()

def _apply_product_fields(product, data):
    if 'name' in data:
        product.name = (data.get('name') or '').strip()
    if 'reference' in data:
        product.reference = data.get('reference')
    if 'category' in data:
        product.category = data.get('category')
    if 'department' in data:
        product.department = data.get('department')
    if 'price' in data:
        product.price = to_float(data.get('price'))
    if 'fresh_weight' in data:
        product.fresh_weight = to_float(data.get('fresh_weight'))
    if 'min_stock' in data:
        product.min_stock = to_int(data.get('min_stock'))

def _product_error(product):
    if not product.name:
        return _('Missing required fields')
    if product.department not in DEPARTMENTS:
        return _('Unknown department')
    if product.price < 0 or product.fresh_weight < 0:
        return _('Price and weight cannot be negative')
    return None

# ----------------------------
# Products Management
# ----------------------------
@products_blueprint.route('/products')
def products():
    operator = get_operator()
    query = Product.query.filter_by(company=operator['company'])

    department = request.args.get('department')
    if department:
        query = query.filter_by(department=department)

    products = query.order_by(Product.name.asc()).all()
    return jsonify({'products': [p.to_dict(agency=operator['agency']) for p in products]})

@products_blueprint.route('/products/available')
def available_products():
    """Products for the entry forms, served from the offline cache when the database is down"""
    operator = get_operator()
    try:
        products, from_cache = fetch_and_cache_products(
            get_offline_cache(),
            operator['company'],
            agency=operator['agency'],
            department=request.args.get('department')
        )
    except ProductsUnavailableError:
        return jsonify({
            'success': False,
            'error': _('No product available online or in cache')
        }), 503

    response = {'success': True, 'products': products, 'from_cache': from_cache}
    if from_cache:
        response['message'] = _('Using cached products')
    return jsonify(response)

@products_blueprint.route('/products/add', methods=['POST'])
def add_product():
    data = request.get_json(silent=True) or request.form
    operator = get_operator()

    product = Product(company=operator['company'], department='Boulangerie', price=0.0, fresh_weight=0.0, min_stock=0)
    _apply_product_fields(product, data)

    error = _product_error(product)
    if error:
        return jsonify({'success': False, 'error': error}), 400

    db.session.add(product)
    db.session.flush()

    initial_stock = to_int(data.get('stock'))
    if initial_stock:
        adjust_agency_stock(product, operator['agency'], initial_stock)

    log_audit("CREATE", "Product", product.id, f"Created product {product.name}")
    db.session.commit()
    return jsonify({'success': True, 'product': product.to_dict(agency=operator['agency'])}), 201

@products_blueprint.route('/products/edit/<int:product_id>', methods=['POST'])
def edit_product(product_id):
    product = _get_product_or_404(product_id)
    data = request.get_json(silent=True) or request.form

    _apply_product_fields(product, data)
    error = _product_error(product)
    if error:
        db.session.rollback()
        return jsonify({'success': False, 'error': error}), 400

    log_audit("UPDATE", "Product", product.id, f"Updated product {product.name}")
    db.session.commit()
    return jsonify({'success': True, 'product': product.to_dict(agency=get_operator()['agency'])})

@products_blueprint.route('/products/<int:product_id>/stock', methods=['POST'])
def set_stock(product_id):
    """Set the stock counted at the operator's agency"""
    product = _get_product_or_404(product_id)
    data = request.get_json(silent=True) or request.form
    agency = get_operator()['agency']

    quantity = to_int(data.get('quantity'), default=-1)
    if quantity < 0:
        return jsonify({'success': False, 'error': _('Quantity must be zero or more')}), 400

    old_quantity = product.stock_for(agency)
    adjust_agency_stock(product, agency, quantity - old_quantity)
    log_audit("UPDATE", "ProductStock", product.id, f"Stock at {agency} set from {old_quantity} to {quantity}")
    db.session.commit()
    return jsonify({'success': True, 'product': product.to_dict(agency=agency)})

@products_blueprint.route('/products/delete/<int:product_id>', methods=['POST'])
def delete_product(product_id):
    product = _get_product_or_404(product_id)

    sheets = ProductionSheetProduct.query.filter_by(product_id=product.id).count()
    wastes = WasteRecord.query.filter_by(product_id=product.id).count()
    if sheets or wastes:
        return jsonify({
            'success': False,
            'error': _('Product is referenced by production sheets or waste records')
        }), 409

    db.session.delete(product)
    log_audit("DELETE", "Product", product_id, f"Deleted product: {product.name}")
    db.session.commit()
    return jsonify({'success': True})
