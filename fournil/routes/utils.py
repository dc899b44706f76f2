import math
import random
import time
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from flask import current_app, session
from flask_babel import gettext as _
from ..models import (
    db, AuditLog, ProductAgencyStock, SheetValidationError, DuplicateMaterialError
)

# Predefined units for raw materials
units_list = ["kg", "g", "L", "mL", "unité", "sachet", "boîte"]

MATERIAL_QUANTITY_MAX = 999.99
# Entry ceiling for any line quantity, far above what a single batch can hold
QUANTITY_CEILING = 1000000

def round2(value):
    """Round half-up to two decimals and return a float"""
    if value is None:
        return 0.0
    return float(Decimal(str(value)).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP))

def to_float(value, default=0.0):
    try:
        number = float(str(value).replace(",", "."))
    except (TypeError, ValueError, InvalidOperation):
        return default
    # "inf" and "nan" parse as floats but are not quantities
    if not math.isfinite(number):
        return default
    return number

def to_int(value, default=0):
    try:
        return int(float(str(value).replace(",", ".")))
    except (TypeError, ValueError, OverflowError):
        return default

def convert_to_kilograms(quantity, unit):
    """Grams are converted to kilograms, every other unit is counted as-is"""
    if unit == 'g':
        return quantity / 1000.0
    return quantity

def calculate_sheet_totals(material_lines, product_lines):
    """
    Compute the derived totals of a production sheet.

    Args:
        material_lines: dicts with quantity, unit_price and unit
        product_lines: dicts with quantity, unit_price and weight_per_unit

    Returns:
        Dict of totals, every weight and amount rounded to two decimals
    """
    materials_total_weight = sum(
        round2(convert_to_kilograms(line['quantity'], line.get('unit') or ''))
        for line in material_lines
    )
    materials_total_cost = sum(line['quantity'] * line['unit_price'] for line in material_lines)

    production_total_quantity = sum(line['quantity'] for line in product_lines)
    production_total_weight = sum(
        round2(line['quantity'] * line['weight_per_unit'])
        for line in product_lines
    )
    production_total_amount = sum(line['quantity'] * line['unit_price'] for line in product_lines)

    materials_total_weight = round2(materials_total_weight)
    materials_total_cost = round2(materials_total_cost)
    production_total_weight = round2(production_total_weight)
    production_total_amount = round2(production_total_amount)

    return {
        'materials_total_weight': materials_total_weight,
        'materials_total_cost': materials_total_cost,
        'production_total_quantity': production_total_quantity,
        'production_total_weight': production_total_weight,
        'production_total_amount': production_total_amount,
        'profitability_rate': calculate_profitability_rate(production_total_amount, materials_total_cost),
        'weight_difference': round2(production_total_weight - materials_total_weight)
    }

def calculate_profitability_rate(production_amount, materials_cost):
    if production_amount <= 0:
        return 0.0
    return round2((production_amount - materials_cost) / production_amount * 100)

def calculate_yield_rate(production_weight, materials_weight):
    if not materials_weight:
        return 0.0
    return round2(production_weight / materials_weight * 100)

# ----------------------------
# Sheet line editing
# ----------------------------
def select_material(material_lines, index, material):
    """
    Put a raw material on line `index`, filling its name, current price and unit.
    Rejects a material already present on another line of the sheet.
    """
    for i, line in enumerate(material_lines):
        if i != index and line.get('material_id') == material.id:
            raise DuplicateMaterialError(_('This material is already on the sheet'))

    line = dict(material_lines[index]) if index < len(material_lines) else {}
    line.update({
        'material_id': material.id,
        'material_name': material.name,
        'unit_price': material.unit_price,
        'unit': material.unit
    })
    line.setdefault('quantity', 0.0)

    if index < len(material_lines):
        material_lines[index] = line
    else:
        material_lines.append(line)
    return line

def normalize_material_quantity(value):
    quantity = to_float(value)
    if quantity > QUANTITY_CEILING:
        raise SheetValidationError(_('Raw material quantities must be between 0.01 and 999.99'))
    return round2(max(0.0, quantity))

def select_product(product_lines, index, product):
    line = dict(product_lines[index]) if index < len(product_lines) else {}
    line.update({
        'product_id': product.id,
        'product_name': product.name,
        'unit_price': product.price,
        'weight_per_unit': product.fresh_weight
    })
    line.setdefault('quantity', 0)

    if index < len(product_lines):
        product_lines[index] = line
    else:
        product_lines.append(line)
    return line

def normalize_product_quantity(value):
    quantity = to_int(value)
    if quantity > QUANTITY_CEILING:
        raise SheetValidationError(_('Product quantity is too large'))
    return max(0, quantity)

def validate_sheet_lines(material_lines, product_lines):
    seen = set()
    for line in material_lines:
        material_id = line.get('material_id')
        if material_id in seen:
            raise DuplicateMaterialError(_('This material is already on the sheet'))
        seen.add(material_id)

    for line in material_lines:
        if line['quantity'] <= 0 or line['quantity'] > MATERIAL_QUANTITY_MAX:
            raise SheetValidationError(
                _('Raw material quantities must be between 0.01 and 999.99')
            )

    for line in product_lines:
        if line['quantity'] <= 0:
            raise SheetValidationError(_('Product quantities must be positive'))

# ----------------------------
# Identifiers
# ----------------------------
def generate_material_code():
    timestamp = str(int(time.time() * 1000))[-6:]
    suffix = str(random.randint(0, 999)).zfill(3)
    return f"MP{timestamp}{suffix}"

def generate_sheet_number():
    return f"FP-{int(time.time() * 1000)}"

# ----------------------------
# Stock
# ----------------------------
def adjust_agency_stock(product, agency, delta):
    """Add `delta` units to the product's stock at `agency` inside the current transaction"""
    row = (
        ProductAgencyStock.query
        .filter_by(product_id=product.id, agency=agency)
        .with_for_update()
        .first()
    )
    if row is None:
        row = ProductAgencyStock(product_id=product.id, agency=agency, quantity=0)
        db.session.add(row)
        product.agency_stocks.append(row)
    row.quantity = (row.quantity or 0) + delta
    return row

# ----------------------------
# Operator context
# ----------------------------
def get_operator():
    """Company, agency and user of the current request; the login layer fills the session"""
    return {
        'company': session.get('company', current_app.config['DEFAULT_COMPANY']),
        'agency': session.get('agency', current_app.config['DEFAULT_AGENCY']),
        'user_id': session.get('user_id'),
        'user_name': session.get('user_name', '')
    }

def log_audit(action, target_type, target_id=None, details=None):
    try:
        log = AuditLog(
            action=action,
            target_type=target_type,
            target_id=target_id,
            details=details
        )
        db.session.add(log)
    except Exception:
        # Audit logging must not interrupt the main operation
        current_app.logger.exception("Failed to log audit %s %s", action, target_type)
