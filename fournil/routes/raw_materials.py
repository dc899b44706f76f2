from datetime import datetime
from flask import Blueprint, request, jsonify, current_app
from flask_babel import gettext as _
from ..models import db, RawMaterial, RawMaterialPriceHistory, ProductionSheetMaterial
from .utils import log_audit, units_list, generate_material_code, get_operator, to_float

raw_materials_blueprint = Blueprint('raw_materials', __name__)

def _get_material_or_404(material_id):
    operator = get_operator()
    return RawMaterial.query.filter_by(id=material_id, company=operator['company']).first_or_404()

# ----------------------------
# Raw Materials Management
# ----------------------------
@raw_materials_blueprint.route('/raw_materials')
def raw_materials():
    operator = get_operator()
    show_deleted = request.args.get('show_deleted') == 'true'

    query = RawMaterial.query.filter_by(company=operator['company'])
    if not show_deleted:
        query = query.filter_by(is_deleted=False)
    materials = query.order_by(RawMaterial.name.asc()).all()

    return jsonify({'materials': [m.to_dict() for m in materials]})

@raw_materials_blueprint.route('/raw_materials/units')
def units():
    return jsonify({'units': units_list})

@raw_materials_blueprint.route('/raw_materials/add', methods=['POST'])
def add_raw_material():
    data = request.get_json(silent=True) or request.form
    operator = get_operator()

    name = (data.get('name') or '').strip()
    unit = data.get('unit') or units_list[0]
    price = to_float(data.get('unit_price'), default=None)

    if not name:
        return jsonify({'success': False, 'error': _('Missing required fields')}), 400
    if unit not in units_list:
        return jsonify({'success': False, 'error': _('Unknown unit of measure')}), 400
    if price is None or price <= 0:
        return jsonify({'success': False, 'error': _('Unit price must be a positive number')}), 400

    now = datetime.utcnow()
    material = RawMaterial(
        code=generate_material_code(),
        name=name,
        unit=unit,
        unit_price=price,
        company=operator['company'],
        created_by=operator['user_id'],
        created_at=now,
        updated_at=now
    )
    material.price_history.append(
        RawMaterialPriceHistory(price=price, timestamp=now, justification='Prix initial')
    )
    db.session.add(material)
    db.session.flush()

    log_audit("CREATE", "RawMaterial", material.id, f"Created raw material {material.name} at {price}")
    db.session.commit()
    current_app.logger.info("Raw material %s created (%s)", material.code, material.name)

    return jsonify({'success': True, 'material': material.to_dict()}), 201

@raw_materials_blueprint.route('/raw_materials/<int:material_id>/price', methods=['POST'])
def update_price(material_id):
    material = _get_material_or_404(material_id)
    data = request.get_json(silent=True) or request.form

    price = to_float(data.get('price'), default=None)
    justification = (data.get('justification') or '').strip()

    if price is None or price <= 0:
        return jsonify({'success': False, 'error': _('Price must be a positive number')}), 400
    if not justification:
        return jsonify({'success': False, 'error': _('A justification is required')}), 400

    old_price = material.unit_price
    now = datetime.utcnow()
    material.unit_price = price
    material.updated_at = now
    material.price_history.append(
        RawMaterialPriceHistory(price=price, timestamp=now, justification=justification)
    )

    log_audit("UPDATE", "RawMaterial", material.id, f"Price changed from {old_price} to {price}: {justification}")
    db.session.commit()

    return jsonify({'success': True, 'material': material.to_dict()})

@raw_materials_blueprint.route('/raw_materials/<int:material_id>/price_history')
def price_history(material_id):
    material = _get_material_or_404(material_id)
    history = sorted(material.price_history, key=lambda h: h.timestamp, reverse=True)
    return jsonify({'material_id': material.id, 'history': [h.to_dict() for h in history]})

@raw_materials_blueprint.route('/raw_materials/delete/<int:material_id>', methods=['POST'])
def delete_raw_material(material_id):
    """Delete a raw material, or archive it when production sheets reference it"""
    material = _get_material_or_404(material_id)

    usage = ProductionSheetMaterial.query.filter_by(material_id=material.id).count()
    if usage > 0:
        material.is_deleted = True
        log_audit("ARCHIVE", "RawMaterial", material.id, f"Archived raw material: {material.name} (used in {usage} sheets)")
        db.session.commit()
        return jsonify({
            'success': True,
            'archived': True,
            'message': _('Material archived: it is used in %(count)s production sheet(s)', count=usage)
        })

    try:
        db.session.delete(material)
        log_audit("DELETE", "RawMaterial", material_id, f"Deleted raw material: {material.name}")
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        current_app.logger.exception("Error deleting raw material %s", material_id)
        return jsonify({'success': False, 'error': _('Error deleting material: %(error)s', error=str(e))}), 500

    return jsonify({'success': True, 'archived': False, 'message': _('Material deleted successfully')})
