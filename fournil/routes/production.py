import io
from datetime import datetime
import pandas as pd
from flask import Blueprint, render_template, request, jsonify, send_file, url_for, current_app
from flask_babel import gettext as _, format_date
from sqlalchemy.exc import SQLAlchemyError
from ..models import (
    db, RawMaterial, Product, ProductionSheet, ProductionSheetMaterial, ProductionSheetProduct,
    SheetValidationError
)
from .utils import (
    log_audit, get_operator, calculate_sheet_totals, calculate_yield_rate,
    select_material, select_product, normalize_material_quantity, normalize_product_quantity,
    validate_sheet_lines, generate_sheet_number, adjust_agency_stock
)

production_blueprint = Blueprint('production', __name__)

def _get_sheet_or_404(sheet_id):
    operator = get_operator()
    return ProductionSheet.query.filter_by(id=sheet_id, company=operator['company']).first_or_404()

def _build_lines(data, company):
    """Resolve submitted lines against the catalogue, the way the entry form fills them"""
    material_lines = []
    for entry in data.get('materials_used') or []:
        material = RawMaterial.query.filter_by(
            id=entry.get('material_id'), company=company, is_deleted=False
        ).first()
        if material is None:
            raise SheetValidationError(_('Unknown raw material'))
        line = select_material(material_lines, len(material_lines), material)
        line['quantity'] = normalize_material_quantity(entry.get('quantity'))

    product_lines = []
    for entry in data.get('products_produced') or []:
        product = Product.query.filter_by(id=entry.get('product_id'), company=company).first()
        if product is None:
            raise SheetValidationError(_('Unknown product'))
        line = select_product(product_lines, len(product_lines), product)
        line['quantity'] = normalize_product_quantity(entry.get('quantity'))

    return material_lines, product_lines

def _parse_date(value):
    if not value:
        return datetime.now().date()
    try:
        return datetime.strptime(value, '%Y-%m-%d').date()
    except ValueError:
        raise SheetValidationError(_('Invalid production date'))

# ----------------------------
# Production Sheets
# ----------------------------
@production_blueprint.route('/production_sheets')
def production_sheets():
    operator = get_operator()
    sheets = (
        ProductionSheet.query
        .filter_by(company=operator['company'])
        .order_by(ProductionSheet.production_date.desc(), ProductionSheet.id.desc())
        .all()
    )
    return jsonify({'sheets': [s.to_dict() for s in sheets]})

@production_blueprint.route('/production_sheets/<int:sheet_id>')
def sheet_details(sheet_id):
    sheet = _get_sheet_or_404(sheet_id)
    return jsonify({'sheet': sheet.to_dict()})

@production_blueprint.route('/production_sheets/preview', methods=['POST'])
def preview_sheet():
    """Live totals for the entry form; nothing is saved"""
    data = request.get_json(silent=True) or {}
    operator = get_operator()
    try:
        material_lines, product_lines = _build_lines(data, operator['company'])
    except SheetValidationError as e:
        return jsonify({'success': False, 'error': str(e)}), 400

    return jsonify({
        'success': True,
        'materials_used': material_lines,
        'products_produced': product_lines,
        'totals': calculate_sheet_totals(material_lines, product_lines)
    })

@production_blueprint.route('/production_sheets/add', methods=['POST'])
def add_sheet():
    data = request.get_json(silent=True) or {}
    operator = get_operator()

    try:
        production_date = _parse_date(data.get('production_date'))
        material_lines, product_lines = _build_lines(data, operator['company'])
        validate_sheet_lines(material_lines, product_lines)
    except SheetValidationError as e:
        return jsonify({'success': False, 'error': str(e)}), 400

    responsible = (data.get('responsible') or operator['user_name'] or '').strip()
    if not responsible:
        return jsonify({'success': False, 'error': _('Missing required fields')}), 400

    totals = calculate_sheet_totals(material_lines, product_lines)

    try:
        # Produced goods enter the agency stock together with the sheet
        for line in product_lines:
            product = db.session.get(Product, line['product_id'])
            adjust_agency_stock(product, operator['agency'], line['quantity'])

        sheet = ProductionSheet(
            number=generate_sheet_number(),
            production_date=production_date,
            responsible=responsible,
            agency=operator['agency'],
            company=operator['company'],
            department='Boulangerie',
            created_by=operator['user_id']
        )
        sheet.apply_totals(totals)
        for line in material_lines:
            sheet.material_lines.append(ProductionSheetMaterial(**line))
        for line in product_lines:
            sheet.product_lines.append(ProductionSheetProduct(**line))

        db.session.add(sheet)
        db.session.flush()
        log_audit("CREATE", "ProductionSheet", sheet.id, f"Created production sheet {sheet.number}")
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("Error creating production sheet")
        return jsonify({'success': False, 'error': _('Error creating the production sheet')}), 500

    current_app.logger.info("Production sheet %s created for %s", sheet.number, sheet.agency)
    return jsonify({
        'success': True,
        'message': _('Production sheet created successfully'),
        'sheet': sheet.to_dict(),
        'print_url': url_for('production.print_sheet', sheet_id=sheet.id)
    }), 201

def _edited_quantities(entries, lines, normalize):
    """Map line id to its new quantity; every entry must name a line of the sheet"""
    line_ids = {line.id for line in lines}
    quantities = {}
    for entry in entries or []:
        line_id = entry.get('id')
        if line_id not in line_ids:
            raise SheetValidationError(_('Unknown line on this production sheet'))
        quantities[line_id] = normalize(entry.get('quantity'))
    return quantities

@production_blueprint.route('/production_sheets/<int:sheet_id>/edit', methods=['POST'])
def edit_sheet(sheet_id):
    """
    Update material and produced quantities of an existing sheet.

    Lines are addressed by their id. Totals are recomputed from both line
    sets and the quantity difference of each product line is applied to the
    sheet's agency stock in the same transaction.
    """
    sheet = _get_sheet_or_404(sheet_id)
    data = request.get_json(silent=True) or {}

    try:
        material_quantities = _edited_quantities(
            data.get('materials_used'), sheet.material_lines, normalize_material_quantity
        )
        product_quantities = _edited_quantities(
            data.get('products_produced'), sheet.product_lines, normalize_product_quantity
        )

        material_lines = [line.to_dict() for line in sheet.material_lines]
        for line in material_lines:
            line['quantity'] = material_quantities.get(line['id'], line['quantity'])
        product_lines = [line.to_dict() for line in sheet.product_lines]
        for line in product_lines:
            line['quantity'] = product_quantities.get(line['id'], line['quantity'])

        validate_sheet_lines(material_lines, product_lines)
    except SheetValidationError as e:
        return jsonify({'success': False, 'error': str(e)}), 400

    try:
        for line in sheet.material_lines:
            line.quantity = material_quantities.get(line.id, line.quantity)

        for line in sheet.product_lines:
            if line.id not in product_quantities:
                continue
            quantity_diff = product_quantities[line.id] - line.quantity
            if quantity_diff and line.product is not None:
                adjust_agency_stock(line.product, sheet.agency, quantity_diff)
            line.quantity = product_quantities[line.id]

        sheet.apply_totals(calculate_sheet_totals(material_lines, product_lines))

        log_audit("UPDATE", "ProductionSheet", sheet.id, f"Updated quantities of {sheet.number}")
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("Error updating production sheet %s", sheet_id)
        return jsonify({'success': False, 'error': _('Error updating the production sheet')}), 500

    return jsonify({
        'success': True,
        'message': _('Production sheet updated successfully'),
        'sheet': sheet.to_dict()
    })

@production_blueprint.route('/production_sheets/<int:sheet_id>/print')
def print_sheet(sheet_id):
    sheet = _get_sheet_or_404(sheet_id)
    return render_template(
        'production_sheet_print.html',
        sheet=sheet,
        display_date=format_date(sheet.production_date, 'dd MMMM yyyy'),
        yield_rate=calculate_yield_rate(sheet.production_total_weight, sheet.materials_total_weight)
    )

@production_blueprint.route('/production_sheets/export')
def export_sheets():
    operator = get_operator()
    sheets = (
        ProductionSheet.query
        .filter_by(company=operator['company'])
        .order_by(ProductionSheet.production_date.desc())
        .all()
    )

    rows = []
    for sheet in sheets:
        rows.append({
            'Numéro': sheet.number,
            'Date': sheet.production_date,
            'Agence': sheet.agency,
            'Responsable': sheet.responsible,
            'Poids matières (kg)': sheet.materials_total_weight,
            'Coût matières': sheet.materials_total_cost,
            'Quantité produite': sheet.production_total_quantity,
            'Poids production (kg)': sheet.production_total_weight,
            'Valeur production': sheet.production_total_amount,
            'Rentabilité (%)': sheet.profitability_rate,
            'Différence poids (kg)': sheet.weight_difference,
        })

    df = pd.DataFrame(rows, columns=[
        'Numéro', 'Date', 'Agence', 'Responsable', 'Poids matières (kg)', 'Coût matières',
        'Quantité produite', 'Poids production (kg)', 'Valeur production', 'Rentabilité (%)',
        'Différence poids (kg)'
    ])

    mem = io.BytesIO()
    df.to_excel(mem, index=False, sheet_name='Fiches')
    mem.seek(0)

    filename = f"fiches_production_{datetime.now().strftime('%Y%m%d_%H%M%S')}.xlsx"
    return send_file(
        mem,
        as_attachment=True,
        download_name=filename,
        mimetype='application/vnd.openxmlformats-officedocument.spreadsheetml.sheet'
    )
