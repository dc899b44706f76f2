from datetime import datetime
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()

# Custom exceptions
class InsufficientStockError(Exception):
    """Raised when a waste quantity exceeds the stock available at the agency"""
    pass

class SheetValidationError(ValueError):
    """Raised when a production sheet line is invalid; the message is shown to the user"""
    pass

class DuplicateMaterialError(SheetValidationError):
    """Raised when the same raw material is selected twice on one production sheet"""
    pass

class ProductsUnavailableError(Exception):
    """Raised when products can be loaded neither from the database nor from the offline cache"""
    pass

# Waste reasons
WASTE_REASON_BAD_PRODUCTION = 'mauvaise production'
WASTE_REASON_NEAR_EXPIRY = 'produit bientôt périmé'
WASTE_REASONS = [WASTE_REASON_BAD_PRODUCTION, WASTE_REASON_NEAR_EXPIRY]

DEPARTMENTS = ['Boulangerie', 'Boutique']


class RawMaterial(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(20), unique=True, nullable=False)
    name = db.Column(db.String(100), nullable=False)
    unit = db.Column(db.String(20), nullable=False)
    unit_price = db.Column(db.Float, nullable=False)
    company = db.Column(db.String(100), nullable=False, index=True)
    created_by = db.Column(db.String(100), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow)
    is_deleted = db.Column(db.Boolean, default=False, nullable=False)  # Soft delete flag

    price_history = db.relationship(
        'RawMaterialPriceHistory',
        backref='raw_material',
        order_by='RawMaterialPriceHistory.timestamp',
        cascade='all, delete-orphan'
    )

    def to_dict(self):
        return {
            'id': self.id,
            'code': self.code,
            'name': self.name,
            'unit': self.unit,
            'unit_price': self.unit_price,
            'company': self.company,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
            'is_deleted': self.is_deleted,
            'price_history': [h.to_dict() for h in self.price_history]
        }


class RawMaterialPriceHistory(db.Model):
    """Append-only log of unit price changes"""
    __tablename__ = 'raw_material_price_history'

    id = db.Column(db.Integer, primary_key=True)
    raw_material_id = db.Column(db.Integer, db.ForeignKey('raw_material.id'), nullable=False)
    price = db.Column(db.Float, nullable=False)
    timestamp = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    justification = db.Column(db.String(255), nullable=False)

    def to_dict(self):
        return {
            'price': self.price,
            'timestamp': self.timestamp.isoformat() if self.timestamp else None,
            'justification': self.justification
        }


class Product(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    reference = db.Column(db.String(50), nullable=True)
    category = db.Column(db.String(50), nullable=True)
    department = db.Column(db.String(20), nullable=False, default='Boulangerie')
    price = db.Column(db.Float, nullable=False, default=0.0)
    fresh_weight = db.Column(db.Float, nullable=False, default=0.0)  # kg per unit
    min_stock = db.Column(db.Integer, nullable=False, default=0)
    company = db.Column(db.String(100), nullable=False, index=True)

    agency_stocks = db.relationship('ProductAgencyStock', backref='product', cascade='all, delete-orphan')

    def stock_for(self, agency):
        for row in self.agency_stocks:
            if row.agency == agency:
                return row.quantity
        return 0

    @property
    def total_stock(self):
        return sum(row.quantity for row in self.agency_stocks)

    def to_dict(self, agency=None):
        data = {
            'id': self.id,
            'name': self.name,
            'reference': self.reference,
            'category': self.category,
            'department': self.department,
            'price': self.price,
            'fresh_weight': self.fresh_weight,
            'min_stock': self.min_stock,
            'company': self.company,
            'stock_by_agency': {row.agency: row.quantity for row in self.agency_stocks}
        }
        if agency is not None:
            data['stock'] = self.stock_for(agency)
        return data


class ProductAgencyStock(db.Model):
    __tablename__ = 'product_agency_stock'

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey('product.id'), nullable=False)
    agency = db.Column(db.String(100), nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=0)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (db.UniqueConstraint('product_id', 'agency'),)


class ProductionSheet(db.Model):
    __tablename__ = 'production_sheet'

    id = db.Column(db.Integer, primary_key=True)
    number = db.Column(db.String(30), unique=True, nullable=False)
    production_date = db.Column(db.Date, nullable=False)
    responsible = db.Column(db.String(100), nullable=False)
    agency = db.Column(db.String(100), nullable=False)
    company = db.Column(db.String(100), nullable=False, index=True)
    department = db.Column(db.String(20), nullable=False, default='Boulangerie')
    created_by = db.Column(db.String(100), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    # Derived totals, recomputed whenever the lines change
    materials_total_weight = db.Column(db.Float, nullable=False, default=0.0)
    materials_total_cost = db.Column(db.Float, nullable=False, default=0.0)
    production_total_quantity = db.Column(db.Integer, nullable=False, default=0)
    production_total_weight = db.Column(db.Float, nullable=False, default=0.0)
    production_total_amount = db.Column(db.Float, nullable=False, default=0.0)
    profitability_rate = db.Column(db.Float, nullable=False, default=0.0)
    weight_difference = db.Column(db.Float, nullable=False, default=0.0)

    material_lines = db.relationship('ProductionSheetMaterial', backref='sheet', order_by='ProductionSheetMaterial.id', cascade='all, delete-orphan')
    product_lines = db.relationship('ProductionSheetProduct', backref='sheet', order_by='ProductionSheetProduct.id', cascade='all, delete-orphan')

    @property
    def totals(self):
        return {
            'materials_total_weight': self.materials_total_weight,
            'materials_total_cost': self.materials_total_cost,
            'production_total_quantity': self.production_total_quantity,
            'production_total_weight': self.production_total_weight,
            'production_total_amount': self.production_total_amount,
            'profitability_rate': self.profitability_rate,
            'weight_difference': self.weight_difference
        }

    def apply_totals(self, totals):
        for key, value in totals.items():
            setattr(self, key, value)

    def to_dict(self):
        return {
            'id': self.id,
            'number': self.number,
            'production_date': self.production_date.strftime('%Y-%m-%d'),
            'responsible': self.responsible,
            'agency': self.agency,
            'company': self.company,
            'department': self.department,
            'created_by': self.created_by,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'materials_used': [line.to_dict() for line in self.material_lines],
            'products_produced': [line.to_dict() for line in self.product_lines],
            'totals': self.totals
        }


class ProductionSheetMaterial(db.Model):
    __tablename__ = 'production_sheet_material'

    id = db.Column(db.Integer, primary_key=True)
    sheet_id = db.Column(db.Integer, db.ForeignKey('production_sheet.id'), nullable=False)
    material_id = db.Column(db.Integer, db.ForeignKey('raw_material.id'), nullable=True)
    material_name = db.Column(db.String(100), nullable=True)  # Snapshot at production time
    quantity = db.Column(db.Float, nullable=False)
    unit_price = db.Column(db.Float, nullable=False)
    unit = db.Column(db.String(20), nullable=True)

    material = db.relationship('RawMaterial')

    def to_dict(self):
        return {
            'id': self.id,
            'material_id': self.material_id,
            'material_name': self.material_name,
            'quantity': self.quantity,
            'unit_price': self.unit_price,
            'unit': self.unit
        }


class ProductionSheetProduct(db.Model):
    __tablename__ = 'production_sheet_product'

    id = db.Column(db.Integer, primary_key=True)
    sheet_id = db.Column(db.Integer, db.ForeignKey('production_sheet.id'), nullable=False)
    product_id = db.Column(db.Integer, db.ForeignKey('product.id'), nullable=True)
    product_name = db.Column(db.String(100), nullable=True)
    quantity = db.Column(db.Integer, nullable=False)
    unit_price = db.Column(db.Float, nullable=False)
    weight_per_unit = db.Column(db.Float, nullable=False)

    product = db.relationship('Product')

    def to_dict(self):
        return {
            'id': self.id,
            'product_id': self.product_id,
            'product_name': self.product_name,
            'quantity': self.quantity,
            'unit_price': self.unit_price,
            'weight_per_unit': self.weight_per_unit
        }


class WasteRecord(db.Model):
    __tablename__ = 'waste_record'

    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(db.String(36), unique=True, nullable=False)  # Assigned by the offline cache
    product_id = db.Column(db.Integer, db.ForeignKey('product.id'), nullable=False)
    product_name = db.Column(db.String(100), nullable=True)
    quantity = db.Column(db.Integer, nullable=False)
    reason = db.Column(db.String(50), nullable=False)
    timestamp = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    user_id = db.Column(db.String(100), nullable=True)
    user_name = db.Column(db.String(100), nullable=True)
    company = db.Column(db.String(100), nullable=False, index=True)
    agency = db.Column(db.String(100), nullable=False, index=True)
    synced = db.Column(db.Boolean, default=True, nullable=False)

    product = db.relationship('Product')

    def to_dict(self):
        return {
            'id': self.id,
            'client_id': self.client_id,
            'product_id': self.product_id,
            'product_name': self.product_name,
            'quantity': self.quantity,
            'reason': self.reason,
            'timestamp': self.timestamp.isoformat() if self.timestamp else None,
            'user_id': self.user_id,
            'user_name': self.user_name,
            'company': self.company,
            'agency': self.agency,
            'synced': self.synced
        }


class AuditLog(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    timestamp = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    action = db.Column(db.String(50), nullable=False)
    target_type = db.Column(db.String(50), nullable=False)
    target_id = db.Column(db.Integer, nullable=True)
    details = db.Column(db.Text, nullable=True)

    def to_dict(self):
        return {
            'id': self.id,
            'timestamp': self.timestamp.strftime('%Y-%m-%d %H:%M:%S'),
            'action': self.action,
            'target_type': self.target_type,
            'target_id': self.target_id,
            'details': self.details
        }
