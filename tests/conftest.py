# tests/conftest.py
import pytest

from fournil import create_app
from fournil.models import db, RawMaterial, RawMaterialPriceHistory, Product, ProductAgencyStock

COMPANY = 'egrec'
AGENCY = 'Principale'


@pytest.fixture()
def app(tmp_path):
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'fournil_test.db'}",
        'OFFLINE_CACHE_PATH': str(tmp_path / 'offline_cache.db'),
        'DEFAULT_COMPANY': COMPANY,
        'DEFAULT_AGENCY': AGENCY,
        'SECRET_KEY': 'test',
    })
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()
        db.engine.dispose()
    cache = app.extensions.get('offline_cache')
    if cache is not None:
        cache.engine.dispose()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def make_material(app):
    def _make(name='Farine T55', unit='kg', unit_price=500.0, company=COMPANY, code=None):
        with app.app_context():
            material = RawMaterial(
                code=code or f"MP-{name}",
                name=name,
                unit=unit,
                unit_price=unit_price,
                company=company
            )
            material.price_history.append(
                RawMaterialPriceHistory(price=unit_price, justification='Prix initial')
            )
            db.session.add(material)
            db.session.commit()
            return material.id
    return _make


@pytest.fixture()
def make_product(app):
    def _make(name='Baguette', price=150.0, fresh_weight=0.25, stock=0, company=COMPANY,
              agency=AGENCY, department='Boulangerie'):
        with app.app_context():
            product = Product(
                name=name,
                price=price,
                fresh_weight=fresh_weight,
                company=company,
                department=department
            )
            if stock:
                product.agency_stocks.append(ProductAgencyStock(agency=agency, quantity=stock))
            db.session.add(product)
            db.session.commit()
            return product.id
    return _make


def agency_stock(app, product_id, agency=AGENCY):
    with app.app_context():
        return db.session.get(Product, product_id).stock_for(agency)
