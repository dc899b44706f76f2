"""
Local mirror of product and waste data for when the database is unreachable.

The cache is a SQLite file accessed through SQLAlchemy Core. Every row is
partitioned by company. Waste records are written here first with
``synced = 0`` and pushed to the database by :func:`sync_waste_records`;
the push is keyed by the record's client id, so a record pushed twice
overwrites the first copy instead of duplicating it.
"""
import json
import logging
import uuid
from collections import namedtuple
from datetime import datetime

from flask import current_app
from sqlalchemy import (
    Column, DateTime, Integer, MetaData, String, Table, Text,
    and_, create_engine, delete, insert, select, text, update
)
from sqlalchemy.exc import SQLAlchemyError

from .models import db, Product, WasteRecord, ProductsUnavailableError

logger = logging.getLogger(__name__)

metadata = MetaData()

cached_products = Table(
    'cached_products', metadata,
    Column('company', String(100), primary_key=True),
    Column('id', Integer, primary_key=True),
    Column('category', String(50), index=True),
    Column('payload', Text, nullable=False),
)

cached_waste_records = Table(
    'waste_records', metadata,
    Column('local_id', Integer, primary_key=True, autoincrement=True),
    Column('client_id', String(36), unique=True, nullable=False),
    Column('company', String(100), nullable=False, index=True),
    Column('agency', String(100), nullable=False, index=True),
    Column('product_id', Integer, nullable=False),
    Column('product_name', String(100)),
    Column('quantity', Integer, nullable=False),
    Column('reason', String(50), nullable=False),
    Column('timestamp', DateTime, nullable=False),
    Column('user_id', String(100)),
    Column('user_name', String(100)),
    Column('synced', Integer, nullable=False, default=0, index=True),  # 0 = pending, 1 = pushed
)

SyncResult = namedtuple('SyncResult', ['synced', 'failed'])

WASTE_FIELDS = [
    'product_id', 'product_name', 'quantity', 'reason', 'timestamp',
    'user_id', 'user_name', 'company', 'agency'
]


class OfflineCache:
    def __init__(self, path):
        self.path = path
        self.engine = create_engine(f"sqlite:///{path}")
        metadata.create_all(self.engine)

    # ----------------------------
    # Products
    # ----------------------------
    def cache_products(self, products, company):
        """Replace the company partition with `products` (dicts carrying an id)"""
        with self.engine.begin() as conn:
            conn.execute(delete(cached_products).where(cached_products.c.company == company))
            if products:
                conn.execute(insert(cached_products), [
                    {
                        'company': company,
                        'id': product['id'],
                        'category': product.get('category'),
                        'payload': json.dumps(product, ensure_ascii=False)
                    }
                    for product in products
                ])

    def get_cached_products(self, company):
        query = (
            select(cached_products.c.payload)
            .where(cached_products.c.company == company)
            .order_by(cached_products.c.id)
        )
        with self.engine.connect() as conn:
            return [json.loads(row.payload) for row in conn.execute(query)]

    def clear_product_cache(self, company):
        with self.engine.begin() as conn:
            conn.execute(delete(cached_products).where(cached_products.c.company == company))

    # ----------------------------
    # Waste records
    # ----------------------------
    def add_waste_record(self, record):
        row = {field: record.get(field) for field in WASTE_FIELDS}
        row['client_id'] = record.get('client_id') or str(uuid.uuid4())
        row['timestamp'] = row['timestamp'] or datetime.utcnow()
        row['synced'] = 0
        with self.engine.begin() as conn:
            conn.execute(insert(cached_waste_records), [row])
        return row

    def get_waste_records(self, company, agency):
        query = (
            select(cached_waste_records)
            .where(and_(
                cached_waste_records.c.company == company,
                cached_waste_records.c.agency == agency
            ))
            .order_by(cached_waste_records.c.timestamp.desc())
        )
        with self.engine.connect() as conn:
            return [_waste_row_to_dict(row) for row in conn.execute(query)]

    def get_unsynced_waste_records(self):
        query = (
            select(cached_waste_records)
            .where(cached_waste_records.c.synced == 0)
            .order_by(cached_waste_records.c.local_id)
        )
        with self.engine.connect() as conn:
            return [row._asdict() for row in conn.execute(query)]

    def mark_waste_synced(self, client_id):
        with self.engine.begin() as conn:
            conn.execute(
                update(cached_waste_records)
                .where(cached_waste_records.c.client_id == client_id)
                .values(synced=1)
            )


def _waste_row_to_dict(row):
    data = row._asdict()
    data.pop('local_id', None)
    data['synced'] = data['synced'] == 1
    return data


def get_offline_cache(app=None):
    """One cache per application, opened on first use"""
    app = app or current_app
    cache = app.extensions.get('offline_cache')
    if cache is None:
        cache = OfflineCache(app.config['OFFLINE_CACHE_PATH'])
        app.extensions['offline_cache'] = cache
    return cache


def remote_available():
    try:
        db.session.execute(text('SELECT 1'))
        return True
    except SQLAlchemyError:
        db.session.rollback()
        logger.warning("Database unreachable, working from the offline cache")
        return False


def fetch_and_cache_products(cache, company, agency=None, department=None):
    """
    Load the company's products from the database and refresh the cache.

    Falls back to the cached copy when the database fails or returns nothing.
    Raises ProductsUnavailableError when the cache is empty as well.
    """
    try:
        query = Product.query.filter_by(company=company)
        if department:
            query = query.filter_by(department=department)
        products = [p.to_dict(agency=agency) for p in query.order_by(Product.name).all()]
        if not products:
            raise ProductsUnavailableError(f"No product found for company {company}")
        cache.cache_products(products, company)
        return products, False
    except (SQLAlchemyError, ProductsUnavailableError) as e:
        db.session.rollback()
        logger.warning("Falling back to cached products for %s: %s", company, e)
        cached = cache.get_cached_products(company)
        if department:
            cached = [p for p in cached if p.get('department') == department]
        if cached:
            return cached, True
        raise ProductsUnavailableError(str(e)) from e


def save_waste_record(cache, record):
    """Store the record locally, then push it right away when the database answers"""
    row = cache.add_waste_record(record)
    logger.info("Waste record %s saved locally", row['client_id'])
    if remote_available():
        sync_waste_records(cache)
    return row


def sync_waste_records(cache):
    """
    Push every unsynced local waste record to the database.

    The agency stock of the product is decremented only when the record is
    inserted for the first time. A record that fails is left unsynced and
    retried on the next call.
    """
    from .routes.utils import adjust_agency_stock

    synced = failed = 0
    for row in cache.get_unsynced_waste_records():
        try:
            waste = WasteRecord.query.filter_by(client_id=row['client_id']).first()
            if waste is None:
                product = db.session.get(Product, row['product_id'])
                if product is None:
                    logger.warning("Waste record %s references unknown product %s",
                                   row['client_id'], row['product_id'])
                    failed += 1
                    continue
                waste = WasteRecord(client_id=row['client_id'])
                db.session.add(waste)
                adjust_agency_stock(product, row['agency'], -row['quantity'])

            for field in WASTE_FIELDS:
                setattr(waste, field, row[field])
            waste.synced = True
            db.session.commit()
            cache.mark_waste_synced(row['client_id'])
        except Exception:
            # One bad record must not hold back the others
            db.session.rollback()
            logger.exception("Error syncing waste record %s", row.get('client_id'))
            failed += 1
            continue

        synced += 1

    if synced or failed:
        logger.info("Waste sync finished: %d synced, %d failed", synced, failed)
    return SyncResult(synced=synced, failed=failed)


def list_waste_records(cache, company, agency):
    """Local unsynced records merged with the database records, newest first"""
    records = [r for r in cache.get_waste_records(company, agency) if not r['synced']]

    try:
        remote = WasteRecord.query.filter_by(company=company, agency=agency).all()
        records.extend(w.to_dict() for w in remote)
    except SQLAlchemyError:
        db.session.rollback()
        logger.warning("Listing waste records from the offline cache only")

    for record in records:
        if isinstance(record['timestamp'], str):
            record['timestamp'] = datetime.fromisoformat(record['timestamp'])
    records.sort(key=lambda r: r['timestamp'], reverse=True)
    for record in records:
        record['timestamp'] = record['timestamp'].isoformat()
    return records
