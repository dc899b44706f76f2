from datetime import datetime, timedelta

import pytest
from sqlalchemy.exc import OperationalError

from fournil import offline_cache
from fournil.models import WasteRecord, ProductsUnavailableError
from fournil.offline_cache import (
    OfflineCache, get_offline_cache, fetch_and_cache_products, save_waste_record,
    sync_waste_records, list_waste_records
)

from conftest import COMPANY, AGENCY, agency_stock


class _UnreachableQuery:
    def filter_by(self, **kwargs):
        raise OperationalError("SELECT", {}, Exception("connection refused"))


class _UnreachableProduct:
    query = _UnreachableQuery()
    name = None


@pytest.fixture()
def cache(tmp_path):
    cache = OfflineCache(str(tmp_path / 'cache.db'))
    yield cache
    cache.engine.dispose()


@pytest.fixture()
def offline(monkeypatch):
    monkeypatch.setattr(offline_cache, 'remote_available', lambda: False)


def waste(product_id, quantity=2, **overrides):
    record = {
        'product_id': product_id,
        'product_name': 'Baguette',
        'quantity': quantity,
        'reason': 'mauvaise production',
        'timestamp': datetime(2026, 10, 18, 8, 30),
        'user_id': 'u1',
        'user_name': 'Awa Diop',
        'company': COMPANY,
        'agency': AGENCY,
    }
    record.update(overrides)
    return record


def test_cache_products_replaces_company_partition(cache):
    cache.cache_products([{'id': 1, 'name': 'Baguette'}, {'id': 2, 'name': 'Croissant'}], COMPANY)
    cache.cache_products([{'id': 7, 'name': 'Savon'}], 'other')
    cache.cache_products([{'id': 3, 'name': 'Pain au lait'}], COMPANY)

    assert cache.get_cached_products(COMPANY) == [{'id': 3, 'name': 'Pain au lait'}]
    assert cache.get_cached_products('other') == [{'id': 7, 'name': 'Savon'}]

    cache.clear_product_cache(COMPANY)
    assert cache.get_cached_products(COMPANY) == []
    assert len(cache.get_cached_products('other')) == 1


def test_fetch_refreshes_cache(app, cache, make_product):
    make_product(name='Baguette', stock=12)

    with app.app_context():
        products, from_cache = fetch_and_cache_products(cache, COMPANY, agency=AGENCY)

    assert from_cache is False
    assert [p['name'] for p in products] == ['Baguette']
    assert cache.get_cached_products(COMPANY)[0]['stock'] == 12


def test_fetch_falls_back_to_cache_when_database_fails(app, cache, monkeypatch):
    cache.cache_products([{'id': 1, 'name': 'Baguette', 'department': 'Boulangerie'}], COMPANY)
    monkeypatch.setattr(offline_cache, 'Product', _UnreachableProduct)

    with app.app_context():
        products, from_cache = fetch_and_cache_products(cache, COMPANY)

    assert from_cache is True
    assert products == [{'id': 1, 'name': 'Baguette', 'department': 'Boulangerie'}]


def test_fetch_falls_back_to_cache_when_database_is_empty(app, cache):
    cache.cache_products([{'id': 1, 'name': 'Baguette'}], COMPANY)

    with app.app_context():
        products, from_cache = fetch_and_cache_products(cache, COMPANY)

    assert from_cache is True
    assert products[0]['name'] == 'Baguette'


def test_fetch_without_database_or_cache_raises(app, cache, monkeypatch):
    monkeypatch.setattr(offline_cache, 'Product', _UnreachableProduct)

    with app.app_context():
        with pytest.raises(ProductsUnavailableError):
            fetch_and_cache_products(cache, COMPANY)


def test_offline_save_stays_local(app, cache, make_product, offline):
    product_id = make_product(stock=10)

    with app.app_context():
        row = save_waste_record(cache, waste(product_id))
        assert WasteRecord.query.count() == 0

    records = cache.get_waste_records(COMPANY, AGENCY)
    assert len(records) == 1
    assert records[0]['client_id'] == row['client_id']
    assert records[0]['synced'] is False
    assert agency_stock(app, product_id) == 10


def test_online_save_syncs_immediately(app, cache, make_product):
    product_id = make_product(stock=10)

    with app.app_context():
        row = save_waste_record(cache, waste(product_id, quantity=3))
        remote = WasteRecord.query.filter_by(client_id=row['client_id']).one()
        assert remote.quantity == 3
        assert remote.synced is True

    assert cache.get_waste_records(COMPANY, AGENCY)[0]['synced'] is True
    assert agency_stock(app, product_id) == 7


def test_sync_pushes_pending_records_on_reconnect(app, cache, make_product, monkeypatch):
    product_id = make_product(stock=10)

    monkeypatch.setattr(offline_cache, 'remote_available', lambda: False)
    with app.app_context():
        save_waste_record(cache, waste(product_id, quantity=2))
        save_waste_record(cache, waste(product_id, quantity=1, reason='produit bientôt périmé'))

    monkeypatch.undo()
    with app.app_context():
        result = sync_waste_records(cache)
        assert result == (2, 0)
        assert WasteRecord.query.count() == 2

    assert agency_stock(app, product_id) == 7
    assert cache.get_unsynced_waste_records() == []


def test_record_pushed_twice_is_written_once(app, cache, make_product, offline):
    product_id = make_product(stock=10)

    with app.app_context():
        row = save_waste_record(cache, waste(product_id, quantity=4))
        sync_waste_records(cache)

        # The local flag is lost, so the record goes out a second time
        with cache.engine.begin() as conn:
            conn.execute(
                offline_cache.cached_waste_records.update()
                .where(offline_cache.cached_waste_records.c.client_id == row['client_id'])
                .values(synced=0, quantity=5)
            )
        result = sync_waste_records(cache)

        assert result.synced == 1
        assert WasteRecord.query.count() == 1
        # Last write wins on the record itself
        assert WasteRecord.query.one().quantity == 5

    assert agency_stock(app, product_id) == 6


def test_sync_failure_leaves_record_pending(app, cache, make_product, offline, monkeypatch):
    product_id = make_product(stock=10)

    class _UnreachableWasteRecord:
        query = _UnreachableQuery()

    with app.app_context():
        save_waste_record(cache, waste(product_id))
        monkeypatch.setattr(offline_cache, 'WasteRecord', _UnreachableWasteRecord)
        result = sync_waste_records(cache)

    assert result == (0, 1)
    assert len(cache.get_unsynced_waste_records()) == 1
    assert agency_stock(app, product_id) == 10


def test_sync_command(app, make_product, monkeypatch):
    product_id = make_product(stock=10)
    monkeypatch.setattr(offline_cache, 'remote_available', lambda: False)
    with app.app_context():
        save_waste_record(get_offline_cache(), waste(product_id, quantity=1))
    monkeypatch.undo()

    result = app.test_cli_runner().invoke(args=['waste', 'sync'])
    assert result.exit_code == 0
    assert '1 record(s) synchronised, 0 failed' in result.output
    assert agency_stock(app, product_id) == 9


def test_cache_command_reports_source(app, make_product):
    make_product(name='Baguette')
    result = app.test_cli_runner().invoke(args=['products', 'cache'])
    assert result.exit_code == 0
    assert '1 product(s) available for egrec (from database)' in result.output


def test_sync_skips_unknown_product(app, cache, offline):
    with app.app_context():
        save_waste_record(cache, waste(4242))
        result = sync_waste_records(cache)

    assert result.failed == 1
    assert len(cache.get_unsynced_waste_records()) == 1


def test_listing_merges_pending_and_remote(app, cache, make_product, monkeypatch):
    product_id = make_product(stock=10)
    earlier = datetime(2026, 10, 17, 9, 0)

    with app.app_context():
        save_waste_record(cache, waste(product_id, timestamp=earlier))

        monkeypatch.setattr(offline_cache, 'remote_available', lambda: False)
        pending = save_waste_record(cache, waste(product_id, timestamp=earlier + timedelta(days=1)))

        records = list_waste_records(cache, COMPANY, AGENCY)

    assert len(records) == 2
    assert records[0]['client_id'] == pending['client_id']
    assert records[0]['synced'] is False
    assert records[1]['synced'] is True


def test_cache_is_shared_per_application(app):
    assert get_offline_cache(app) is get_offline_cache(app)
    assert get_offline_cache(app).path == app.config['OFFLINE_CACHE_PATH']


def test_sync_moves_on_after_a_record_fails(app, cache, make_product, offline, monkeypatch):
    product_id = make_product(stock=10)

    with app.app_context():
        first = save_waste_record(cache, waste(product_id, quantity=2))
        save_waste_record(cache, waste(product_id, quantity=1))

        mark_synced = cache.mark_waste_synced

        def failing_mark(client_id):
            if client_id == first['client_id']:
                raise OSError("disk full")
            mark_synced(client_id)

        monkeypatch.setattr(cache, 'mark_waste_synced', failing_mark)
        assert sync_waste_records(cache) == (1, 1)
        assert WasteRecord.query.count() == 2

        pending = cache.get_unsynced_waste_records()
        assert [r['client_id'] for r in pending] == [first['client_id']]

        # The retry overwrites the stored copy without touching stock again
        monkeypatch.setattr(cache, 'mark_waste_synced', mark_synced)
        assert sync_waste_records(cache) == (1, 0)
        assert WasteRecord.query.count() == 2

    assert agency_stock(app, product_id) == 7
    assert cache.get_unsynced_waste_records() == []


def test_sync_survives_an_unexpected_error(app, cache, make_product, offline, monkeypatch):
    from fournil.routes import utils

    product_id = make_product(stock=10)
    adjust = utils.adjust_agency_stock

    def flaky_adjust(product, agency, delta):
        if delta == -2:
            raise TypeError("malformed quantity")
        return adjust(product, agency, delta)

    with app.app_context():
        save_waste_record(cache, waste(product_id, quantity=2))
        save_waste_record(cache, waste(product_id, quantity=1))

        monkeypatch.setattr(utils, 'adjust_agency_stock', flaky_adjust)
        result = sync_waste_records(cache)
        assert WasteRecord.query.count() == 1

    assert result == (1, 1)
    assert len(cache.get_unsynced_waste_records()) == 1
    assert agency_stock(app, product_id) == 9
