from sqlalchemy.exc import OperationalError

from fournil import offline_cache

from conftest import agency_stock


def test_add_and_list_products(client, app):
    response = client.post('/products/add', json={
        'name': 'Baguette', 'price': 150, 'fresh_weight': 0.25, 'stock': 30, 'department': 'Boulangerie'
    })
    assert response.status_code == 201
    product = response.get_json()['product']
    assert product['stock'] == 30

    client.post('/products/add', json={'name': 'Savon', 'price': 500, 'department': 'Boutique'})

    names = [p['name'] for p in client.get('/products?department=Boulangerie').get_json()['products']]
    assert names == ['Baguette']


def test_add_product_validation(client):
    assert client.post('/products/add', json={'name': 'X', 'department': 'Garage'}).status_code == 400
    assert client.post('/products/add', json={'name': '', 'price': 10}).status_code == 400


def test_set_stock(client, app, make_product):
    product_id = make_product(stock=12)
    response = client.post(f'/products/{product_id}/stock', json={'quantity': 4})
    assert response.status_code == 200
    assert agency_stock(app, product_id) == 4
    assert client.post(f'/products/{product_id}/stock', json={'quantity': -1}).status_code == 400


def test_available_products_fall_back_to_cache(client, make_product, monkeypatch):
    make_product(name='Baguette', stock=3)
    first = client.get('/products/available').get_json()
    assert first['from_cache'] is False

    def unreachable(*args, **kwargs):
        raise OperationalError("SELECT", {}, Exception("connection refused"))

    class _Product:
        class query:
            filter_by = staticmethod(unreachable)

    monkeypatch.setattr(offline_cache, 'Product', _Product)
    second = client.get('/products/available').get_json()
    assert second['from_cache'] is True
    assert [p['name'] for p in second['products']] == ['Baguette']


def test_delete_referenced_product_is_refused(client, make_product):
    product_id = make_product(stock=5)
    client.post('/waste/add', json={'product_id': product_id, 'quantity': 1})
    assert client.post(f'/products/delete/{product_id}').status_code == 409

    other_id = make_product(name='Croissant')
    assert client.post(f'/products/delete/{other_id}').status_code == 200
