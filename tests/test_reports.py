from datetime import datetime, timedelta

import pytest

from assignment import assign_full
from conftest import vendor_actor
from errors import ValidationError, VendorNotFound
from fulfillment import Actor
from models import db, Order, VendorAssignment, utcnow, ORDER_PROCESSING, ASSIGNMENT_COMPLETED, ASSIGNMENT_CANCELLED
from reports import list_orders, vendor_metrics


def _order(store, ext_id, day, **fields):
    order = Order(store_id=store.id, external_order_id=ext_id, order_number=f"#{ext_id}",
                  order_status=ORDER_PROCESSING, total_amount=fields.pop('total', 100),
                  order_date=datetime(2024, 3, day), **fields)
    db.session.add(order)
    db.session.commit()
    return order


def _numbers(result):
    return [o['external_order_id'] for o in result['orders']]


@pytest.fixture
def catalog(make_store):
    north = make_store(name='North')
    south = make_store(name='South', platform='woocommerce')
    return {
        'north': north,
        'south': south,
        '1001': _order(north, '1001', 1, customer_name='Ada Lovelace'),
        '1002': _order(north, '1002', 5, customer_email='grace@example.com'),
        '1003': _order(south, '1003', 9),
    }


def test_list_orders_newest_first(catalog, operator):
    result = list_orders({}, operator)

    assert _numbers(result) == ['1003', '1002', '1001']
    assert result['pagination'] == {'page': 1, 'limit': 50, 'total': 3, 'pages': 1}
    assert result['orders'][0]['store_name'] == 'South'
    assert 'items' not in result['orders'][0]


def test_list_orders_filters(catalog, operator):
    assert _numbers(list_orders({'store_id': str(catalog['north'].id)}, operator)) == ['1002', '1001']
    assert _numbers(list_orders({'search': 'lovelace'}, operator)) == ['1001']
    assert _numbers(list_orders({'search': 'GRACE@'}, operator)) == ['1002']
    assert _numbers(list_orders({'date_from': '2024-03-04', 'date_to': '2024-03-09'}, operator)) == ['1003', '1002']
    assert _numbers(list_orders({'status': 'assigned'}, operator)) == []


def test_list_orders_pagination(catalog, operator):
    result = list_orders({'page': '2', 'limit': '2'}, operator)

    assert _numbers(result) == ['1001']
    assert result['pagination']['pages'] == 2

    with pytest.raises(ValidationError):
        list_orders({'limit': '500'}, operator)
    with pytest.raises(ValidationError):
        list_orders({'page': 'two'}, operator)
    with pytest.raises(ValidationError):
        list_orders({'date_from': 'not a date'}, operator)


def test_vendor_sees_only_assigned_orders(catalog, operator, make_vendor):
    mine = make_vendor(company_name='Acme Print')
    other = make_vendor()
    assign_full(catalog['1002'].id, mine.id)
    assign_full(catalog['1003'].id, other.id)

    result = list_orders({'vendor_id': str(other.id)}, vendor_actor(mine))

    assert _numbers(result) == ['1002']
    assert result['orders'][0]['vendor_assignments'][0]['company_name'] == 'Acme Print'
    assert _numbers(list_orders({'vendor_id': str(other.id)}, operator)) == ['1003']
    assert _numbers(list_orders({'status': 'assigned'}, operator)) == ['1003', '1002']

    with pytest.raises(VendorNotFound):
        list_orders({}, Actor(999, 'vendor'))


def test_vendor_metrics_by_day(make_order, make_vendor):
    vendor = make_vendor(commission_rate=10)
    today = utcnow().replace(hour=12, minute=0, second=0, microsecond=0)
    plan = [
        ('1001', '100.00', today, ASSIGNMENT_COMPLETED),
        ('1002', '300.00', today, None),
        ('1003', '50.00', today - timedelta(days=3), ASSIGNMENT_CANCELLED),
        ('1004', '80.00', today - timedelta(days=60), None),
    ]
    for ext_id, price, assigned_at, status in plan:
        order = make_order(items=[('A', 1, price)], external_order_id=ext_id)
        assignment = assign_full(order.id, vendor.id)
        assignment.assigned_at = assigned_at
        if status:
            assignment.status = status
    db.session.commit()

    result = vendor_metrics(vendor.id, '30')

    assert result['period'] == 30
    assert result['metrics'] == [
        {'date': today.date().isoformat(), 'assignments': 2, 'completed': 1, 'commission': 40.0,
         'avg_order_value': 200.0},
        {'date': (today - timedelta(days=3)).date().isoformat(), 'assignments': 1, 'completed': 0,
         'commission': 0.0, 'avg_order_value': 50.0},
    ]
    assert result['totals'] == {'assignments': 3, 'completed': 1, 'commission': 40.0}
    assert vendor_metrics(vendor.id, 90)['totals']['assignments'] == 4
    assert VendorAssignment.query.count() == 4


def test_vendor_metrics_rejects_bad_input(make_vendor):
    vendor = make_vendor()

    with pytest.raises(VendorNotFound):
        vendor_metrics(999)
    with pytest.raises(ValidationError):
        vendor_metrics(vendor.id, 0)
    with pytest.raises(ValidationError):
        vendor_metrics(vendor.id, 'month')
    assert vendor_metrics(vendor.id)['metrics'] == []
