from datetime import datetime, timedelta
from io import BytesIO

import pandas as pd
import pytest

from models import Plan, Transaction, db
from store import FetchFailure


class BrokenStore:
    def fetch_transactions(self, facility_id, window, plan_id=None, search=None):
        raise FetchFailure('Failed to fetch transactions', facility_id)


@pytest.fixture()
def income(app, facility_id, member_id, plan_id):
    """Two received payments and one open due, all within the last few hours."""
    now = datetime.now()
    with app.app_context():
        yearly = Plan(facility_id=facility_id, name='Yearly', duration_days=365, price=9000)
        db.session.add(yearly)
        db.session.flush()
        db.session.add_all([
            Transaction(facility_id=facility_id, member_id=member_id, plan_id=plan_id, amount=300,
                        created_at=now - timedelta(hours=3)),
            Transaction(facility_id=facility_id, member_id=member_id, plan_id=yearly.id, amount=900,
                        created_at=now - timedelta(hours=2)),
            Transaction(facility_id=facility_id, member_id=member_id, plan_id=plan_id, amount=100,
                        status='pending', created_at=now - timedelta(hours=1)),
        ])
        db.session.commit()
        return {'plan_id': plan_id, 'yearly_id': yearly.id}


def test_transactions_api_summary(client, facility_id, income):
    res = client.get(f'/api/{facility_id}/transactions?timeline=allTime')
    assert res.status_code == 200
    body = res.get_json()
    assert body['ok'] is True
    assert body['timelineFilter'] == 'allTime'
    assert body['income'] == 1200.0
    assert body['totalPendingBalance'] == 100.0
    assert body['percentChange'] is None
    assert body['previousWindow'] is None
    assert body['percentBadge']['label'] == 'n/a'
    assert body['ring']['received_fraction'] == pytest.approx(1200 / 1300)
    assert [t['amount'] for t in body['transactions']] == [100.0, 900.0, 300.0]
    assert body['transactions'][0]['user'] == 'Asha Rao'
    assert sum(p['amount'] for p in body['dailyEarnings']) == pytest.approx(1200.0)


def test_transactions_api_plan_filter(client, facility_id, income):
    res = client.get(f"/api/{facility_id}/transactions?timeline=last7Days&plan={income['yearly_id']}")
    body = res.get_json()
    assert body['planFilter'] == str(income['yearly_id'])
    assert body['income'] == 900.0
    assert body['totalPendingBalance'] == 0.0
    assert body['previousWindow'] is not None


def test_transactions_api_defaults(client, facility_id):
    body = client.get(f'/api/{facility_id}/transactions?timeline=fortnight&plan=gold').get_json()
    assert body['timelineFilter'] == 'today'
    assert body['planFilter'] == 'all'
    assert body['income'] == 0.0
    assert body['transactions'] == []


def test_transactions_api_search(client, facility_id, income):
    body = client.get(f'/api/{facility_id}/transactions?timeline=allTime&search=nobody').get_json()
    assert body['searchTerm'] == 'nobody'
    assert body['transactions'] == []


def test_fetch_failure_is_retryable_json(app, client, facility_id):
    app.config['TRANSACTION_STORE_FACTORY'] = BrokenStore
    res = client.get(f'/api/{facility_id}/transactions')
    assert res.status_code == 503
    body = res.get_json()
    assert body['ok'] is False
    assert body['retryable'] is True
    assert body['error'] == 'Failed to fetch transactions'


def test_fetch_failure_page_offers_retry(app, client, facility_id):
    app.config['TRANSACTION_STORE_FACTORY'] = BrokenStore
    res = client.get(f'/{facility_id}/transactions?timeline=yesterday')
    assert res.status_code == 503
    html = res.get_data(as_text=True)
    assert "Couldn't load transactions." in html
    assert 'Retry' in html
    assert client.get(f'/{facility_id}/report').status_code == 503


def test_transactions_page_renders(client, facility_id, income):
    res = client.get(f'/{facility_id}/transactions?timeline=allTime')
    assert res.status_code == 200
    assert res.headers['Cache-Control'] == 'private, max-age=60'
    html = res.get_data(as_text=True)
    assert '₹1,200.00' in html
    assert 'Total Pending Balance' in html
    assert 'No previous period to compare against' in html
    assert 'Asha Rao' in html


def test_report_page_and_api(client, facility_id, income):
    assert client.get(f'/{facility_id}/report').status_code == 200
    body = client.get(f'/api/{facility_id}/report').get_json()
    assert body['metrics'] == {'totalReceived': 1200.0, 'pendingPayment': 100.0}
    assert len(body['earningSummary']) == 7
    assert len(body['transactions']) == 3


def test_home_redirects_to_first_facility(client, facility_id):
    res = client.get('/')
    assert res.status_code == 302
    assert res.headers['Location'].endswith(f'/{facility_id}/report')


def test_add_transaction_updates_balance(client, facility_id, member_id):
    res = client.post(f'/api/{facility_id}/transactions', json={
        'amount': 250, 'status': 'pending', 'member_id': member_id, 'note': 'locker fee',
    })
    assert res.status_code == 201
    member = client.get(f'/api/{facility_id}/members/{member_id}').get_json()['member']
    assert member['balance'] == 250.0
    bad = client.post(f'/api/{facility_id}/transactions', json={'amount': 10, 'status': 'refunded'})
    assert bad.status_code == 400


def test_export_xlsx(client, facility_id, income):
    res = client.get(f'/api/{facility_id}/transactions/export')
    assert res.status_code == 200
    assert res.mimetype == 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet'
    assert 'transactions_' in res.headers['Content-Disposition']
    df = pd.read_excel(BytesIO(res.data))
    assert list(df.columns) == ['ID', 'Date', 'Member', 'Plan', 'Type', 'Status', 'Amount']
    assert sorted(df['Amount'].tolist()) == [100.0, 300.0, 900.0]
    assert set(df['Plan']) == {'Monthly', 'Yearly'}


def test_security_headers(client, facility_id):
    res = client.get(f'/api/{facility_id}/transactions')
    assert res.headers['X-Frame-Options'] == 'DENY'
    assert res.headers['X-Content-Type-Options'] == 'nosniff'
    assert 'Strict-Transport-Security' not in res.headers
