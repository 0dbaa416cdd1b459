from datetime import date, datetime, timedelta

import pandas as pd
import pytest

import cli
from app import create_app
from models import Facility, Member, Plan, Transaction, User, db


@pytest.fixture()
def database(tmp_path, monkeypatch):
    """A file-backed database with one facility and a few hours of income."""
    url = f"sqlite:///{tmp_path / 'gym.db'}"
    monkeypatch.setenv('DATABASE_URL', url)
    app = create_app({'SQLALCHEMY_DATABASE_URI': url, 'TESTING': True})
    now = datetime.now()
    with app.app_context():
        owner = User(username='owner', password_hash='x')
        db.session.add(owner)
        db.session.flush()
        facility = Facility(name='Iron Temple', owner_id=owner.id)
        db.session.add(facility)
        db.session.flush()
        plan = Plan(facility_id=facility.id, name='Monthly', duration_days=30, price=1000)
        member = Member(facility_id=facility.id, full_name='Asha Rao', admission_date=date(2024, 1, 10))
        db.session.add_all([plan, member])
        db.session.flush()
        db.session.add_all([
            Transaction(facility_id=facility.id, member_id=member.id, plan_id=plan.id, amount=400,
                        created_at=now - timedelta(hours=2)),
            Transaction(facility_id=facility.id, member_id=member.id, plan_id=plan.id, amount=600,
                        status='pending', created_at=now - timedelta(hours=1)),
        ])
        db.session.commit()
        facility_id = facility.id
        db.session.remove()
        db.engine.dispose()
    return facility_id


def test_report_prints_summary(database, capsys):
    code = cli.main(['report', '--facility', str(database), '--timeline', 'last7Days', '--symbol', '$'])
    assert code == 0
    out = capsys.readouterr().out
    assert 'last7Days' in out
    assert 'Income:' in out and '$400.00' in out
    assert 'Pending balance:' in out and '$600.00' in out
    assert 'date' in out and 'amount' in out


def test_export_writes_xlsx(database, tmp_path, capsys):
    out_file = tmp_path / 'tx.xlsx'
    assert cli.main(['export', '--facility', str(database), '--out', str(out_file)]) == 0
    assert 'Exported 2 transactions' in capsys.readouterr().out
    df = pd.read_excel(out_file)
    assert sorted(df['Status']) == ['pending', 'received']
    assert set(df['Member']) == {'Asha Rao'}


def test_check_db_counts_rows(database, capsys):
    assert cli.main(['check-db']) == 0
    out = capsys.readouterr().out
    assert 'transactions: 2' in out
    assert 'facility: 1' in out


def test_report_on_missing_schema_exits_1(tmp_path, monkeypatch, capsys):
    monkeypatch.setenv('DATABASE_URL', f"sqlite:///{tmp_path / 'empty.db'}")
    monkeypatch.setenv('REPORT_FETCH_RETRIES', '0')
    assert cli.main(['report', '--facility', '1']) == 1
    assert 'Report failed' in capsys.readouterr().out
    assert cli.main(['check-db']) == 1


def test_store_uses_configured_timeout_and_retries(monkeypatch):
    monkeypatch.setenv('REPORT_FETCH_TIMEOUT_MS', '1234')
    monkeypatch.setenv('REPORT_FETCH_RETRIES', '3')
    store = cli.store_for(session=None)
    assert store.timeout_ms == 1234
    assert store.retries == 3


def test_no_command_prints_help(capsys):
    assert cli.main([]) == 0
    assert 'report' in capsys.readouterr().out
