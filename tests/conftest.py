from datetime import date

import pytest
from sqlalchemy import text
from werkzeug.security import generate_password_hash

from app import create_app
from models import Facility, Member, Plan, User, db


@pytest.fixture()
def app():
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite://',
        'SESSION_COOKIE_SECURE': False,
        'SECRET_KEY': 'test-secret',
        'ADMIN_USERNAME': 'admin',
        'ADMIN_PASSWORD': 'admin123',
    })
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def ctx(app):
    with app.app_context():
        yield


@pytest.fixture()
def owner(app):
    with app.app_context():
        user = User(username='owner', password_hash=generate_password_hash('pw123456'), role='staff')
        db.session.add(user)
        db.session.commit()
        return user.id


@pytest.fixture()
def facility_id(app, owner):
    with app.app_context():
        f = Facility(name='Iron Temple', owner_id=owner)
        db.session.add(f)
        db.session.commit()
        return f.id


@pytest.fixture()
def client(app, owner):
    with app.test_client() as c:
        with c.session_transaction() as sess:
            sess['user_id'] = owner
            sess['username'] = 'owner'
        yield c


@pytest.fixture()
def plan_id(app, facility_id):
    with app.app_context():
        p = Plan(facility_id=facility_id, name='Monthly', duration_days=30, price=1000)
        db.session.add(p)
        db.session.commit()
        return p.id


@pytest.fixture()
def member_id(app, facility_id):
    with app.app_context():
        m = Member(facility_id=facility_id, full_name='Asha Rao', email='asha@example.com',
                   phone='9990001111', admission_date=date(2024, 1, 10), balance=0)
        db.session.add(m)
        db.session.commit()
        return m.id


@pytest.fixture()
def enforce_foreign_keys(app):
    """SQLite skips FK checks unless asked; the in-memory engine keeps one connection."""
    with app.app_context():
        db.session.execute(text('PRAGMA foreign_keys=ON'))
        db.session.commit()
