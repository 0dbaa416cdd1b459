import pytest
from werkzeug.security import generate_password_hash

from models import User, db


@pytest.fixture()
def trainer_user(app):
    with app.app_context():
        user = User(username='coach', password_hash=generate_password_hash('coach123'))
        db.session.add(user)
        db.session.commit()
        return user.id


@pytest.fixture()
def trainer_client(app, trainer_user):
    c = app.test_client()
    with c.session_transaction() as sess:
        sess['user_id'] = trainer_user
        sess['username'] = 'coach'
    yield c


def assign(client, facility_id, username='coach'):
    return client.post(f'/api/{facility_id}/trainers', json={'username': username})


def test_unassigned_user_has_no_access(trainer_client, facility_id):
    assert trainer_client.get(f'/api/{facility_id}/members').status_code == 409
    assert trainer_client.get('/api/facilities').get_json()['facilities'] == []


def test_owner_assigns_and_lists_trainers(client, facility_id, trainer_user):
    res = assign(client, facility_id)
    assert res.status_code == 201
    assert res.get_json()['trainer']['username'] == 'coach'
    trainers = client.get(f'/api/{facility_id}/trainers').get_json()['trainers']
    assert [t['user_id'] for t in trainers] == [trainer_user]


def test_assign_rejects_unknown_duplicate_and_owner(client, facility_id, trainer_user):
    assert assign(client, facility_id, 'ghost').status_code == 404
    assert assign(client, facility_id).status_code == 201
    dup = assign(client, facility_id)
    assert dup.status_code == 400
    assert dup.get_json()['error'] == 'Trainer already assigned'
    assert assign(client, facility_id, 'owner').status_code == 400


def test_trainer_works_the_facility_but_not_owner_areas(client, trainer_client, facility_id, plan_id):
    assign(client, facility_id)
    facilities = trainer_client.get('/api/facilities').get_json()['facilities']
    assert [(f['id'], f['is_owner']) for f in facilities] == [(facility_id, False)]

    res = trainer_client.post(f'/api/{facility_id}/members', json={'full_name': 'Walk In'})
    assert res.status_code == 201
    assert trainer_client.get(f'/api/{facility_id}/transactions?timeline=allTime').status_code == 200
    assert trainer_client.get(f'/{facility_id}/report').status_code == 200

    denied = trainer_client.post(f'/api/{facility_id}/plans', json={'name': 'Gold', 'duration_days': 30, 'price': 10})
    assert denied.status_code == 403
    assert denied.get_json() == {'ok': False, 'error': 'Owner access only'}
    assert trainer_client.delete(f'/api/{facility_id}/plans/{plan_id}').status_code == 403
    assert trainer_client.get(f'/api/{facility_id}/trainers').status_code == 403
    assert trainer_client.get(f'/api/{facility_id}/plans').status_code == 200


def test_trainer_home_redirects_to_assigned_facility(client, trainer_client, facility_id):
    assign(client, facility_id)
    res = trainer_client.get('/')
    assert res.headers['Location'].endswith(f'/{facility_id}/report')


def test_removed_trainer_loses_access(client, trainer_client, facility_id):
    tid = assign(client, facility_id).get_json()['trainer']['id']
    assert client.delete(f'/api/{facility_id}/trainers/{tid}').status_code == 200
    assert trainer_client.get(f'/api/{facility_id}/members').status_code == 409
    assert client.delete(f'/api/{facility_id}/trainers/{tid}').status_code == 404
