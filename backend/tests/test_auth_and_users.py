import logging

from fastapi.testclient import TestClient

from arflow import services
from arflow.main import app


def test_register_login_and_me(client, register):
    headers = register()
    r = client.get('/api/auth/me', headers=headers)
    assert r.status_code == 200
    me = r.json()
    assert me['email'] == 'owner@acme.test'
    assert me['role'] == 'ADMIN'
    assert me['full_name'] == 'Olive Owner'
    assert 'password_hash' not in me

    login = client.post('/api/auth/login', json={'email': 'owner@acme.test', 'password': 'supersecret'})
    assert login.status_code == 200
    assert login.json()['token_type'] == 'bearer'


def test_login_rejects_bad_password(client, register):
    register()
    r = client.post('/api/auth/login', json={'email': 'owner@acme.test', 'password': 'wrong-password'})
    assert r.status_code == 401


def test_duplicate_email_is_rejected(client, register):
    register()
    r = client.post('/api/auth/register', json={
        'email': 'owner@acme.test', 'password': 'supersecret', 'organization_name': 'Other',
    })
    assert r.status_code == 400
    assert r.json()['detail'] == 'Email already registered'


def test_protected_routes_require_token(client):
    r = client.get('/api/customers')
    assert r.status_code in (401, 403)
    r = client.get('/api/customers', headers={'Authorization': 'Bearer not-a-token'})
    assert r.status_code == 401


def test_organizations_get_unique_slugs(client, register):
    a = register('a@acme.test', 'Acme Corp')
    b = register('b@acme.test', 'Acme Corp')
    slug_a = client.get('/api/organization', headers=a).json()['slug']
    slug_b = client.get('/api/organization', headers=b).json()['slug']
    assert slug_a == 'acme-corp'
    assert slug_b == 'acme-corp-2'


def test_profile_and_notification_updates(client, admin):
    r = client.put('/api/auth/me', json={'first_name': 'Ada'}, headers=admin)
    assert r.json()['first_name'] == 'Ada'
    assert r.json()['last_name'] == 'Owner'
    r = client.put('/api/auth/me/notifications', json={'statement_alerts': True, 'invoice_alerts': False},
                   headers=admin)
    body = r.json()
    assert body['statement_alerts'] is True
    assert body['invoice_alerts'] is False
    assert body['payment_alerts'] is True


def test_customer_users_cannot_manage(client, admin, customer):
    r = client.post('/api/users', json={'email': 'portal@globex.test', 'password': 'portalpass', 'role': 'CUSTOMER'},
                    headers=admin)
    assert r.status_code == 400
    r = client.post('/api/users', json={
        'email': 'portal@globex.test', 'password': 'portalpass', 'role': 'CUSTOMER', 'customer_id': customer['id'],
    }, headers=admin)
    assert r.status_code == 201, r.text
    login = client.post('/api/auth/login', json={'email': 'portal@globex.test', 'password': 'portalpass'})
    portal = {'Authorization': f"Bearer {login.json()['access_token']}"}

    r = client.post('/api/customers', json={'company_name': 'Nope'}, headers=portal)
    assert r.status_code == 403
    assert r.json()['detail'] == 'Only admins can create customers'
    assert client.get('/api/users', headers=portal).status_code == 403


def test_admin_cannot_demote_or_delete_self(client, admin):
    me = client.get('/api/auth/me', headers=admin).json()
    r = client.put(f"/api/users/{me['id']}", json={'role': 'CUSTOMER'}, headers=admin)
    assert r.status_code == 400
    r = client.delete(f"/api/users/{me['id']}", headers=admin)
    assert r.status_code == 400
    assert r.json()['detail'] == 'You cannot delete your own account'


def test_team_crud(client, admin):
    r = client.post('/api/users', json={'email': 'clerk@acme.test', 'password': 'clerkpass1', 'first_name': 'Cy'},
                    headers=admin)
    assert r.status_code == 201
    user_id = r.json()['id']
    assert len(client.get('/api/users', headers=admin).json()) == 2
    r = client.put(f'/api/users/{user_id}', json={'last_name': 'Clerk'}, headers=admin)
    assert r.json()['full_name'] == 'Cy Clerk'
    assert client.delete(f'/api/users/{user_id}', headers=admin).status_code == 204
    assert len(client.get('/api/users', headers=admin).json()) == 1


def test_update_organization_profile(client, admin):
    r = client.put('/api/organization', json={'phone': '555-0100', 'website': 'https://acme.test'}, headers=admin)
    assert r.status_code == 200
    assert r.json()['phone'] == '555-0100'
    r = client.put('/api/organization', json={'website': 'not a url'}, headers=admin)
    assert r.status_code == 422


def test_health_and_request_id(client):
    r = client.get('/health', headers={'X-Request-ID': 'abc123'})
    assert r.json() == {'status': 'ok'}
    assert r.headers['X-Request-ID'] == 'abc123'


def test_unhandled_errors_are_logged_with_request_id(admin, monkeypatch, caplog):
    def boom(self, user, search=None, status=None):
        raise RuntimeError('database went away')

    monkeypatch.setattr(services.CustomerService, 'list', boom)
    client = TestClient(app, raise_server_exceptions=False)
    with caplog.at_level(logging.ERROR, logger='arflow.api'):
        r = client.get('/api/customers', headers={**admin, 'X-Request-ID': 'req-42'})
    assert r.status_code == 500
    assert r.json() == {'detail': 'Internal server error'}
    assert r.headers['X-Request-ID'] == 'req-42'
    assert 'unhandled error on /api/customers request_id=req-42' in caplog.text
