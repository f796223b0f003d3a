import json

import httpx
import pytest
from sqlalchemy import event
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from arflow import acumatica_services, models
from arflow.acumatica.client import AcumaticaClient

BASE = '/api/integrations/acumatica'


def invoice(ref, customer, amount, balance, day='2026-02-01T00:00:00+00:00'):
    return {
        'id': f'guid-{ref}',
        'ReferenceNbr': {'value': ref},
        'CustomerID': {'value': customer} if customer else {},
        'Amount': {'value': amount},
        'Balance': {'value': balance},
        'Date': {'value': day},
        'Description': {'value': f'Invoice {ref}'},
        'FinancialDetails': {'Branch': {'value': 'MAIN'}},
    }


class FakeAcumatica:
    """Routes requests the way an Acumatica tenant would answer them."""

    def __init__(self):
        self.invoices = [
            invoice('AR001', 'C001', 500.0, 350.0),
            invoice('AR002', 'C001', 200.0, 200.0),
            invoice('AR003', None, 90.0, 90.0),
            invoice('AR004', 'C002', 'abc', 10.0),
        ]
        self.methods = [
            {'PaymentMethodID': {'value': 'CHECK'}, 'Description': {'value': 'Check'},
             'UseInAR': {'value': True}, 'Active': {'value': True},
             'AllowedCashAccounts': [
                 {'CashAccount': {'value': '10200'}, 'Description': {'value': 'Operating'},
                  'Branch': {'value': 'MAIN'}, 'UseInAR': {'value': True}, 'ARDefault': {'value': True}},
                 {'CashAccount': {'value': '10100'}, 'UseInAR': {'value': False}},
             ]},
            {'PaymentMethodID': {'value': 'VENDORPAY'}, 'Description': {'value': 'Vendor'},
             'UseInAR': {'value': False}, 'Active': {'value': True}},
        ]
        self.requests = []
        self.payments = []
        self.login_status = 204
        self.payment_error = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.requests.append((request.method, path, dict(request.url.params)))
        if path == '/entity/auth/login':
            return httpx.Response(self.login_status)
        if path == '/entity/auth/logout':
            return httpx.Response(204)
        if path.endswith('adHocSchema'):
            return httpx.Response(200, json={'ReferenceNbr': {'type': 'String'}, 'Amount': {'type': 'Decimal'},
                                             'id': {'type': 'Guid'}})
        if path.endswith('/SalesInvoice') and request.method == 'GET':
            return httpx.Response(200, json=self.invoices)
        if path.endswith('/PaymentMethod'):
            return httpx.Response(200, json=self.methods)
        if path.endswith('/Payment') and request.method == 'PUT':
            if self.payment_error:
                return httpx.Response(422, json={'exceptionMessage': self.payment_error})
            self.payments.append(json.loads(request.content))
            return httpx.Response(200, json={'ReferenceNbr': {'value': '000123'}, 'Status': {'value': 'Balanced'}})
        if path.endswith('/Payment/ReleasePayment'):
            return httpx.Response(200, json={'Status': {'value': 'Closed'}})
        return httpx.Response(404, json={'message': f'No route for {path}'})

    def logins(self):
        return [r for r in self.requests if r[1] == '/entity/auth/login']

    def last_get(self, suffix):
        return [r for r in self.requests if r[0] == 'GET' and r[1].endswith(suffix)][-1]


@pytest.fixture
def erp(monkeypatch):
    fake = FakeAcumatica()

    def client_for(integration):
        return AcumaticaClient(integration.instance_url, integration.api_version, integration.company_id,
                               'admin', 'secret', transport=httpx.MockTransport(fake))

    monkeypatch.setattr(acumatica_services, 'client_for', client_for)
    return fake


@pytest.fixture
def connected(client, admin, erp):
    r = client.put(BASE, json={'instance_url': 'https://acme.acumatica.test/', 'company_id': 'Acme',
                               'username': 'admin', 'password': 'secret'}, headers=admin)
    assert r.status_code == 200, r.text
    assert client.put(f'{BASE}/data-source', json={}, headers=admin).status_code == 200
    r = client.post(f'{BASE}/activate', headers=admin)
    assert r.json()['status'] == 'ACTIVE'
    return admin


def _sync(client, headers):
    r = client.post(f'{BASE}/sync', json={}, headers=headers)
    assert r.status_code == 200, r.text
    return r.json()


def _documents(client, headers):
    items = client.get('/api/documents?page_size=100', headers=headers).json()['items']
    return {d['document_number']: d for d in items}


def test_connection_settings(client, admin, erp):
    r = client.put(BASE, json={'instance_url': 'https://acme.acumatica.test/', 'company_id': 'Acme',
                               'username': 'admin', 'password': 'secret'}, headers=admin)
    body = r.json()
    assert body['instance_url'] == 'https://acme.acumatica.test'
    assert body['password'] == '****'
    assert body['status'] == 'INACTIVE'
    assert body['api_version'] == '23.200.001'

    assert client.post(f'{BASE}/test', headers=admin).json() == {
        'success': True, 'message': 'Successfully connected to Acumatica'}
    erp.login_status = 401
    result = client.post(f'{BASE}/test', headers=admin).json()
    assert result['success'] is False
    assert result['message'] == 'Invalid Acumatica credentials'
    assert client.get(BASE, headers=admin).json()['connection_error_message'] == 'Invalid Acumatica credentials'


def test_new_connection_requires_password(client, admin):
    r = client.put(BASE, json={'instance_url': 'https://acme.acumatica.test', 'company_id': 'Acme',
                               'username': 'admin', 'password': '****'}, headers=admin)
    assert r.status_code == 400


def test_activation_needs_data_source(client, admin, erp):
    client.put(BASE, json={'instance_url': 'https://acme.acumatica.test', 'company_id': 'Acme',
                           'username': 'admin', 'password': 'secret'}, headers=admin)
    assert client.post(f'{BASE}/activate', headers=admin).status_code == 400
    assert client.post(f'{BASE}/sync', json={}, headers=admin).status_code == 400


def test_default_data_source(client, connected):
    body = client.get(BASE, headers=connected).json()
    assert body['data_source_entity'] == 'SalesInvoice'
    assert body['field_mappings']['unique_id'] == {'source_field': 'ReferenceNbr'}
    assert body['field_mappings']['branch'] == {'source_field': 'FinancialDetails/Branch'}
    assert body['filter_config']['balance_filter'] == {'field': 'Balance', 'operator': 'gt', 'value': 0}


def test_delete_integration(client, connected):
    assert client.delete(BASE, headers=connected).status_code == 204
    assert client.get(BASE, headers=connected).json() == {'configured': False}


def test_schema_discovery_is_cached(client, connected, erp):
    entities = client.get(f'{BASE}/entities', headers=connected).json()
    assert [e['name'] for e in entities] == ['SalesInvoice', 'SalesOrder']

    fields = client.get(f'{BASE}/entities/SalesInvoice/schema', headers=connected).json()
    by_name = {f['name']: f for f in fields}
    assert 'id' not in by_name
    assert by_name['Amount']['type'] == 'decimal'
    assert by_name['ReferenceNbr']['sample_value'] == 'AR001'
    assert by_name['FinancialDetails/Branch']['sample_value'] == 'MAIN'
    assert erp.last_get('/SalesInvoice')[2]['$expand'] == 'FinancialDetails,BillingSettings'

    seen = len(erp.requests)
    client.get(f'{BASE}/entities/SalesInvoice/schema', headers=connected)
    assert len(erp.requests) == seen
    client.get(f'{BASE}/entities/SalesInvoice/schema?refresh=true', headers=connected)
    assert len(erp.requests) > seen


def test_sample_preview_reports_bad_records(client, connected):
    preview = client.get(f'{BASE}/sample?limit=4', headers=connected).json()
    assert preview[0]['extracted']['unique_id'] == 'AR001'
    assert preview[0]['extracted']['balance'] == 350.0
    assert preview[3]['extracted'] is None
    assert "Invalid numeric value" in preview[3]['error']


def test_sync_imports_documents_and_customers(client, connected, erp):
    log = _sync(client, connected)
    assert log['status'] == 'PARTIAL_SUCCESS'
    assert log['invoices_fetched'] == 4
    assert log['documents_created'] == 2
    assert log['customers_created'] == 1
    assert log['invoices_skipped'] == 1
    assert log['errors_count'] == 1

    params = erp.last_get('/SalesInvoice')[2]
    assert params['$top'] == '1000'
    assert params['$expand'] == 'FinancialDetails'
    assert 'Balance gt 0' in params['$filter']
    assert len(erp.logins()) == 1
    assert erp.requests[-1][1] == '/entity/auth/logout'

    docs = _documents(client, connected)
    partial = docs['AR001']
    assert partial['status'] == 'PARTIAL'
    assert partial['amount_paid'] == 150.0
    assert partial['balance_due'] == 350.0
    assert partial['due_date'] == '2026-03-03'
    assert partial['source_type'] == 'INTEGRATION'
    assert partial['external_branch'] == 'MAIN'
    assert docs['AR002']['status'] == 'OPEN'

    customers = client.get('/api/customers', headers=connected).json()
    assert [(c['company_name'], c['external_id'], c['current_balance']) for c in customers] == [('C001', 'C001', 550.0)]
    mappings = client.get(f'{BASE}/customer-mappings', headers=connected).json()
    assert mappings[0]['status'] == 'MATCHED'
    assert mappings[0]['match_type'] == 'AUTO_PLACEHOLDER'

    status = client.get(f"{BASE}/sync/{log['id']}", headers=connected).json()
    assert status['created'] == 2
    assert status['skip_details'] == [{'invoice_ref': 'AR003', 'reason': 'Missing customer ID'}]
    assert status['error_details'][0]['invoice_ref'] == 'AR004'
    history = client.get(f'{BASE}/sync/history', headers=connected).json()
    assert [h['id'] for h in history] == [log['id']]


def test_failed_record_commit_is_left_out_of_undo(client, connected):
    def fail_for_ar002(session):
        for obj in list(session.identity_map.values()):
            if isinstance(obj, models.ARDocument) and obj.document_number == 'AR002':
                raise SQLAlchemyError('database is locked')

    event.listen(Session, 'before_commit', fail_for_ar002)
    try:
        log = _sync(client, connected)
    finally:
        event.remove(Session, 'before_commit', fail_for_ar002)
    assert log['documents_created'] == 1
    assert log['errors_count'] == 2
    assert {e['invoice_ref'] for e in log['error_details']} == {'AR002', 'AR004'}
    kept = _documents(client, connected)
    assert list(kept) == ['AR001']
    assert log['created_records']['document_ids'] == [kept['AR001']['id']]
    r = client.post(f"{BASE}/sync/{log['id']}/undo", headers=connected)
    assert r.json()['documents_deleted'] == 1

def test_resync_updates_existing_documents(client, connected, erp):
    _sync(client, connected)
    erp.invoices = [invoice('AR001', 'C001', 500.0, 0.0), invoice('AR002', 'C001', 200.0, 200.0)]
    log = _sync(client, connected)
    assert log['status'] == 'SUCCESS'
    assert log['documents_created'] == 0
    assert log['invoices_processed'] == 2
    assert log['customers_created'] == 0
    assert _documents(client, connected)['AR001']['status'] == 'PAID'


def test_integration_documents_are_read_only(client, connected):
    _sync(client, connected)
    doc = _documents(client, connected)['AR002']
    r = client.put(f"/api/documents/{doc['id']}", json={'description': 'edited'}, headers=connected)
    assert r.status_code == 400
    assert r.json()['detail'].startswith('Cannot edit documents created from integrations')
    assert client.delete(f"/api/documents/{doc['id']}", headers=connected).status_code == 400


def test_undo_removes_created_records(client, connected):
    log = _sync(client, connected)
    r = client.post(f"{BASE}/sync/{log['id']}/undo", headers=connected)
    assert r.json() == {'documents_deleted': 2, 'documents_kept': 0, 'customers_deleted': 1, 'customers_kept': 0}
    assert _documents(client, connected) == {}
    assert client.get('/api/customers', headers=connected).json() == []
    assert client.post(f"{BASE}/sync/{log['id']}/undo", headers=connected).status_code == 400
    actions = [e['action'] for e in client.get('/api/audit-logs', headers=connected).json()['items']]
    assert 'sync_undone' in actions


def test_undo_keeps_paid_documents(client, connected):
    log = _sync(client, connected)
    doc = _documents(client, connected)['AR002']
    r = client.post('/api/payments', json={'customer_id': doc['customer_id'], 'amount': 50,
                                           'document_ids': [doc['id']]}, headers=connected)
    assert r.status_code == 201, r.text
    result = client.post(f"{BASE}/sync/{log['id']}/undo", headers=connected).json()
    assert result == {'documents_deleted': 1, 'documents_kept': 1, 'customers_deleted': 0, 'customers_kept': 1}
    assert list(_documents(client, connected)) == ['AR002']


def test_unmapped_customers_can_be_skipped_and_mapped(client, connected, customer, erp):
    r = client.put(f'{BASE}/customer-handling', json={'unmapped_customer_action': 'SKIP'}, headers=connected)
    assert r.json() == {'unmapped_customer_action': 'SKIP', 'default_customer_user_id': None}
    erp.invoices = [invoice('AR001', 'C001', 500.0, 350.0)]
    log = _sync(client, connected)
    assert log['documents_created'] == 0
    assert log['skip_details'] == [{'invoice_ref': 'AR001', 'reason': 'Unmapped customer: C001'}]

    mapping = client.get(f'{BASE}/customer-mappings', headers=connected).json()[0]
    assert mapping['status'] == 'PENDING'
    r = client.put(f"{BASE}/customer-mappings/{mapping['id']}", json={'customer_id': customer['id']},
                   headers=connected)
    assert r.json()['status'] == 'MATCHED'
    assert r.json()['match_type'] == 'MANUAL'

    log = _sync(client, connected)
    assert log['documents_created'] == 1
    assert _documents(client, connected)['AR001']['customer_id'] == customer['id']


def test_ignored_mapping_skips_records(client, connected, erp):
    client.put(f'{BASE}/customer-handling', json={'unmapped_customer_action': 'SKIP'}, headers=connected)
    erp.invoices = [invoice('AR001', 'C001', 500.0, 350.0)]
    _sync(client, connected)
    mapping = client.get(f'{BASE}/customer-mappings', headers=connected).json()[0]
    client.put(f"{BASE}/customer-mappings/{mapping['id']}", json={'ignore': True}, headers=connected)
    log = _sync(client, connected)
    assert log['skip_details'] == [{'invoice_ref': 'AR001', 'reason': 'Ignored customer: C001'}]


def test_default_user_handling_requires_user(client, connected):
    r = client.put(f'{BASE}/customer-handling', json={'unmapped_customer_action': 'DEFAULT_USER'},
                   headers=connected)
    assert r.status_code == 400


def test_payment_methods_and_filter(client, connected, erp):
    result = client.get(f'{BASE}/payment-methods', headers=connected).json()
    assert result['payment_methods'] == [{'id': 'CHECK', 'description': 'Check'}]
    assert result['cash_accounts'] == [{'id': '10200', 'description': 'Operating', 'branch': 'MAIN',
                                        'payment_method': 'CHECK', 'is_ar_default': True}]
    assert client.get(f'{BASE}/payment-methods/discover', headers=connected).json() == [
        {'id': 'CHECK', 'description': 'Check'}]

    r = client.put(f'{BASE}/payment-method-filter', json={'methods': ['CHECK', ' ']}, headers=connected)
    assert r.json() == {'field': 'FinancialDetails/PaymentMethod', 'methods': ['CHECK']}
    _sync(client, connected)
    assert "FinancialDetails/PaymentMethod eq 'CHECK'" in erp.last_get('/SalesInvoice')[2]['$filter']


def _configure_payments(client, headers, auto=False):
    r = client.put(f'{BASE}/payment-config', json={'default_cash_account': '10200', 'default_payment_method': 'CHECK',
                                                   'auto_sync_payments': auto}, headers=headers)
    assert r.status_code == 200, r.text


def _pay(client, headers, doc, amount):
    r = client.post('/api/payments', json={'customer_id': doc['customer_id'], 'amount': amount,
                                           'document_ids': [doc['id']]}, headers=headers)
    assert r.status_code == 201, r.text
    return r.json()


def test_payment_config_is_required(client, connected):
    r = client.put(f'{BASE}/payment-config', json={'default_cash_account': '10200'}, headers=connected)
    assert r.status_code == 400
    _sync(client, connected)
    payment = _pay(client, connected, _documents(client, connected)['AR001'], 100)
    r = client.post(f"/api/payments/{payment['id']}/acumatica/sync", headers=connected)
    assert r.status_code == 400
    assert r.json()['detail'] == 'Acumatica payment configuration is incomplete'


def test_payment_push_and_release(client, connected, erp):
    _sync(client, connected)
    _configure_payments(client, connected)
    payment = _pay(client, connected, _documents(client, connected)['AR001'], 100)

    r = client.post(f"/api/payments/{payment['id']}/acumatica/sync", headers=connected)
    assert r.json() == {'success': True, 'reference_nbr': '000123', 'already_synced': False}
    body = erp.payments[0]
    assert body['CustomerID'] == {'value': 'C001'}
    assert body['CashAccount'] == {'value': '10200'}
    assert body['PaymentMethod'] == {'value': 'CHECK'}
    assert body['DocumentsToApply'] == [{'DocType': {'value': 'Invoice'}, 'ReferenceNbr': {'value': 'AR001'},
                                         'AmountPaid': {'value': 100.0}}]

    again = client.post(f"/api/payments/{payment['id']}/acumatica/sync", headers=connected).json()
    assert again['already_synced'] is True
    assert len(erp.payments) == 1

    released = client.post(f"/api/payments/{payment['id']}/acumatica/release", headers=connected).json()
    assert released == {'success': True, 'reference_nbr': '000123', 'status': 'Closed'}
    stored = client.get(f"/api/payments/{payment['id']}", headers=connected).json()
    assert stored['acumatica_payment_ref'] == '000123'
    assert stored['acumatica_sync_status'] == 'synced'


def test_payment_push_failure_is_recorded(client, connected, erp):
    _sync(client, connected)
    _configure_payments(client, connected)
    payment = _pay(client, connected, _documents(client, connected)['AR002'], 200)
    erp.payment_error = 'Cash account is inactive'

    r = client.post(f"/api/payments/{payment['id']}/acumatica/sync", headers=connected)
    assert r.status_code == 502
    stored = client.get(f"/api/payments/{payment['id']}", headers=connected).json()
    assert stored['acumatica_sync_status'] == 'failed'
    assert 'Cash account is inactive' in stored['acumatica_sync_error']
    assert client.post(f"/api/payments/{payment['id']}/acumatica/release", headers=connected).status_code == 400

    erp.payment_error = None
    r = client.post(f"/api/payments/{payment['id']}/acumatica/retry", headers=connected)
    assert r.json()['reference_nbr'] == '000123'


def test_unlinked_customer_payments_cannot_sync(client, connected, make_invoice):
    _configure_payments(client, connected)
    doc = make_invoice(40)
    payment = _pay(client, connected, doc, 40)
    r = client.post(f"/api/payments/{payment['id']}/acumatica/sync", headers=connected)
    assert r.status_code == 400
    assert r.json()['detail'] == 'Customer is not linked to an Acumatica customer'
    stored = client.get(f"/api/payments/{payment['id']}", headers=connected).json()
    assert stored['acumatica_sync_status'] == 'failed'
    assert stored['acumatica_sync_error'] == 'Customer is not linked to an Acumatica customer'

    r = client.post(f"/api/payments/{payment['id']}/acumatica/retry", headers=connected)
    assert r.status_code == 400
    stored = client.get(f"/api/payments/{payment['id']}", headers=connected).json()
    assert stored['acumatica_sync_status'] == 'failed'
    assert stored['acumatica_sync_error'] == 'Customer is not linked to an Acumatica customer'
    history = client.get(f'{BASE}/sync/history', headers=connected).json()
    assert [(h['sync_type'], h['status']) for h in history] == [('PAYMENT_SYNC', 'FAILED')] * 2


def test_sync_failure_is_recorded_when_integration_inactive(client, connected, make_invoice):
    _configure_payments(client, connected)
    payment = _pay(client, connected, make_invoice(40), 40)
    client.post(f'{BASE}/deactivate', headers=connected)
    r = client.post(f"/api/payments/{payment['id']}/acumatica/sync", headers=connected)
    assert r.status_code == 400
    stored = client.get(f"/api/payments/{payment['id']}", headers=connected).json()
    assert stored['acumatica_sync_status'] == 'failed'
    assert stored['acumatica_sync_error'] == 'Integration is not active'


def test_payments_sync_automatically_when_enabled(client, connected, erp):
    _sync(client, connected)
    _configure_payments(client, connected, auto=True)
    payment = _pay(client, connected, _documents(client, connected)['AR002'], 20)
    assert len(erp.payments) == 1
    stored = client.get(f"/api/payments/{payment['id']}", headers=connected).json()
    assert stored['acumatica_payment_ref'] == '000123'
