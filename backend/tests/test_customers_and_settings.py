def test_customer_crud_and_counts(client, admin, customer, make_invoice):
    make_invoice(40)
    r = client.get('/api/customers', headers=admin)
    assert r.status_code == 200
    rows = r.json()
    assert len(rows) == 1
    assert rows[0]['document_count'] == 1
    assert rows[0]['payment_count'] == 0
    assert rows[0]['current_balance'] == 40.0

    r = client.put(f"/api/customers/{customer['id']}", json={'contact_name': 'Hank', 'status': 'ON_HOLD'},
                   headers=admin)
    assert r.json()['contact_name'] == 'Hank'
    assert r.json()['company_name'] == 'Globex'

    detail = client.get(f"/api/customers/{customer['id']}", headers=admin).json()
    assert len(detail['documents']) == 1
    assert detail['payments'] == []


def test_customer_search(client, admin, customer):
    client.post('/api/customers', json={'company_name': 'Initech'}, headers=admin)
    r = client.get('/api/customers', params={'search': 'init'}, headers=admin)
    assert [c['company_name'] for c in r.json()] == ['Initech']


def test_customer_with_documents_cannot_be_deleted(client, admin, customer, make_invoice):
    make_invoice(10)
    r = client.delete(f"/api/customers/{customer['id']}", headers=admin)
    assert r.status_code == 400
    assert 'Consider marking as inactive instead' in r.json()['detail']


def test_customer_delete_and_isolation(client, admin, register):
    other = register('other@initech.test', 'Initech')
    r = client.post('/api/customers', json={'company_name': 'Temp'}, headers=admin)
    cid = r.json()['id']
    assert client.get(f'/api/customers/{cid}', headers=other).status_code == 404
    assert client.delete(f'/api/customers/{cid}', headers=admin).status_code == 204
    assert client.get(f'/api/customers/{cid}', headers=admin).status_code == 404


def test_invalid_customer_email_is_rejected(client, admin):
    r = client.post('/api/customers', json={'company_name': 'Bad', 'email': 'nope'}, headers=admin)
    assert r.status_code == 422
    r = client.post('/api/customers', json={'company_name': 'Bad', 'email': 'ap@globex..test'}, headers=admin)
    assert r.status_code == 422
    r = client.post('/api/customers', json={'company_name': 'Blank', 'email': '', 'website': 'ftp://globex.test'},
                    headers=admin)
    assert r.status_code == 422
    r = client.post('/api/customers', json={'company_name': 'Blank', 'email': '', 'website': 'https://globex.test'},
                    headers=admin)
    assert r.status_code == 201
    assert r.json()['email'] is None
    assert r.json()['website'] == 'https://globex.test'


def test_default_payment_terms_are_seeded(client, admin):
    r = client.get('/api/settings/payment-terms', headers=admin)
    codes = [t['code'] for t in r.json()]
    assert codes == ['NET_30', 'NET_15', '2_10_NET_30']
    defaults = [t['code'] for t in r.json() if t['is_default']]
    assert defaults == ['NET_30']


def test_payment_term_upsert_and_single_default(client, admin):
    client.get('/api/settings/payment-terms', headers=admin)
    r = client.post('/api/settings/payment-terms', json={
        'code': 'net_60', 'name': 'Net 60', 'days_due': 60, 'is_default': True,
    }, headers=admin)
    assert r.status_code == 200
    assert r.json()['code'] == 'NET_60'
    terms = client.get('/api/settings/payment-terms', headers=admin).json()
    assert [t['code'] for t in terms if t['is_default']] == ['NET_60']


def test_payment_term_discount_validation(client, admin):
    r = client.post('/api/settings/payment-terms', json={
        'code': 'BAD', 'name': 'Bad', 'days_due': 10, 'has_discount': True, 'discount_days': 10,
        'discount_percentage': 2,
    }, headers=admin)
    assert r.status_code == 400
    assert r.json()['detail'] == 'Discount days must be less than days due'


def test_payment_term_in_use_cannot_be_deleted(client, admin):
    terms = client.get('/api/settings/payment-terms', headers=admin).json()
    net15 = next(t for t in terms if t['code'] == 'NET_15')
    client.post('/api/customers', json={'company_name': 'Uses Terms', 'payment_term_id': net15['id']},
                headers=admin)
    r = client.delete(f"/api/settings/payment-terms/{net15['id']}", headers=admin)
    assert r.status_code == 400
    assert '1 customer(s)' in r.json()['detail']


def test_document_type_settings(client, admin):
    r = client.get('/api/settings/document-types', headers=admin)
    assert [row['document_type'] for row in r.json()] == ['INVOICE', 'QUOTE', 'ORDER']
    r = client.put('/api/settings/document-types', json={
        'document_type': 'QUOTE', 'enabled': False, 'display_name': 'Estimate', 'display_order': 2,
    }, headers=admin)
    assert r.json()['display_name'] == 'Estimate'
    enabled = client.get('/api/settings/document-types/enabled', headers=admin).json()
    assert [row['document_type'] for row in enabled] == ['INVOICE', 'ORDER']


def test_audited_writes_return_the_saved_rows(client, admin):
    r = client.post('/api/customers', json={'company_name': 'Umbrella', 'email': 'ar@umbrella.test'}, headers=admin)
    assert r.status_code == 201
    created = r.json()
    assert isinstance(created['id'], int)
    assert created['company_name'] == 'Umbrella'
    assert created['status'] == 'ACTIVE'

    r = client.post('/api/documents', json={
        'customer_id': created['id'], 'document_date': '2026-01-15',
        'line_items': [{'description': 'Widgets', 'quantity': 2, 'unit_price': 25}]}, headers=admin)
    assert r.status_code == 201
    assert isinstance(r.json()['id'], int)
    assert r.json()['total_amount'] == 50.0

    r = client.post('/api/payments', json={'customer_id': created['id'], 'amount': 50,
                                           'document_ids': [r.json()['id']]}, headers=admin)
    assert r.status_code == 201
    assert isinstance(r.json()['id'], int)
    assert r.json()['status'] == 'APPLIED'

    actions = {e['action'] for e in client.get('/api/audit-logs', headers=admin).json()['items']}
    assert {'customer_created', 'invoice_created', 'payment_applied'} <= actions
