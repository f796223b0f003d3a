def _line(**overrides):
    line = {'description': 'Widgets', 'quantity': 2, 'unit_price': 50, 'discount_percent': 10, 'tax_percent': 8.25}
    line.update(overrides)
    return line


def test_line_item_math_rounds_to_cents(client, admin, customer):
    r = client.post('/api/documents', json={
        'customer_id': customer['id'], 'document_date': '2026-01-15', 'line_items': [_line()],
    }, headers=admin)
    assert r.status_code == 201, r.text
    doc = r.json()
    item = doc['line_items'][0]
    assert item['line_subtotal'] == 100.0
    assert item['discount_amount'] == 10.0
    assert item['taxable_amount'] == 90.0
    assert item['tax_amount'] == 7.43
    assert item['line_total'] == 97.43
    assert doc['subtotal'] == 90.0
    assert doc['tax_amount'] == 7.43
    assert doc['total_amount'] == 97.43
    assert doc['balance_due'] == 97.43
    assert doc['status'] == 'OPEN'
    assert doc['document_number'] == 'INV-000001'
    assert doc['due_date'] == '2026-02-14'
    assert doc['customer']['company_name'] == 'Globex'


def test_numbers_are_per_type_and_unique(client, admin, make_invoice):
    make_invoice(10)
    second = make_invoice(10)
    assert second['document_number'] == 'INV-000002'
    quote = make_invoice(10, document_type='QUOTE')
    assert quote['document_number'] == 'QUO-000001'
    r = client.post('/api/documents', json={
        'customer_id': second['customer_id'], 'document_date': '2026-01-15', 'document_number': 'INV-000002',
        'line_items': [_line()],
    }, headers=admin)
    assert r.status_code == 400
    assert r.json()['detail'] == 'Document number INV-000002 already exists'


def test_discount_terms_snapshot(client, admin, make_invoice):
    terms = client.get('/api/settings/payment-terms', headers=admin).json()
    early = next(t for t in terms if t['code'] == '2_10_NET_30')
    doc = make_invoice(200, payment_term_id=early['id'])
    assert doc['due_date'] == '2026-02-14'
    assert doc['early_payment_deadline'] == '2026-01-25'
    assert doc['discount_percentage'] == 2.0
    assert doc['discount_available'] == 4.0
    assert doc['applied_payment_term']['code'] == '2_10_NET_30'


def test_customer_term_is_used_by_default(client, admin):
    terms = client.get('/api/settings/payment-terms', headers=admin).json()
    net15 = next(t for t in terms if t['code'] == 'NET_15')
    cust = client.post('/api/customers', json={'company_name': 'Quick Pay', 'payment_term_id': net15['id']},
                       headers=admin).json()
    r = client.post('/api/documents', json={
        'customer_id': cust['id'], 'document_date': '2026-03-01', 'line_items': [_line(tax_percent=0)],
    }, headers=admin)
    assert r.json()['due_date'] == '2026-03-16'


def test_document_requires_line_items(client, admin, customer):
    r = client.post('/api/documents', json={
        'customer_id': customer['id'], 'document_date': '2026-01-15', 'line_items': [],
    }, headers=admin)
    assert r.status_code == 400
    assert r.json()['detail'] == 'At least one line item is required'


def test_update_recomputes_totals_and_keeps_due_date(client, admin, make_invoice):
    doc = make_invoice(100, due_date='2026-04-01')
    r = client.put(f"/api/documents/{doc['id']}", json={
        'notes': 'bumped', 'line_items': [_line(quantity=1, unit_price=300, discount_percent=0, tax_percent=0)],
    }, headers=admin)
    assert r.status_code == 200, r.text
    body = r.json()
    assert body['total_amount'] == 300.0
    assert body['balance_due'] == 300.0
    assert body['due_date'] == '2026-04-01'
    assert body['notes'] == 'bumped'
    assert len(body['line_items']) == 1


def test_update_cannot_drop_below_paid(client, admin, customer, make_invoice):
    doc = make_invoice(100)
    client.post('/api/payments', json={
        'customer_id': customer['id'], 'amount': 60, 'document_ids': [doc['id']],
    }, headers=admin)
    r = client.put(f"/api/documents/{doc['id']}", json={
        'line_items': [_line(quantity=1, unit_price=50, discount_percent=0, tax_percent=0)],
    }, headers=admin)
    assert r.status_code == 400
    assert 'cannot be less than the amount already paid' in r.json()['detail']


def test_update_to_paid_stamps_paid_date(client, admin, customer, make_invoice):
    doc = make_invoice(100)
    client.post('/api/payments', json={
        'customer_id': customer['id'], 'amount': 60, 'document_ids': [doc['id']],
    }, headers=admin)
    r = client.put(f"/api/documents/{doc['id']}", json={
        'line_items': [_line(quantity=1, unit_price=60, discount_percent=0, tax_percent=0)],
    }, headers=admin)
    assert r.status_code == 200, r.text
    assert r.json()['status'] == 'PAID'
    assert r.json()['paid_date'] is not None
    r = client.put(f"/api/documents/{doc['id']}", json={
        'line_items': [_line(quantity=1, unit_price=80, discount_percent=0, tax_percent=0)],
    }, headers=admin)
    assert r.json()['status'] == 'PARTIAL'
    assert r.json()['paid_date'] is None


def test_delete_blocked_by_applied_payment(client, admin, customer, make_invoice):
    doc = make_invoice(100)
    r = client.post('/api/payments', json={
        'customer_id': customer['id'], 'amount': 100, 'document_ids': [doc['id']],
    }, headers=admin)
    payment_id = r.json()['id']
    r = client.delete(f"/api/documents/{doc['id']}", headers=admin)
    assert r.status_code == 400

    client.post(f'/api/payments/{payment_id}/void', json={'reason': 'bounced'}, headers=admin)
    assert client.delete(f"/api/documents/{doc['id']}", headers=admin).status_code == 204
    assert client.get(f"/api/customers/{customer['id']}", headers=admin).json()['current_balance'] == 0.0


def test_list_filters_and_counts(client, admin, make_invoice):
    make_invoice(10, description='alpha job')
    make_invoice(20, document_type='ORDER')
    r = client.get('/api/documents', params={'document_type': 'ORDER'}, headers=admin)
    page = r.json()
    assert page['total'] == 1
    assert page['items'][0]['document_number'] == 'ORD-000001'
    r = client.get('/api/documents', params={'search': 'alpha'}, headers=admin)
    assert r.json()['total'] == 1
    r = client.get('/api/documents', params={'page_size': 1}, headers=admin)
    assert r.json()['total_pages'] == 2
    counts = client.get('/api/documents/counts', headers=admin).json()
    assert counts['INVOICE'] == 1
    assert counts['ORDER'] == 1
    assert counts['CREDIT_MEMO'] == 0


def test_bad_page_is_rejected(client, admin):
    r = client.get('/api/documents', params={'page': 0}, headers=admin)
    assert r.status_code == 400


def test_share_link_lifecycle(client, admin, make_invoice):
    doc = make_invoice(75)
    r = client.post(f"/api/documents/{doc['id']}/share", headers=admin)
    assert r.status_code == 200
    link = r.json()
    assert link['share_url'] == f"http://testserver/invoice/{link['share_token']}"
    again = client.post(f"/api/documents/{doc['id']}/share", headers=admin).json()
    assert again['share_token'] == link['share_token']
    assert client.delete(f"/api/documents/{doc['id']}/share", headers=admin).status_code == 204
    assert client.get(f"/api/public/invoices/{link['share_token']}").status_code == 404


def test_quotes_cannot_be_shared(client, admin, make_invoice):
    quote = make_invoice(10, document_type='QUOTE')
    assert client.post(f"/api/documents/{quote['id']}/share", headers=admin).status_code == 404
