import inspect
import json

import pytest

from arflow.config import settings
from arflow.gateways import stripe_gateway
from arflow.routes import webhooks

CARD_INTENT = {'id': 'pi_1', 'status': 'succeeded', 'amount': 5000,
               'payment_method': {'card': {'last4': '4242', 'brand': 'visa'}}}


@pytest.fixture
def fake_stripe(monkeypatch):
    calls = {}

    def create_checkout_session(secret_key, **kwargs):
        calls['checkout'] = dict(kwargs, secret_key=secret_key)
        n = len([k for k in calls if k.startswith('session')]) + 1
        calls[f'session{n}'] = True
        return {'id': f'cs_test_{n}', 'url': f'https://checkout.stripe.test/cs_test_{n}', 'client_secret': None}

    def create_payment_intent(secret_key, **kwargs):
        calls['intent'] = kwargs
        return {'id': 'pi_2', 'client_secret': 'pi_2_secret_x'}

    def construct_event(payload, signature, secret):
        assert secret == 'whsec_abc'
        if signature == 'bad':
            raise stripe_gateway.SignatureVerificationError('No signatures found matching the expected signature',
                                                            signature)
        return json.loads(payload)

    monkeypatch.setattr(stripe_gateway, 'create_checkout_session', create_checkout_session)
    monkeypatch.setattr(stripe_gateway, 'create_payment_intent', create_payment_intent)
    monkeypatch.setattr(stripe_gateway, 'construct_event', construct_event)
    monkeypatch.setattr(stripe_gateway, 'retrieve_payment_intent', lambda key, pid: dict(CARD_INTENT, id=pid))
    monkeypatch.setattr(stripe_gateway, 'retrieve_account', lambda key: {'id': 'acct_123'})
    return calls


def _checkout(client, headers, customer, doc, mode='generate_link'):
    r = client.post('/api/stripe/checkout-sessions', json={
        'customer_id': customer['id'], 'amount': doc['balance_due'], 'document_ids': [doc['id']], 'mode': mode,
    }, headers=headers)
    assert r.status_code == 201, r.text
    return r.json()


def _webhook(client, event, signature='t=1,v1=abc'):
    headers = {'stripe-signature': signature} if signature else {}
    return client.post('/api/webhooks/stripe', content=json.dumps(event).encode(), headers=headers)


def _completed_event(session_id, payment_id, doc_id):
    return {
        'type': 'checkout.session.completed',
        'data': {'object': {
            'id': session_id,
            'payment_intent': dict(CARD_INTENT),
            'metadata': {'paymentId': str(payment_id), 'documentIds': str(doc_id)},
        }},
    }


def test_settings_are_masked_and_kept(client, admin, fake_stripe):
    r = client.put('/api/gateways/stripe', json={'secret_key': 'sk_test_1', 'publishable_key': 'pk_test_1'},
                   headers=admin)
    body = r.json()
    assert body['secret_key'] == '****'
    assert body['webhook_secret'] is None
    assert body['enabled'] is False
    r = client.put('/api/gateways/stripe', json={'secret_key': '****', 'publishable_key': '****',
                                                 'webhook_secret': 'whsec_abc'}, headers=admin)
    assert r.json()['webhook_secret'] == '****'
    result = client.post('/api/gateways/stripe/test', headers=admin).json()
    assert result == {'success': True, 'message': 'Connected to Stripe account acct_123', 'account_id': 'acct_123'}


def test_key_prefixes_are_validated(client, admin):
    r = client.put('/api/gateways/stripe', json={'secret_key': 'pk_test_1', 'publishable_key': 'pk_test_1'},
                   headers=admin)
    assert r.status_code == 422


def test_live_key_in_test_mode_fails_connection_test(client, admin, fake_stripe):
    client.put('/api/gateways/stripe', json={'secret_key': 'sk_live_1', 'publishable_key': 'pk_live_1'},
               headers=admin)
    result = client.post('/api/gateways/stripe/test', headers=admin).json()
    assert result['success'] is False
    assert result['message'] == 'Live keys cannot be used in test mode'


def test_disabling_stripe_clears_active_provider(client, stripe_enabled):
    statuses = client.get('/api/gateways', headers=stripe_enabled).json()
    assert statuses['active_provider'] == 'STRIPE'
    client.put('/api/gateways/stripe/toggle', json={'enabled': False}, headers=stripe_enabled)
    statuses = client.get('/api/gateways', headers=stripe_enabled).json()
    assert statuses['active_provider'] is None
    assert statuses['stripe']['enabled'] is False


def test_active_provider_must_be_enabled(client, admin):
    r = client.put('/api/gateways/active', json={'provider': 'AUTHORIZE_NET'}, headers=admin)
    assert r.status_code == 400


def test_checkout_webhook_applies_payment_once(client, stripe_enabled, customer, make_invoice, fake_stripe):
    doc = make_invoice(50)
    session = _checkout(client, stripe_enabled, customer, doc)
    assert session['session_id'] == 'cs_test_1'
    assert session['url'] == 'https://checkout.stripe.test/cs_test_1'
    assert fake_stripe['checkout']['amount_cents'] == 5000
    assert fake_stripe['checkout']['embedded'] is False
    pending = client.get(f"/api/payments/{session['payment_id']}", headers=stripe_enabled).json()
    assert pending['status'] == 'PENDING'
    assert pending['checkout_session_status'] == 'open'

    event = _completed_event('cs_test_1', session['payment_id'], doc['id'])
    r = _webhook(client, event)
    assert r.status_code == 200
    assert r.json() == {'received': True, 'event_type': 'checkout.session.completed'}
    assert _webhook(client, event).status_code == 200

    payment = client.get(f"/api/payments/{session['payment_id']}", headers=stripe_enabled).json()
    assert payment['status'] == 'APPLIED'
    assert payment['last4_digits'] == '4242'
    assert payment['card_type'] == 'VISA'
    assert payment['gateway_transaction_id'] == 'pi_1'
    assert payment['checkout_session_status'] == 'complete'
    assert len(payment['applications']) == 1
    assert client.get(f"/api/documents/{doc['id']}", headers=stripe_enabled).json()['status'] == 'PAID'


def test_webhook_rejections(client, stripe_enabled, customer, make_invoice, fake_stripe):
    doc = make_invoice(20)
    session = _checkout(client, stripe_enabled, customer, doc)
    event = _completed_event(session['session_id'], session['payment_id'], doc['id'])

    r = _webhook(client, event, signature=None)
    assert r.status_code == 400
    assert r.json()['detail'] == 'Missing stripe-signature header'
    r = _webhook(client, event, signature='bad')
    assert r.status_code == 400
    assert r.json()['detail'] == 'Invalid webhook signature'
    r = _webhook(client, {'type': 'checkout.session.completed', 'data': {'object': {'id': 'cs_unknown'}}})
    assert r.status_code == 404
    payment = client.get(f"/api/payments/{session['payment_id']}", headers=stripe_enabled).json()
    assert payment['status'] == 'PENDING'


def test_expired_checkout_voids_pending_payment(client, stripe_enabled, customer, make_invoice, fake_stripe):
    doc = make_invoice(20)
    session = _checkout(client, stripe_enabled, customer, doc)
    r = _webhook(client, {'type': 'checkout.session.expired', 'data': {'object': {'id': session['session_id']}}})
    assert r.status_code == 200
    payment = client.get(f"/api/payments/{session['payment_id']}", headers=stripe_enabled).json()
    assert payment['status'] == 'VOID'
    assert payment['checkout_session_status'] == 'expired'
    assert client.get(f"/api/documents/{doc['id']}", headers=stripe_enabled).json()['balance_due'] == 20.0


def test_payment_intent_flow(client, stripe_enabled, customer, make_invoice, fake_stripe):
    doc = make_invoice(30)
    r = client.post('/api/stripe/payment-intents', json={
        'customer_id': customer['id'], 'amount': 30, 'document_ids': [doc['id']]}, headers=stripe_enabled)
    assert r.status_code == 201, r.text
    intent = r.json()
    assert intent['client_secret'] == 'pi_2_secret_x'
    assert intent['publishable_key'] == 'pk_test_123'
    assert fake_stripe['intent']['metadata']['documentIds'] == str(doc['id'])

    pending = client.get('/api/stripe/payment-intents/pi_2/verify', headers=stripe_enabled).json()
    assert pending['status'] == 'pending'
    done = client.post('/api/stripe/payment-intents/pi_2/verify-immediate', headers=stripe_enabled).json()
    assert done['status'] == 'succeeded'
    assert done['payment']['status'] == 'APPLIED'
    assert client.get(f"/api/documents/{doc['id']}", headers=stripe_enabled).json()['status'] == 'PAID'


def test_failed_intent_voids_payment(client, stripe_enabled, customer, make_invoice, fake_stripe):
    doc = make_invoice(30)
    intent = client.post('/api/stripe/payment-intents', json={
        'customer_id': customer['id'], 'amount': 30, 'document_ids': [doc['id']]}, headers=stripe_enabled).json()
    r = _webhook(client, {'type': 'payment_intent.payment_failed', 'data': {'object': {
        'id': 'pi_2', 'metadata': {}, 'last_payment_error': {'message': 'Your card was declined.'}}}})
    assert r.status_code == 200
    payment = client.get(f"/api/payments/{intent['payment_id']}", headers=stripe_enabled).json()
    assert payment['status'] == 'VOID'
    assert payment['gateway_response']['error'] == 'Your card was declined.'


def test_verify_and_cancel_checkout_session(client, stripe_enabled, customer, make_invoice, fake_stripe,
                                            monkeypatch):
    doc = make_invoice(25)
    first = _checkout(client, stripe_enabled, customer, doc, mode='pay_now')
    assert fake_stripe['checkout']['embedded'] is True
    monkeypatch.setattr(stripe_gateway, 'retrieve_checkout_session',
                        lambda key, sid: {'id': sid, 'status': 'open', 'expires_at': 1893456000})
    r = client.get(f"/api/stripe/checkout-sessions/{first['session_id']}/verify", headers=stripe_enabled)
    assert r.json()['status'] == 'pending'
    requeried = client.post(f"/api/stripe/payments/{first['payment_id']}/requery", headers=stripe_enabled).json()
    assert requeried['status'] == 'PENDING'
    assert requeried['session_expires_at'].startswith('2030-01-01')

    r = client.post(f"/api/stripe/checkout-sessions/{first['session_id']}/cancel", headers=stripe_enabled)
    assert r.json()['status'] == 'VOID'

    second = _checkout(client, stripe_enabled, customer, doc)
    monkeypatch.setattr(stripe_gateway, 'retrieve_checkout_session',
                        lambda key, sid: {'id': sid, 'status': 'complete', 'payment_intent': 'pi_9',
                                          'metadata': {'documentIds': str(doc['id'])}})
    r = client.get(f"/api/stripe/checkout-sessions/{second['session_id']}/verify", headers=stripe_enabled)
    assert r.json()['status'] == 'succeeded'
    assert r.json()['payment']['gateway_transaction_id'] == 'pi_9'
    assert r.json()['payment']['last4_digits'] == '4242'


def test_stripe_card_payment(client, stripe_enabled, customer, make_invoice, monkeypatch):
    doc = make_invoice(50)
    captured = {}

    def charge_card(secret_key, **kwargs):
        captured.update(kwargs)
        return dict(CARD_INTENT, id='pi_card')

    monkeypatch.setattr(stripe_gateway, 'charge_card', charge_card)
    r = client.post('/api/payments/credit-card', json={
        'customer_id': customer['id'], 'amount': 50, 'document_ids': [doc['id']],
        'card': {'card_number': '4242424242424242', 'expiration': '0531'}}, headers=stripe_enabled)
    assert r.status_code == 201, r.text
    assert r.json()['gateway_transaction_id'] == 'pi_card'
    assert r.json()['payment_gateway_provider'] == 'STRIPE'
    assert captured['exp_month'] == 5
    assert captured['exp_year'] == 2031
    assert captured['amount_cents'] == 5000


def test_stripe_card_requiring_action_fails(client, stripe_enabled, customer, make_invoice, monkeypatch):
    doc = make_invoice(50)
    monkeypatch.setattr(stripe_gateway, 'charge_card',
                        lambda secret_key, **kwargs: {'id': 'pi_3ds', 'status': 'requires_action'})
    r = client.post('/api/payments/credit-card', json={
        'customer_id': customer['id'], 'amount': 50, 'document_ids': [doc['id']],
        'card': {'card_number': '4000002500003155', 'expiration': '0531'}}, headers=stripe_enabled)
    assert r.status_code == 502
    assert r.json()['detail'] == 'Payment requires additional authentication'


def test_uncaptured_stripe_charge_is_not_recorded(client, stripe_enabled, customer, make_invoice, monkeypatch):
    doc = make_invoice(50)
    monkeypatch.setattr(stripe_gateway, 'charge_card',
                        lambda secret_key, **kwargs: dict(CARD_INTENT, id='pi_hold', status='requires_capture'))
    r = client.post('/api/payments/credit-card', json={
        'customer_id': customer['id'], 'amount': 50, 'document_ids': [doc['id']],
        'card': {'card_number': '4242424242424242', 'expiration': '0531'}}, headers=stripe_enabled)
    assert r.status_code == 502
    assert r.json()['detail'] == 'Payment failed with status: requires_capture'
    unchanged = client.get(f"/api/documents/{doc['id']}", headers=stripe_enabled).json()
    assert unchanged['status'] == 'OPEN'
    assert unchanged['balance_due'] == 50.0
    assert client.get('/api/payments', headers=stripe_enabled).json()['total'] == 0


def test_malformed_webhook_payloads_are_rejected(client, stripe_enabled, fake_stripe):
    for event in ({'type': 'checkout.session.completed', 'data': {'object': 'cs_1'}},
                  {'type': 'checkout.session.completed', 'data': [1, 2]},
                  ['not', 'an', 'event']):
        r = _webhook(client, event)
        assert r.status_code == 400
        assert r.json()['detail'] == 'Invalid webhook payload'


def test_public_invoice_and_checkout(client, stripe_enabled, make_invoice, fake_stripe):
    doc = make_invoice(90)
    token = client.post(f"/api/documents/{doc['id']}/share", headers=stripe_enabled).json()['share_token']
    r = client.get(f'/api/public/invoices/{token}')
    assert r.status_code == 200
    body = r.json()
    assert body['can_pay'] is True
    assert body['organization']['name'] == 'Acme Corp'
    assert body['document']['balance_due'] == 90.0
    assert 'notes' not in body['document']
    assert len(body['document']['line_items']) == 1

    r = client.post(f'/api/public/invoices/{token}/checkout')
    assert r.status_code == 200
    assert r.json() == {'checkout_url': 'https://checkout.stripe.test/cs_test_1', 'session_id': 'cs_test_1'}


def test_public_checkout_for_paid_invoice(client, stripe_enabled, customer, make_invoice, fake_stripe):
    doc = make_invoice(10)
    token = client.post(f"/api/documents/{doc['id']}/share", headers=stripe_enabled).json()['share_token']
    client.post('/api/payments', json={'customer_id': customer['id'], 'amount': 10, 'document_ids': [doc['id']]},
                headers=stripe_enabled)
    r = client.post(f'/api/public/invoices/{token}/checkout')
    assert r.status_code == 400
    assert r.json()['detail'] == 'This invoice is already paid'


def test_public_endpoints_are_rate_limited(client, monkeypatch):
    monkeypatch.setattr(settings, 'PUBLIC_RATE_LIMIT_PER_MIN', 2)
    assert client.get('/api/public/invoices/missing').status_code == 404
    assert client.get('/api/public/invoices/missing').status_code == 404
    r = client.get('/api/public/invoices/missing')
    assert r.status_code == 429
    assert int(r.headers['Retry-After']) >= 1


def test_webhook_handler_runs_off_the_event_loop(client, stripe_enabled, customer, make_invoice, fake_stripe):
    assert not inspect.iscoroutinefunction(webhooks.stripe_webhook)
    doc = make_invoice(15)
    session = _checkout(client, stripe_enabled, customer, doc)
    raw = json.dumps(_completed_event(session['session_id'], session['payment_id'], doc['id']), indent=2).encode()
    r = client.post('/api/webhooks/stripe', content=raw, headers={'stripe-signature': 't=1,v1=abc'})
    assert r.status_code == 200
    assert client.get(f"/api/documents/{doc['id']}", headers=stripe_enabled).json()['status'] == 'PAID'
