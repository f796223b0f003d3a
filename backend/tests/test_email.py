import json

import httpx
import pytest

from arflow import mailer
from arflow.config import settings


@pytest.fixture
def outbox(monkeypatch):
    sent = []
    state = {'status': 200}

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == '/emails'
        assert request.headers['Authorization'] == 'Bearer re_test_key'
        if state['status'] != 200:
            return httpx.Response(state['status'], json={'message': 'Domain is not verified'})
        sent.append(json.loads(request.content))
        return httpx.Response(200, json={'id': f'email_{len(sent)}'})

    monkeypatch.setattr(settings, 'RESEND_API_KEY', 're_test_key')
    monkeypatch.setattr(mailer, 'client', lambda: mailer.MailClient('re_test_key',
                                                                    transport=httpx.MockTransport(handler)))
    return {'sent': sent, 'state': state}


def test_config_status_reports_missing_key(client, admin, monkeypatch):
    monkeypatch.setattr(settings, 'RESEND_API_KEY', '')
    r = client.get('/api/email/config', headers=admin)
    assert r.status_code == 200
    assert r.json() == {'configured': False, 'api_key_present': False, 'from_email': 'noreply@arflow.app',
                        'reply_to_email': None, 'missing_config': ['RESEND_API_KEY']}
    r = client.post('/api/email/test', json={'to': 'owner@acme.test'}, headers=admin)
    assert r.status_code == 400
    assert 'RESEND_API_KEY' in r.json()['detail']


def test_invoice_email_sends_share_link(client, admin, make_invoice, outbox):
    doc = make_invoice(125)
    r = client.post(f"/api/email/invoices/{doc['id']}", json={
        'to': 'ap@globex.test', 'subject': 'Invoice INV-000001', 'message': 'Thanks <3'}, headers=admin)
    assert r.status_code == 200, r.text
    body = r.json()
    assert body['success'] is True
    assert body['email_id'] == 'email_1'
    assert body['share_url'].startswith('http://testserver/invoice/')

    message = outbox['sent'][0]
    assert message['to'] == ['ap@globex.test']
    assert message['from'] == 'noreply@arflow.app'
    assert message['subject'] == 'Invoice INV-000001'
    assert body['share_url'] in message['html']
    assert 'Thanks &lt;3' in message['html']
    assert '- Balance Due: $125.00' in message['text']

    shared = client.get(f"/api/documents/{doc['id']}", headers=admin).json()
    assert shared['public_share_enabled'] is True
    logs = client.get('/api/audit-logs', params={'action': 'invoice_emailed'}, headers=admin).json()
    assert logs['items'][0]['description'] == 'Emailed invoice INV-000001 to Globex (ap@globex.test)'


def test_invoice_email_failure_is_audited(client, admin, make_invoice, outbox):
    doc = make_invoice(10)
    outbox['state']['status'] = 403
    r = client.post(f"/api/email/invoices/{doc['id']}", json={'to': 'ap@globex.test', 'subject': 'Invoice'},
                    headers=admin)
    assert r.status_code == 502
    assert r.json()['detail'] == 'Failed to send email: Domain is not verified'
    logs = client.get('/api/audit-logs', params={'action': 'email_failed'}, headers=admin).json()
    assert logs['total'] == 1


def test_only_invoices_can_be_emailed(client, admin, make_invoice, outbox):
    quote = make_invoice(10, document_type='QUOTE')
    r = client.post(f"/api/email/invoices/{quote['id']}", json={'to': 'ap@globex.test', 'subject': 'Quote'},
                    headers=admin)
    assert r.status_code == 400
    assert r.json()['detail'] == 'Only invoices can be emailed'
    assert outbox['sent'] == []


def test_test_email(client, admin, outbox):
    r = client.post('/api/email/test', json={'to': 'owner@acme.test'}, headers=admin)
    assert r.json() == {'success': True, 'email_id': 'email_1'}
    assert outbox['sent'][0]['subject'] == 'Test Email from Acme Corp'


def test_mail_client_reports_provider_errors():
    def handler(request):
        return httpx.Response(500, text='upstream exploded')

    mail = mailer.MailClient('re_key', base_url='https://mail.test', transport=httpx.MockTransport(handler))
    with pytest.raises(mailer.EmailError) as err:
        mail.send('a@acme.test', 'Hi', '<p>Hi</p>', reply_to='billing@acme.test')
    assert str(err.value) == 'Email provider returned HTTP 500'
    assert err.value.status_code == 500
