# tests/test_token_broker.py
import base64
import json
import threading
from datetime import datetime, timezone
from urllib.parse import parse_qs

import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding
from google.auth import exceptions as google_exceptions

from conftest import FakeResponse, FakeTransport
from errors import AuthExchangeError, KeyFormatError, RemoteCallError
from token_broker import JWT_BEARER_GRANT, BrokerCredentials, TokenBroker


def b64decode(segment):
    return base64.urlsafe_b64decode(segment + '=' * (-len(segment) % 4))


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def broker(credential, transport, clock):
    return TokenBroker(credential, transport=transport, clock=clock)


def test_assertion_is_signed_jwt(broker, credential, private_key, clock):
    assertion = broker.build_assertion()
    header_b64, claims_b64, signature_b64 = assertion.split('.')

    assert json.loads(b64decode(header_b64)) == {'alg': 'RS256', 'typ': 'JWT'}
    claims = json.loads(b64decode(claims_b64))
    assert claims['iss'] == credential.identity
    assert claims['scope'] == 'https://www.googleapis.com/auth/spreadsheets'
    assert claims['aud'] == 'https://oauth2.googleapis.com/token'
    assert claims['iat'] == int(clock.now)
    assert claims['exp'] == claims['iat'] + 3600

    private_key.public_key().verify(
        b64decode(signature_b64), f'{header_b64}.{claims_b64}'.encode('ascii'),
        padding.PKCS1v15(), hashes.SHA256())


def test_exchange_posts_jwt_bearer_grant(broker, transport):
    token = broker.get_access_token()

    assert token.value == 'token-1'
    call = transport.calls[0]
    assert call['method'] == 'POST'
    assert call['url'] == 'https://oauth2.googleapis.com/token'
    assert call['headers']['Content-Type'] == 'application/x-www-form-urlencoded'
    form = parse_qs(call['body'])
    assert form['grant_type'] == [JWT_BEARER_GRANT]
    assert form['assertion'][0].count('.') == 2


def test_token_is_reused_within_expiry_window(broker, transport, clock):
    first = broker.get_access_token()
    clock.advance(1800)
    second = broker.get_access_token()

    assert first.value == second.value
    assert len(transport.calls) == 1
    assert broker.exchanges == 1


def test_token_refreshes_after_expiry(broker, transport, clock):
    first = broker.get_access_token()
    clock.advance(3600 - 60)
    second = broker.get_access_token()

    assert second.value != first.value
    assert len(transport.calls) == 2


def test_expiry_applies_safety_margin(broker, clock):
    token = broker.get_access_token()
    assert token.expires_at == clock.now + 3600 - 60
    assert not token.is_expired(clock.now + 3539)
    assert token.is_expired(clock.now + 3540)


def test_short_expires_in_is_honoured(credential, clock):
    transport = FakeTransport(body='{"access_token": "short", "expires_in": 300}')
    broker = TokenBroker(credential, transport=transport, clock=clock)
    assert broker.get_access_token().expires_at == clock.now + 240


def test_rejected_assertion_raises_and_is_not_cached(credential, clock):
    transport = FakeTransport(status=400, body='{"error": "invalid_grant"}')
    broker = TokenBroker(credential, transport=transport, clock=clock)

    with pytest.raises(AuthExchangeError) as excinfo:
        broker.get_access_token()
    assert excinfo.value.status == 400
    assert 'invalid_grant' in excinfo.value.body

    with pytest.raises(AuthExchangeError):
        broker.get_access_token()
    assert len(transport.calls) == 2


def test_missing_access_token_is_an_exchange_error(credential, clock):
    transport = FakeTransport(body='{"token_type": "Bearer"}')
    broker = TokenBroker(credential, transport=transport, clock=clock)
    with pytest.raises(AuthExchangeError):
        broker.get_access_token()


def test_transport_failure_is_remote_call_error(credential, clock):
    def unreachable(**kwargs):
        raise google_exceptions.TransportError('connection refused')

    broker = TokenBroker(credential, transport=unreachable, clock=clock)
    with pytest.raises(RemoteCallError):
        broker.get_access_token()


def test_bad_key_fails_before_any_request(transport, clock):
    from config import Credential
    broker = TokenBroker(Credential('svc@example.com', 'not a key'), transport=transport, clock=clock)
    with pytest.raises(KeyFormatError):
        broker.get_access_token()
    assert transport.calls == []


def test_invalidate_forces_new_exchange(broker, transport):
    broker.get_access_token()
    broker.invalidate()
    broker.get_access_token()
    assert len(transport.calls) == 2


def test_concurrent_callers_share_one_exchange(credential, clock):
    entered = threading.Event()
    release = threading.Event()
    calls = []

    def slow_transport(**kwargs):
        calls.append(kwargs)
        entered.set()
        release.wait(5)
        return FakeResponse(200, b'{"access_token": "shared", "expires_in": 3600}')

    broker = TokenBroker(credential, transport=slow_transport, clock=clock)
    results = []

    def worker():
        results.append(broker.get_access_token().value)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    threads[0].start()
    assert entered.wait(5)
    for thread in threads[1:]:
        thread.start()
    release.set()
    for thread in threads:
        thread.join(5)

    assert results == ['shared'] * 8
    assert len(calls) == 1


def test_waiters_receive_the_leaders_error(credential, clock):
    entered = threading.Event()
    release = threading.Event()

    def failing_transport(**kwargs):
        entered.set()
        release.wait(5)
        return FakeResponse(401, b'{"error": "unauthorized_client"}')

    broker = TokenBroker(credential, transport=failing_transport, clock=clock)
    errors = []

    def worker():
        try:
            broker.get_access_token()
        except AuthExchangeError as exc:
            errors.append(exc.status)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    threads[0].start()
    assert entered.wait(5)
    for thread in threads[1:]:
        thread.start()
    release.set()
    for thread in threads:
        thread.join(5)

    assert errors == [401] * 4


def test_broker_credentials_refresh_from_broker(credential):
    # Real clock: google-auth checks expiry against the wall clock.
    broker = TokenBroker(credential, transport=FakeTransport())
    credentials = BrokerCredentials(broker)
    assert not credentials.valid

    credentials.refresh(None)

    assert credentials.token == 'token-1'
    assert credentials.valid
    expected = datetime.fromtimestamp(broker.get_access_token().expires_at, tz=timezone.utc)
    assert credentials.expiry == expected.replace(tzinfo=None)

    headers = {}
    credentials.apply(headers)
    assert headers['authorization'] == 'Bearer token-1'
