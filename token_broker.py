# token_broker.py
"""
Exchanges a signed JWT assertion for a Google OAuth2 access token.

The service account signs a short-lived claim set with its private key and
posts it to the token endpoint using the jwt-bearer grant. The resulting
bearer token is cached until shortly before it expires.
"""
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from urllib.parse import urlencode

import google.auth.transport.requests
from google.auth import credentials as google_credentials
from google.auth import exceptions as google_exceptions
from google.auth import jwt

import config
from doc_cache import DocCache
from errors import AuthExchangeError, RemoteCallError
from signer import load_signer

logger = logging.getLogger(__name__)

JWT_BEARER_GRANT = 'urn:ietf:params:oauth:grant-type:jwt-bearer'
ASSERTION_LIFETIME = 3600


@dataclass(frozen=True)
class AccessToken:
    value: str = field(repr=False)
    expires_at: float

    def is_expired(self, now):
        return now >= self.expires_at


class TokenBroker:
    def __init__(self, credential, scopes=None, token_uri=config.TOKEN_URI,
                 transport=None, cache=None, clock=time.time,
                 expiry_margin=config.TOKEN_EXPIRY_MARGIN, timeout=config.HTTP_TIMEOUT):
        self.credential = credential
        self.scopes = list(scopes or config.SCOPES_EDIT)
        self.token_uri = token_uri
        self.expiry_margin = expiry_margin
        self.timeout = timeout
        self._transport = transport
        self._clock = clock
        self._cache = cache if cache is not None else DocCache(clock=clock)
        self._signer = None
        self.exchanges = 0

    @property
    def cache_key(self):
        return f'token:{self.credential.identity}'

    @property
    def transport(self):
        if self._transport is None:
            self._transport = google.auth.transport.requests.Request()
        return self._transport

    def _get_signer(self):
        if self._signer is None:
            self._signer = load_signer(self.credential.signing_key)
        return self._signer

    def build_assertion(self, now=None):
        """Returns the signed JWT assertion as a str."""
        now = int(self._clock() if now is None else now)
        claims = {
            'iss': self.credential.identity,
            'scope': ' '.join(self.scopes),
            'aud': self.token_uri,
            'iat': now,
            'exp': now + ASSERTION_LIFETIME,
        }
        header = {'alg': 'RS256', 'typ': 'JWT'}
        return jwt.encode(self._get_signer(), claims, header=header).decode('ascii')

    def get_access_token(self):
        return self._cache.get_or_load(self.cache_key, self._exchange,
                                       expiry=lambda token: token.expires_at)

    def invalidate(self):
        self._cache.invalidate(self.cache_key)

    def _exchange(self):
        issued_at = self._clock()
        assertion = self.build_assertion(now=issued_at)
        body = urlencode({'grant_type': JWT_BEARER_GRANT, 'assertion': assertion})
        headers = {'Content-Type': 'application/x-www-form-urlencoded'}

        self.exchanges += 1
        logger.info('Requesting access token for %s', self.credential.identity)
        try:
            response = self.transport(url=self.token_uri, method='POST', body=body,
                                      headers=headers, timeout=self.timeout)
        except google_exceptions.TransportError as exc:
            raise RemoteCallError(f'Token endpoint unreachable: {exc}') from exc

        data = response.data
        text = data.decode('utf-8', 'replace') if isinstance(data, bytes) else str(data or '')
        if not 200 <= response.status < 300:
            logger.warning('Token exchange rejected with status %s', response.status)
            raise AuthExchangeError(f'Failed to get access token: {response.status}',
                                    status=response.status, body=text)

        try:
            payload = json.loads(text)
            value = payload['access_token']
        except (ValueError, KeyError, TypeError) as exc:
            raise AuthExchangeError('Token endpoint returned no access_token',
                                    status=response.status, body=text) from exc

        try:
            expires_in = int(payload.get('expires_in', ASSERTION_LIFETIME))
        except (TypeError, ValueError):
            expires_in = ASSERTION_LIFETIME
        token = AccessToken(value=value,
                            expires_at=issued_at + expires_in - self.expiry_margin)
        logger.debug('Access token cached until %s', token.expires_at)
        return token


class BrokerCredentials(google_credentials.Credentials):
    """google-auth credentials that take their bearer token from a TokenBroker."""

    def __init__(self, broker):
        super().__init__()
        self._broker = broker

    def refresh(self, request):
        token = self._broker.get_access_token()
        self.token = token.value
        # google-auth compares expiry against naive UTC datetimes.
        self.expiry = datetime.fromtimestamp(token.expires_at, tz=timezone.utc).replace(tzinfo=None)
