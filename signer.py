# signer.py
"""RSA-SHA256 signing with the service account private key."""
import logging

from google.auth import crypt

from errors import KeyFormatError, SigningError

logger = logging.getLogger(__name__)

PEM_BEGIN = '-----BEGIN'
PEM_END = '-----END'


def normalize_pem(key):
    """Turns escaped newlines from the environment back into real ones."""
    if isinstance(key, bytes):
        key = key.decode('utf-8')
    key = key.strip().strip('"').strip("'")
    return key.replace('\\r\\n', '\n').replace('\\n', '\n').strip() + '\n'


class ServiceAccountSigner(crypt.Signer):
    """Wraps google-auth's RSASigner and translates its failures."""

    def __init__(self, rsa_signer):
        self._signer = rsa_signer

    @property
    def key_id(self):
        return self._signer.key_id

    def sign(self, message):
        if isinstance(message, str):
            message = message.encode('utf-8')
        try:
            return self._signer.sign(message)
        except Exception as exc:
            raise SigningError(f'RSA-SHA256 signing failed: {exc}') from exc


def load_signer(key, key_id=None):
    pem = normalize_pem(key)
    if PEM_BEGIN not in pem or PEM_END not in pem:
        raise KeyFormatError('Private key is missing its PEM header or footer')
    try:
        rsa_signer = crypt.RSASigner.from_string(pem, key_id=key_id)
    except (ValueError, TypeError, IndexError) as exc:
        # Do not echo the key material back in the error.
        raise KeyFormatError('Private key could not be parsed as PEM') from exc
    logger.debug('Loaded RSA signing key (key_id=%s)', key_id)
    return ServiceAccountSigner(rsa_signer)


def sign(payload, key):
    return load_signer(key).sign(payload)
