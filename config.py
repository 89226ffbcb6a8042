# config.py
import json
import os
from dataclasses import dataclass, field

from errors import ConfigError


def env_int(key, default):
    value = os.getenv(key)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got {value!r}")


# Google Spreadsheet ID
SPREADSHEET_ID = os.getenv('SPREADSHEET_ID', '')

# Service account identity. Either the two plain variables or the whole
# service account JSON in GOOGLE_SERVICE_ACCOUNT.
SERVICE_ACCOUNT_EMAIL = os.getenv('SERVICE_ACCOUNT_EMAIL') or os.getenv('GS_CLIENT_EMAIL', '')
PRIVATE_KEY = os.getenv('PRIVATE_KEY') or os.getenv('GS_PRIVATE_KEY', '')
GOOGLE_SERVICE_ACCOUNT = os.getenv('GOOGLE_SERVICE_ACCOUNT', '')

# OAuth Scopes
SCOPES_EDIT = ['https://www.googleapis.com/auth/spreadsheets']

TOKEN_URI = 'https://oauth2.googleapis.com/token'

# Sheet names (make sure these match the actual tabs in the spreadsheet)
SO_RAWAN_SHEET = os.getenv('SO_RAWAN_SHEET', 'SoRawan')
LIST_SO_SHEET = os.getenv('LIST_SO_SHEET', 'List_so')
ABSENSI_SHEET = os.getenv('ABSENSI_SHEET', 'Absensi')

# Seconds
HANDLE_CACHE_TTL = env_int('HANDLE_CACHE_TTL', 300)
TOKEN_EXPIRY_MARGIN = env_int('TOKEN_EXPIRY_MARGIN', 60)
HTTP_TIMEOUT = env_int('HTTP_TIMEOUT', 30)

LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
LOG_FORMAT = os.getenv('LOG_FORMAT', 'text')

PORT = env_int('PORT', 5000)


@dataclass(frozen=True)
class Credential:
    identity: str
    signing_key: str = field(repr=False)


def load_credential(email=None, private_key=None, service_account_json=None):
    """Builds the service account Credential from arguments or the environment."""
    email = email if email is not None else SERVICE_ACCOUNT_EMAIL
    private_key = private_key if private_key is not None else PRIVATE_KEY
    if service_account_json is None:
        service_account_json = GOOGLE_SERVICE_ACCOUNT

    if (not email or not private_key) and service_account_json:
        try:
            info = json.loads(service_account_json)
        except ValueError as exc:
            raise ConfigError('GOOGLE_SERVICE_ACCOUNT is not valid JSON') from exc
        if not isinstance(info, dict):
            raise ConfigError('GOOGLE_SERVICE_ACCOUNT must be a JSON object')
        email = email or info.get('client_email', '')
        private_key = private_key or info.get('private_key', '')

    missing = [name for name, value in (('SERVICE_ACCOUNT_EMAIL', email),
                                        ('PRIVATE_KEY', private_key)) if not value]
    if missing:
        raise ConfigError('Missing required environment variables',
                          details={'missing': missing})
    return Credential(identity=email.strip(), signing_key=private_key)


def require_spreadsheet_id(spreadsheet_id=None):
    spreadsheet_id = (spreadsheet_id if spreadsheet_id is not None else SPREADSHEET_ID).strip()
    if not spreadsheet_id:
        raise ConfigError('Missing required environment variables',
                          details={'missing': ['SPREADSHEET_ID']})
    return spreadsheet_id
