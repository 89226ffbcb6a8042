# errors.py
"""Errors raised by the sheets bridge, each carrying the HTTP status it maps to."""


class SheetsBridgeError(Exception):
    status_code = 500

    def __init__(self, message, details=None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self):
        body = {'success': False, 'error': self.message}
        if self.details is not None:
            body['details'] = self.details
        return body


class ConfigError(SheetsBridgeError):
    """Missing or malformed configuration (credentials, spreadsheet id)."""


class KeyFormatError(SheetsBridgeError):
    """The private key could not be parsed as PEM."""


class SigningError(SheetsBridgeError):
    """The signing operation itself failed."""


class AuthExchangeError(SheetsBridgeError):
    """The token endpoint rejected the assertion."""
    status_code = 502

    def __init__(self, message, status=None, body=None):
        super().__init__(message, details={'status': status, 'body': body})
        self.status = status
        self.body = body


class RemoteCallError(SheetsBridgeError):
    """Transient network or backend failure."""
    status_code = 500


class TableNotFoundError(SheetsBridgeError):
    status_code = 404


class RowNotFoundError(SheetsBridgeError):
    status_code = 404


class InvalidFieldError(SheetsBridgeError):
    status_code = 400


class HeaderMissingError(SheetsBridgeError):
    status_code = 400


class SchemaError(SheetsBridgeError):
    """A sheet is missing a column the code depends on."""


class BatchValidationError(SheetsBridgeError):
    status_code = 400


class RequestCancelledError(SheetsBridgeError):
    status_code = 499
