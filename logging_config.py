# logging_config.py
import json
import logging
import logging.config
from datetime import datetime, timezone

import config

_RESERVED = set(vars(logging.LogRecord('', 0, '', 0, '', (), None))) | {'message', 'asctime'}


class JsonFormatter(logging.Formatter):
    """One JSON object per line, extra= fields included."""

    def format(self, record):
        entry = {
            'timestamp': datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            'level': record.levelname,
            'logger': record.name,
            'msg': record.getMessage(),
        }
        if record.exc_info:
            entry['exception'] = self.formatException(record.exc_info)
        for key, value in record.__dict__.items():
            if key not in _RESERVED and key not in entry:
                entry[key] = value
        return json.dumps(entry, default=str)


def build_logging_config(level=None, fmt=None):
    level = (level or config.LOG_LEVEL).upper()
    fmt = fmt or config.LOG_FORMAT
    if fmt not in ('json', 'text'):
        fmt = 'text'
    return {
        'version': 1,
        'disable_existing_loggers': False,
        'formatters': {
            'json': {'()': JsonFormatter},
            'text': {
                'format': '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
                'datefmt': '%Y-%m-%d %H:%M:%S',
            },
        },
        'handlers': {
            'console': {
                'class': 'logging.StreamHandler',
                'level': level,
                'formatter': fmt,
                'stream': 'ext://sys.stdout',
            },
        },
        'loggers': {
            # google-api-python-client logs every request URL at INFO
            'googleapiclient.discovery': {'level': 'WARNING'},
            'werkzeug': {'level': level},
        },
        'root': {'level': level, 'handlers': ['console']},
    }


def setup_logging(level=None, fmt=None):
    logging_config = build_logging_config(level, fmt)
    logging.config.dictConfig(logging_config)
    return logging_config
