"""
Application configuration manager.
Stores settings in a JSON file under the OptiFlow home directory.
"""

import json
import logging
from pathlib import Path

from optiflow.core.constants import (
    CONFIG_PATH,
    DEFAULT_BATCH_SIZE, DEFAULT_RETRY_ATTEMPTS, DEFAULT_RETRY_DELAY_SEC,
    DEFAULT_MAX_EXECUTION_SEC, DEFAULT_INTER_JOB_PAUSE_SEC,
    DEFAULT_PROCESS_INTERVAL_SEC, DEFAULT_TARGET_SCORE, DEFAULT_RETENTION_DAYS,
    DEFAULT_STUCK_TIMEOUT_SEC, DEFAULT_HTTP_TIMEOUT_SEC,
    DEFAULT_WEBHOOK_MAX_RETRIES, DEFAULT_WEBHOOK_QUEUE_MAX_ATTEMPTS,
    DEFAULT_WEBHOOK_RETRY_BASE_SEC, DEFAULT_CACHE_TTL_SEC,
)

logger = logging.getLogger(__name__)

_DEFAULTS = {
    # Automation service
    'automation_url': '',
    'automation_api_key': '',
    # Webhook receiver
    'webhook_url': '',
    'webhook_api_key': '',
    # Site identity sent with every outbound call
    'site_url': 'http://localhost',
    'site_name': 'OptiFlow',
    # Feature flags
    'auto_process': True,
    'auto_optimize': False,
    'auto_send_webhooks': False,
    'send_update_webhooks': False,
    # Dispatcher
    'batch_size': DEFAULT_BATCH_SIZE,
    'retry_attempts': DEFAULT_RETRY_ATTEMPTS,
    'retry_delay': DEFAULT_RETRY_DELAY_SEC,
    'max_execution_time': DEFAULT_MAX_EXECUTION_SEC,
    'inter_job_pause': DEFAULT_INTER_JOB_PAUSE_SEC,
    'process_interval': DEFAULT_PROCESS_INTERVAL_SEC,
    'target_score': DEFAULT_TARGET_SCORE,
    'retention_days': DEFAULT_RETENTION_DAYS,
    'stuck_timeout': DEFAULT_STUCK_TIMEOUT_SEC,
    # Webhooks
    'http_timeout': DEFAULT_HTTP_TIMEOUT_SEC,
    'webhook_max_retries': DEFAULT_WEBHOOK_MAX_RETRIES,
    'webhook_queue_max_attempts': DEFAULT_WEBHOOK_QUEUE_MAX_ATTEMPTS,
    'webhook_retry_base': DEFAULT_WEBHOOK_RETRY_BASE_SEC,
    # Cache
    'cache_ttl': DEFAULT_CACHE_TTL_SEC,
    # Operator notification
    'operator_email': '',
    'smtp_host': '',
    'smtp_port': 25,
    'smtp_sender': 'optiflow@localhost',
}

# key → (min, max) for integer settings
_INT_BOUNDS = {
    'batch_size': (1, 50),
    'retry_attempts': (1, 20),
    'retry_delay': (1, 86400),
    'max_execution_time': (1, 3600),
    'inter_job_pause': (0, 60),
    'process_interval': (10, 86400),
    'target_score': (0, 100),
    'retention_days': (1, 3650),
    'stuck_timeout': (60, 86400),
    'http_timeout': (1, 300),
    'webhook_max_retries': (1, 10),
    'webhook_queue_max_attempts': (1, 50),
    'webhook_retry_base': (1, 86400),
    'cache_ttl': (0, 604800),
    'smtp_port': (1, 65535),
}

_BOOL_KEYS = {'auto_process', 'auto_optimize', 'auto_send_webhooks', 'send_update_webhooks'}

_SECRET_KEYS = ('automation_api_key', 'webhook_api_key')


def mask_secret(value: str) -> str:
    """Keep the last 4 characters so keys can be told apart."""
    value = str(value)
    if len(value) <= 4:
        return '*' * len(value)
    return '*' * (len(value) - 4) + value[-4:]


class AppConfig:
    """Manages application configuration stored as JSON."""

    def __init__(self, config_path: Path | None = None, overrides: dict | None = None):
        self.path = config_path or CONFIG_PATH
        self._data: dict = {}
        self.load()
        for key, value in (overrides or {}).items():
            self._data[key] = self._validate(key, value)

    def load(self):
        """Load config from disk, merging with defaults."""
        self._data = dict(_DEFAULTS)
        if self.path.exists():
            try:
                with open(self.path, 'r') as f:
                    saved = json.load(f)
                for key, value in saved.items():
                    self._data[key] = self._validate(key, value)
            except (OSError, json.JSONDecodeError) as e:
                logger.warning("Failed to load config: %s", e)

    def save(self):
        """Persist config to disk."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, 'w') as f:
            json.dump(self._data, f, indent=2)

    def get(self, key: str, default=None):
        return self._data.get(key, default)

    def set(self, key: str, value):
        value = self._validate(key, value)
        self._data[key] = value
        self.save()

    def _validate(self, key: str, value):
        """Validate and coerce config values to safe ranges."""
        if key in _INT_BOUNDS:
            lo, hi = _INT_BOUNDS[key]
            try:
                value = int(value)
            except (TypeError, ValueError):
                logger.warning("Invalid %s %r, using default", key, value)
                return _DEFAULTS[key]
            return max(lo, min(hi, value))

        if key in _BOOL_KEYS:
            if isinstance(value, str):
                return value.strip().lower() in ('1', 'true', 'yes', 'on')
            return bool(value)

        if key in ('automation_url', 'webhook_url', 'site_url'):
            return str(value or '').strip()

        return value

    def as_dict(self, redact: bool = False) -> dict:
        data = dict(self._data)
        if redact:
            for key in _SECRET_KEYS:
                if data.get(key):
                    data[key] = mask_secret(data[key])
        return data

    def __getitem__(self, key: str):
        return self._data[key]

    @property
    def automation_url(self) -> str:
        return self._data.get('automation_url', '')

    @property
    def webhook_url(self) -> str:
        return self._data.get('webhook_url', '')

    @property
    def site_url(self) -> str:
        return self._data.get('site_url', _DEFAULTS['site_url'])
