"""
config.py
~~~~~~~~~

Default hyperparameters and environment-driven settings.

Environment values are read at call time so that a process (or a test)
can change them after import.
"""

import os

# Network defaults
DEFAULT_LEARNING_RATE = 0.25
DEFAULT_MOMENTUM = 0.1
WEIGHT_INIT_LOW = -1.0
WEIGHT_INIT_HIGH = 1.0

# Training diagnostics: emit a progress event every N samples
DEFAULT_PROGRESS_INTERVAL = 1000

# Model store
DEFAULT_MODEL_DIR = 'models'
DEFAULT_RETENTION_DAYS = 2

DEFAULT_PORT = 8000


def get_model_dir() -> str:
    """Directory holding the SQLite model store."""
    return os.getenv('NEURO_NET_MODEL_DIR', DEFAULT_MODEL_DIR)


def get_retention_days() -> int:
    """Age in days after which stored networks are cleaned up."""
    value = os.getenv('NEURO_NET_RETENTION_DAYS')
    if value is None:
        return DEFAULT_RETENTION_DAYS
    try:
        days = int(value)
    except ValueError:
        return DEFAULT_RETENTION_DAYS
    return days if days >= 0 else DEFAULT_RETENTION_DAYS


def get_log_level() -> str:
    return os.getenv('LOG_LEVEL', 'INFO').upper()


def is_production() -> bool:
    return os.getenv('FLASK_ENV') == 'production'


def get_port() -> int:
    return int(os.getenv('PORT', DEFAULT_PORT))
