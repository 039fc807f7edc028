"""Runtime configuration for the CW trainer.

Values are read from ``CWTRAINER_*`` environment variables at import time
and fall back to the built-in defaults below.
"""

from __future__ import annotations

import os


def _get_env(key: str, default: str) -> str:
    return os.environ.get(f'CWTRAINER_{key}', default)


def _get_env_int(key: str, default: int) -> int:
    try:
        return int(_get_env(key, str(default)))
    except ValueError:
        return default


def _get_env_float(key: str, default: float) -> float:
    try:
        return float(_get_env(key, str(default)))
    except ValueError:
        return default


def _get_env_bool(key: str, default: bool) -> bool:
    value = _get_env(key, '').strip().lower()
    if value in {'1', 'true', 'yes', 'on'}:
        return True
    if value in {'0', 'false', 'no', 'off'}:
        return False
    return default


# Morse playback defaults (20 WPM / 600 Hz sine at full volume)
DEFAULT_WPM = _get_env_float('DEFAULT_WPM', 20.0)
DEFAULT_FREQUENCY = _get_env_float('DEFAULT_FREQUENCY', 600.0)
DEFAULT_VOLUME = _get_env_float('DEFAULT_VOLUME', 1.0)
DEFAULT_WAVEFORM = _get_env('DEFAULT_WAVEFORM', 'sine')

# Audio output
SAMPLE_RATE = _get_env_int('SAMPLE_RATE', 48000)
AUDIO_BACKEND = _get_env('AUDIO_BACKEND', 'sounddevice').strip().lower()

# Logging
LOG_LEVEL = _get_env('LOG_LEVEL', 'INFO').strip().upper()

# Web server
HOST = _get_env('HOST', '127.0.0.1')
PORT = _get_env_int('PORT', 5050)
DEBUG = _get_env_bool('DEBUG', False)
