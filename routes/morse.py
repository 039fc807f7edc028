"""CW/Morse playback routes."""

from __future__ import annotations

import io
from typing import Any

from flask import Blueprint, Response, jsonify, request, send_file

from utils.logging import routes_logger as logger
from utils.morse import (
    AlreadyPlaying,
    EmptyOrUnencodable,
    InvalidConfiguration,
    Symbol,
    encode,
    has_marks,
    schedule,
    timing_units,
    to_notation,
)
from utils.morse_player import get_morse_player, render_morse_wav

morse_bp = Blueprint('morse', __name__)

SETTING_KEYS = ('wpm', 'frequency', 'volume', 'waveform')

# Upper bound on text accepted by one request.
MAX_TEXT_LENGTH = 2000

# Upper bound on the audio length produced by /morse/render.
MAX_RENDER_SECONDS = 600.0


def _error(message: str, status: int, **extra: Any) -> tuple[Response, int]:
    payload: dict[str, Any] = {'status': 'error', 'message': message}
    payload.update(extra)
    return jsonify(payload), status


def _settings_from(data: dict[str, Any]) -> dict[str, Any]:
    return {key: data[key] for key in SETTING_KEYS if data.get(key) is not None}


def _text_from(data: dict[str, Any]) -> tuple[str, tuple[Response, int] | None]:
    text = str(data.get('text') or '').strip()
    if len(text) > MAX_TEXT_LENGTH:
        return text, _error(f'Text must be at most {MAX_TEXT_LENGTH} characters', 400)
    return text, None


def _require_symbols(text: str) -> tuple[Symbol, ...]:
    symbols = encode(text)
    if not symbols:
        raise EmptyOrUnencodable('No valid Morse code characters found in text')
    return symbols


def _player_or_error():
    try:
        return get_morse_player(), None
    except (RuntimeError, ValueError) as e:
        logger.error(f'Morse player unavailable: {e}')
        return None, _error(f'Audio output unavailable: {e}', 503)


@morse_bp.route('/morse/play', methods=['POST'])
def play_morse() -> Response:
    data = request.json or {}

    text, error = _text_from(data)
    if error:
        return error

    player, error = _player_or_error()
    if error:
        return error

    try:
        if player.is_playing:
            raise AlreadyPlaying('Already playing. Stop current playback first.')
        _require_symbols(text)
        settings = _settings_from(data)
        if settings:
            player.update_settings(settings)
        plan = player.play(text)
    except InvalidConfiguration as e:
        return _error(str(e), 400, field=e.field)
    except EmptyOrUnencodable as e:
        return _error(str(e), 400)
    except AlreadyPlaying as e:
        return _error(str(e), 409, state='playing')
    except RuntimeError as e:
        logger.error(f'Morse playback failed to start: {e}')
        return _error(f'Audio output unavailable: {e}', 503)

    return jsonify({
        'status': 'playing',
        'notation': to_notation(text),
        'settings': player.get_settings(),
        'schedule': plan.to_dict(),
    })


@morse_bp.route('/morse/stop', methods=['POST'])
def stop_morse() -> Response:
    player, error = _player_or_error()
    if error:
        return error

    if not player.stop():
        return jsonify({'status': 'not_running'})
    return jsonify({'status': 'stopped'})


@morse_bp.route('/morse/status')
def morse_status() -> Response:
    player, error = _player_or_error()
    if error:
        return error
    return jsonify(player.get_status())


@morse_bp.route('/morse/config', methods=['GET', 'POST'])
def morse_config() -> Response:
    player, error = _player_or_error()
    if error:
        return error

    if request.method == 'GET':
        return jsonify({'status': 'ok', 'settings': player.get_settings()})

    data = request.json or {}
    try:
        settings = player.update_settings(_settings_from(data))
    except InvalidConfiguration as e:
        return _error(str(e), 400, field=e.field)
    return jsonify({'status': 'ok', 'settings': settings, 'running': player.is_playing})


@morse_bp.route('/morse/encode', methods=['POST'])
def encode_morse() -> Response:
    """Preview the keying of a text at the current speed."""
    data = request.json or {}
    text, error = _text_from(data)
    if error:
        return error

    player, error = _player_or_error()
    if error:
        return error

    symbols = encode(text)
    units = timing_units(symbols)
    return jsonify({
        'status': 'ok',
        'notation': to_notation(text),
        'symbols': [symbol.value for symbol in symbols],
        'playable': bool(symbols),
        'audible': has_marks(symbols),
        'units': units,
        'duration': round(units * player.duration, 6),
    })


@morse_bp.route('/morse/render', methods=['POST'])
def render_morse_file() -> Response:
    """Render text to a WAV file without touching live playback."""
    data = request.json or {}
    text, error = _text_from(data)
    if error:
        return error

    player, error = _player_or_error()
    if error:
        return error

    try:
        config = player.config.replace(**_settings_from(data))
        plan = schedule(_require_symbols(text), config, 0.0)
    except InvalidConfiguration as e:
        return _error(str(e), 400, field=e.field)
    except EmptyOrUnencodable as e:
        return _error(str(e), 400)

    if plan.duration > MAX_RENDER_SECONDS:
        return _error(
            f'Rendered audio would last {plan.duration:.0f}s; the limit is {MAX_RENDER_SECONDS:.0f}s',
            400,
            duration=round(plan.duration, 3),
        )

    wav = render_morse_wav(text, config)
    return send_file(
        io.BytesIO(wav),
        mimetype='audio/wav',
        as_attachment=True,
        download_name='morse.wav',
    )
