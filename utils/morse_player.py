"""Morse playback engine.

``MorsePlayer`` encodes text, lays it out on the generator's clock and
drives a tone generator through the resulting keying envelope. One playback
session may be active at a time; natural completion is reported to the
registered ended callbacks exactly once, a forced stop is not.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable

import numpy as np

from utils.logging import morse_logger as logger
from utils.morse import (
    AlreadyPlaying,
    EmptyOrUnencodable,
    InvalidConfiguration,
    MissingCollaborator,
    PlaybackSchedule,
    TimingConfig,
    Waveform,
    encode,
    schedule,
    timing_units,
    to_notation,
)
from utils.tone import OfflineToneGenerator, SoundDeviceToneGenerator, TimerToneGenerator

try:
    from config import (
        AUDIO_BACKEND,
        DEFAULT_FREQUENCY,
        DEFAULT_VOLUME,
        DEFAULT_WAVEFORM,
        DEFAULT_WPM,
        SAMPLE_RATE,
    )
except ImportError:
    AUDIO_BACKEND = 'sounddevice'
    DEFAULT_WPM = 20.0
    DEFAULT_FREQUENCY = 600.0
    DEFAULT_VOLUME = 1.0
    DEFAULT_WAVEFORM = 'sine'
    SAMPLE_RATE = 48000

_REQUIRED_GENERATOR_METHODS = (
    'start',
    'stop',
    'set_value_at_time',
    'cancel_scheduled_values',
    'set_callback',
)


def default_config() -> TimingConfig:
    return TimingConfig.from_wpm(
        wpm=DEFAULT_WPM,
        frequency=DEFAULT_FREQUENCY,
        amplitude=DEFAULT_VOLUME,
        waveform=DEFAULT_WAVEFORM,
    )


@dataclass
class PlaybackSession:
    """One in-flight schedule owned by the player."""
    session_id: int
    text: str
    schedule: PlaybackSchedule
    started_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            'session_id': self.session_id,
            'text': self.text,
            'started_at': self.started_at,
            'schedule': self.schedule.to_dict(),
        }


class MorsePlayer:
    """Single-flight Morse playback over a tone generator."""

    def __init__(self, generator: Any, config: TimingConfig | None = None):
        if generator is None:
            raise MissingCollaborator('A tone generator is required')
        missing = [name for name in _REQUIRED_GENERATOR_METHODS if not callable(getattr(generator, name, None))]
        if missing:
            raise MissingCollaborator(f'Tone generator is missing: {", ".join(missing)}')

        self._generator = generator
        self._lock = threading.RLock()
        self._config = config if config is not None else default_config()
        self._session: PlaybackSession | None = None
        self._session_counter = 0
        self._completed = 0
        self._stopped = 0
        self._last_ended_at: float | None = None
        self._callbacks: list[Callable[[], None]] = []
        self._apply_live_settings()

    # ------------------------------------------------------------------
    # Read-only state
    # ------------------------------------------------------------------

    @property
    def generator(self) -> Any:
        return self._generator

    @property
    def config(self) -> TimingConfig:
        return self._config

    @property
    def is_playing(self) -> bool:
        return self._session is not None

    @property
    def schedule(self) -> PlaybackSchedule | None:
        session = self._session
        return session.schedule if session else None

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def configure(self, config: TimingConfig | None = None, **changes: Any) -> TimingConfig:
        """Replace or patch the timing configuration.

        Frequency, volume and waveform reach the live generator at once; the
        unit duration only affects the next ``play``. On validation failure
        the previous configuration stays in place.
        """
        with self._lock:
            new_config = config if config is not None else self._config
            if not isinstance(new_config, TimingConfig):
                raise InvalidConfiguration('config', new_config, 'must be a TimingConfig')
            if changes:
                new_config = new_config.replace(**changes)
            self._config = new_config
            self._apply_live_settings()
            return new_config

    def _apply_live_settings(self) -> None:
        self._generator.frequency = self._config.frequency
        self._generator.waveform = self._config.waveform
        self._generator.level = self._config.amplitude

    @property
    def wpm(self) -> float:
        return self._config.wpm

    @wpm.setter
    def wpm(self, value: float) -> None:
        self.configure(wpm=value)

    @property
    def duration(self) -> float:
        return self._config.unit_duration

    @duration.setter
    def duration(self, value: float) -> None:
        self.configure(unit_duration=value)

    @property
    def frequency(self) -> float:
        return self._config.frequency

    @frequency.setter
    def frequency(self, value: float) -> None:
        self.configure(frequency=value)

    @property
    def volume(self) -> float:
        return self._config.amplitude

    @volume.setter
    def volume(self, value: float) -> None:
        self.configure(amplitude=value)

    amplitude = volume

    @property
    def waveform(self) -> Waveform:
        return self._config.waveform

    @waveform.setter
    def waveform(self, value: Waveform | str) -> None:
        self.configure(waveform=value)

    def get_settings(self) -> dict[str, Any]:
        return self._config.to_dict()

    def update_settings(self, settings: dict[str, Any]) -> dict[str, Any]:
        """Apply the known keys of ``settings`` and return the result."""
        known = {'wpm', 'duration', 'frequency', 'volume', 'waveform'}
        changes = {k: v for k, v in (settings or {}).items() if k in known}
        return self.configure(**changes).to_dict()

    # ------------------------------------------------------------------
    # Ended notification
    # ------------------------------------------------------------------

    def add_ended_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if callback not in self._callbacks:
                self._callbacks.append(callback)

    def remove_ended_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    def _on_generator_ended(self, session: PlaybackSession) -> None:
        with self._lock:
            if self._session is not session:
                return
            self._session = None
            self._completed += 1
            self._last_ended_at = time.time()
            callbacks = list(self._callbacks)

        logger.info('Morse playback %d complete', session.session_id)
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception('Ended callback %r failed', callback)

    # ------------------------------------------------------------------
    # Playback
    # ------------------------------------------------------------------

    def play(self, text: str) -> PlaybackSchedule:
        """Start keying ``text`` now and return the computed schedule.

        Text made only of spaces is played as word gaps of silence and still
        ends naturally.
        """
        with self._lock:
            if self._session is not None:
                raise AlreadyPlaying('Already playing. Stop current playback first.')

            if not text or not isinstance(text, str):
                raise EmptyOrUnencodable('Valid text string is required')

            symbols = encode(text)
            if not symbols:
                raise EmptyOrUnencodable('No valid Morse code characters found in text')

            config = self._config
            generator = self._generator
            origin = generator.current_time
            plan = schedule(symbols, config, origin)

            self._session_counter += 1
            session = PlaybackSession(self._session_counter, text, plan)

            generator.cancel_scheduled_values()
            generator.set_value_at_time(0.0, plan.origin)
            for mark in plan.marks:
                generator.set_value_at_time(1.0, mark.start)
                generator.set_value_at_time(0.0, mark.stop)
            self._apply_live_settings()
            generator.set_callback(lambda: self._on_generator_ended(session))

            self._session = session
            started = False
            try:
                generator.start(plan.origin)
                started = True
                generator.stop(plan.end)
            except Exception:
                self._session = None
                if started:
                    generator.stop(generator.current_time)
                raise

        logger.info(f'Playing: {text}')
        logger.info(f'Morse: {to_notation(text)}')
        logger.info(f'Duration: {plan.origin:.3f}s - {plan.end:.3f}s ({timing_units(symbols)} units)')
        return plan

    def stop(self) -> bool:
        """Cut the current playback short; no-op when idle.

        Returns True if a session was stopped. The ended callbacks are not
        notified for a forced stop.
        """
        with self._lock:
            session = self._session
            if session is None:
                return False
            self._session = None
            self._stopped += 1
            self._generator.stop(self._generator.current_time)

        logger.info('Morse playback %d stopped', session.session_id)
        return True

    def get_status(self) -> dict[str, Any]:
        with self._lock:
            session = self._session
            return {
                'running': session is not None,
                'settings': self._config.to_dict(),
                'session': session.to_dict() if session else None,
                'sessions_started': self._session_counter,
                'sessions_completed': self._completed,
                'sessions_stopped': self._stopped,
                'last_ended_at': self._last_ended_at,
            }


# ---------------------------------------------------------------------------
# Offline rendering
# ---------------------------------------------------------------------------

def _play_offline(text: str, config: TimingConfig | None, sample_rate: int) -> OfflineToneGenerator:
    generator = OfflineToneGenerator(sample_rate=sample_rate)
    MorsePlayer(generator, config=config).play(text)
    return generator


def render_morse(
    text: str,
    config: TimingConfig | None = None,
    sample_rate: int = SAMPLE_RATE,
) -> np.ndarray:
    """Render ``text`` to float32 samples without touching live playback."""
    return _play_offline(text, config, sample_rate).render_all(sample_rate)


def render_morse_wav(
    text: str,
    config: TimingConfig | None = None,
    sample_rate: int = SAMPLE_RATE,
) -> bytes:
    """Render ``text`` as 16-bit mono WAV bytes."""
    return _play_offline(text, config, sample_rate).to_wav(sample_rate)


# ---------------------------------------------------------------------------
# Process-wide player
# ---------------------------------------------------------------------------

_player: MorsePlayer | None = None
_player_lock = threading.Lock()


def create_tone_generator(backend: str = AUDIO_BACKEND, sample_rate: int = SAMPLE_RATE) -> Any:
    backend = str(backend or '').strip().lower()
    if backend == 'sounddevice':
        return SoundDeviceToneGenerator(sample_rate=sample_rate)
    if backend == 'timer':
        return TimerToneGenerator()
    raise ValueError(f'Unknown audio backend: {backend}')


def get_morse_player() -> MorsePlayer:
    """Get or create the global Morse player instance."""
    global _player
    with _player_lock:
        if _player is None:
            _player = MorsePlayer(create_tone_generator())
            logger.info('Morse player created with %s backend', AUDIO_BACKEND)
        return _player


def reset_morse_player() -> None:
    """Stop and drop the global player (used by tests and reconfiguration)."""
    global _player
    with _player_lock:
        if _player is not None:
            _player.stop()
        _player = None
