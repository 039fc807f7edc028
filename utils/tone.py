"""Tone generators driven by a keying schedule.

A generator owns an oscillator (frequency + waveform), a master level and a
keying automation lane of ``(time, value)`` steps. It is started at an
absolute time, told when to stop, and reports the natural end of playback
once through its callback.

Backends:
- OfflineToneGenerator: virtual clock, renders to memory / WAV
- TimerToneGenerator: silent, real time, ``threading.Timer`` completion
- SoundDeviceToneGenerator: real audio through a PortAudio output stream
"""

from __future__ import annotations

import bisect
import heapq
import io
import itertools
import threading
import time
import wave
from typing import Callable

import numpy as np

from utils.logging import tone_logger as logger
from utils.morse import DEFAULT_FREQUENCY, DEFAULT_VOLUME, Waveform

try:
    import sounddevice as sd
except Exception:  # pragma: no cover - PortAudio missing on this host
    sd = None

DEFAULT_SAMPLE_RATE = 48000

GEN_IDLE = 'idle'
GEN_RUNNING = 'running'
GEN_ENDED = 'ended'
GEN_STOPPED = 'stopped'


def oscillate(waveform: Waveform | str, cycles: np.ndarray) -> np.ndarray:
    """Evaluate a unit-peak waveform at ``cycles`` (phase in turns)."""
    shape = Waveform.parse(waveform)
    frac = np.mod(cycles, 1.0)
    if shape is Waveform.SINE:
        return np.sin(2.0 * np.pi * frac)
    if shape is Waveform.SQUARE:
        return np.where(frac < 0.5, 1.0, -1.0)
    if shape is Waveform.SAWTOOTH:
        return 2.0 * frac - 1.0
    # Triangle starting at zero and rising, like the sine.
    return 1.0 - 2.0 * np.abs(2.0 * np.mod(frac + 0.25, 1.0) - 1.0)


class ToneGenerator:
    """Base tone generator.

    Subclasses provide the clock (``current_time``) and decide how the stop
    time is awaited through ``_arm``/``_disarm``.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._frequency = DEFAULT_FREQUENCY
        self._waveform = Waveform.SINE
        self._level = DEFAULT_VOLUME
        self._automation_times: list[float] = []
        self._automation_values: list[float] = []
        self._start_time: float | None = None
        self._stop_time: float | None = None
        self._state = GEN_IDLE
        self._callback: Callable[[], None] | None = None

    # -- clock -------------------------------------------------------------

    @property
    def current_time(self) -> float:
        raise NotImplementedError

    # -- live controls -----------------------------------------------------

    @property
    def frequency(self) -> float:
        return self._frequency

    @frequency.setter
    def frequency(self, value: float) -> None:
        self._frequency = float(value)

    @property
    def waveform(self) -> Waveform:
        return self._waveform

    @waveform.setter
    def waveform(self, value: Waveform | str) -> None:
        self._waveform = Waveform.parse(value)

    @property
    def level(self) -> float:
        return self._level

    @level.setter
    def level(self, value: float) -> None:
        self._level = float(value)

    @property
    def state(self) -> str:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == GEN_RUNNING

    @property
    def start_time(self) -> float | None:
        return self._start_time

    @property
    def stop_time(self) -> float | None:
        return self._stop_time

    def set_callback(self, callback: Callable[[], None] | None) -> None:
        """Set the one-shot callback fired when playback ends naturally."""
        self._callback = callback

    # -- keying automation -------------------------------------------------

    def cancel_scheduled_values(self) -> None:
        with self._lock:
            self._automation_times.clear()
            self._automation_values.clear()

    def set_value_at_time(self, value: float, when: float) -> None:
        """Step the keying gain to ``value`` at absolute time ``when``."""
        with self._lock:
            idx = bisect.bisect_right(self._automation_times, when)
            if idx and self._automation_times[idx - 1] == when:
                self._automation_values[idx - 1] = float(value)
                return
            self._automation_times.insert(idx, float(when))
            self._automation_values.insert(idx, float(value))

    def gain_at(self, when: float) -> float:
        """Keying gain in effect at ``when`` (0 before the first step)."""
        idx = bisect.bisect_right(self._automation_times, when)
        return self._automation_values[idx - 1] if idx else 0.0

    def automation(self) -> list[tuple[float, float]]:
        with self._lock:
            return list(zip(self._automation_times, self._automation_values))

    # -- lifecycle ---------------------------------------------------------

    def start(self, when: float | None = None) -> None:
        with self._lock:
            if self._state == GEN_RUNNING:
                raise RuntimeError('Tone generator already started')
            previous_state = self._state
            self._start_time = self.current_time if when is None else float(when)
            self._stop_time = None
            self._state = GEN_RUNNING
            try:
                self._on_start()
            except Exception:
                self._state = previous_state
                self._start_time = None
                raise

    def stop(self, when: float | None = None) -> None:
        """Stop at ``when``; a time at or before now halts immediately.

        An immediate halt never fires the ended callback. Stopping a
        generator that is not running does nothing.
        """
        with self._lock:
            if self._state != GEN_RUNNING:
                return
            now = self.current_time
            when = now if when is None else max(float(when), self._start_time or now)
            self._stop_time = when
            if when <= now:
                self._state = GEN_STOPPED
                self._disarm()
                logger.debug('Tone generator halted at %.3fs', now)
                return
            self._arm(when)

    def _fire_ended(self) -> None:
        with self._lock:
            if self._state != GEN_RUNNING:
                return
            self._state = GEN_ENDED
            self._disarm()
            callback = self._callback
        logger.debug('Tone generator ended at %.3fs', self._stop_time or 0.0)
        if callback is not None:
            callback()

    def _on_start(self) -> None:
        pass

    def _arm(self, when: float) -> None:
        raise NotImplementedError

    def _disarm(self) -> None:
        raise NotImplementedError

    # -- rendering ---------------------------------------------------------

    def render(
        self,
        start: float,
        stop: float,
        sample_rate: int = DEFAULT_SAMPLE_RATE,
        phase: float = 0.0,
    ) -> np.ndarray:
        """Render ``[start, stop)`` with the current oscillator settings."""
        n_samples = max(0, int(round((stop - start) * sample_rate)))
        return self._render_frames(start, n_samples, sample_rate, phase)[0]

    def _render_frames(
        self,
        start: float,
        n_samples: int,
        sample_rate: int,
        phase: float,
    ) -> tuple[np.ndarray, float]:
        if n_samples <= 0:
            return np.zeros(0, dtype=np.float32), phase

        # No lock here: this runs on the audio thread while stop() may hold it.
        times = start + np.arange(n_samples, dtype=np.float64) / sample_rate
        step_times = np.asarray(list(self._automation_times), dtype=np.float64)
        step_values = np.asarray(list(self._automation_values), dtype=np.float64)
        count = min(step_times.size, step_values.size)
        step_times, step_values = step_times[:count], step_values[:count]
        if count:
            idx = np.searchsorted(step_times, times, side='right')
            key = np.where(idx > 0, step_values[np.maximum(idx - 1, 0)], 0.0)
        else:
            key = np.zeros(n_samples, dtype=np.float64)

        if self._stop_time is not None:
            key = np.where(times < self._stop_time, key, 0.0)

        step = self._frequency / sample_rate
        cycles = phase + step * np.arange(n_samples, dtype=np.float64)
        samples = oscillate(self._waveform, cycles) * key * self._level
        next_phase = float((phase + step * n_samples) % 1.0)
        return samples.astype(np.float32), next_phase


# ---------------------------------------------------------------------------
# Offline backend
# ---------------------------------------------------------------------------

class _TimerHandle:
    def __init__(self) -> None:
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class VirtualClock:
    """Manually advanced clock with a single-threaded callback queue."""

    def __init__(self, start: float = 0.0):
        self._now = float(start)
        self._queue: list[tuple[float, int, _TimerHandle, Callable[[], None]]] = []
        self._counter = itertools.count()

    def __call__(self) -> float:
        return self._now

    @property
    def now(self) -> float:
        return self._now

    def call_at(self, when: float, callback: Callable[[], None]) -> _TimerHandle:
        handle = _TimerHandle()
        heapq.heappush(self._queue, (float(when), next(self._counter), handle, callback))
        return handle

    def advance(self, seconds: float) -> None:
        self.advance_to(self._now + seconds)

    def advance_to(self, when: float) -> None:
        """Move time forward to ``when``, running callbacks that fall due."""
        while self._queue and self._queue[0][0] <= when:
            due, _, handle, callback = heapq.heappop(self._queue)
            self._now = max(self._now, due)
            if not handle.cancelled:
                callback()
        self._now = max(self._now, float(when))

    def pending(self) -> int:
        return sum(1 for entry in self._queue if not entry[2].cancelled)


class OfflineToneGenerator(ToneGenerator):
    """Generator on a :class:`VirtualClock` that renders to memory."""

    def __init__(self, clock: VirtualClock | None = None, sample_rate: int = DEFAULT_SAMPLE_RATE):
        super().__init__()
        self.clock = clock if clock is not None else VirtualClock()
        self.sample_rate = int(sample_rate)
        self._handle: _TimerHandle | None = None

    @property
    def current_time(self) -> float:
        return self.clock.now

    def _arm(self, when: float) -> None:
        self._disarm()
        self._handle = self.clock.call_at(when, self._fire_ended)

    def _disarm(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def render_all(self, sample_rate: int | None = None) -> np.ndarray:
        """Render from the start time to the stop time."""
        if self._start_time is None or self._stop_time is None:
            return np.zeros(0, dtype=np.float32)
        return self.render(self._start_time, self._stop_time, sample_rate or self.sample_rate)

    def to_wav(self, sample_rate: int | None = None) -> bytes:
        """Render the full schedule as 16-bit mono WAV bytes."""
        rate = int(sample_rate or self.sample_rate)
        samples = self.render_all(rate)
        pcm = np.clip(samples, -1.0, 1.0) * 32767.0
        buf = io.BytesIO()
        with wave.open(buf, 'wb') as wf:
            wf.setnchannels(1)
            wf.setsampwidth(2)
            wf.setframerate(rate)
            wf.writeframes(pcm.astype('<i2').tobytes())
        return buf.getvalue()


# ---------------------------------------------------------------------------
# Real-time backends
# ---------------------------------------------------------------------------

class TimerToneGenerator(ToneGenerator):
    """Silent real-time generator; completion fires from a daemon timer."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        super().__init__()
        self._clock = clock
        self._timer: threading.Timer | None = None

    @property
    def current_time(self) -> float:
        return self._clock()

    def _arm(self, when: float) -> None:
        self._disarm()
        delay = max(0.0, when - self.current_time)
        self._timer = threading.Timer(delay, self._fire_ended)
        self._timer.daemon = True
        self._timer.start()

    def _disarm(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None


class SoundDeviceToneGenerator(ToneGenerator):
    """Audible generator streaming through ``sounddevice``.

    Every audio block is rendered with the frequency, waveform and level in
    effect at that moment, so live changes are heard on the next block.
    """

    def __init__(
        self,
        sample_rate: int = DEFAULT_SAMPLE_RATE,
        device: int | str | None = None,
        blocksize: int = 256,
        clock: Callable[[], float] = time.monotonic,
    ):
        if sd is None:
            raise RuntimeError('sounddevice/PortAudio is not available on this host')
        super().__init__()
        self.sample_rate = int(sample_rate)
        self.device = device
        self.blocksize = int(blocksize)
        self._clock = clock
        self._stream = None
        self._frames = 0
        self._phase = 0.0
        self._finished_naturally = False

    @property
    def current_time(self) -> float:
        return self._clock()

    def _on_start(self) -> None:
        self._frames = 0
        self._phase = 0.0
        self._finished_naturally = False
        try:
            stream = sd.OutputStream(
                samplerate=self.sample_rate,
                channels=1,
                dtype='float32',
                blocksize=self.blocksize,
                device=self.device,
                callback=self._audio_callback,
                finished_callback=self._on_stream_finished,
            )
        except sd.PortAudioError as e:
            raise RuntimeError(f'Could not open audio output: {e}') from e
        try:
            stream.start()
        except sd.PortAudioError as e:
            stream.close()
            raise RuntimeError(f'Could not start audio output: {e}') from e
        self._stream = stream
        logger.debug('Opened output stream at %d Hz', self.sample_rate)

    def _audio_callback(self, outdata, frames, time_info, status) -> None:
        if status:
            logger.debug('Output stream status: %s', status)
        block_start = (self._start_time or 0.0) + self._frames / self.sample_rate
        samples, self._phase = self._render_frames(block_start, frames, self.sample_rate, self._phase)
        outdata[:, 0] = samples
        self._frames += frames
        stop_time = self._stop_time
        if stop_time is not None and block_start + frames / self.sample_rate >= stop_time:
            self._finished_naturally = True
            raise sd.CallbackStop

    def _on_stream_finished(self) -> None:
        if self._finished_naturally:
            self._fire_ended()

    def _arm(self, when: float) -> None:
        # The audio callback watches the stop time itself.
        pass

    def _disarm(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        if self._finished_naturally:
            # Called from the stream's own finished callback; PortAudio does
            # not allow closing a stream from its audio thread.
            threading.Thread(target=stream.close, daemon=True).start()
            return
        stream.abort()
        stream.close()
