"""Morse code (CW) encoding and timing.

Pipeline:
- Text -> Symbols through a fixed alphabet table (unknown characters dropped)
- Symbols -> PlaybackSchedule of absolute key-down/key-up timestamps
- The schedule is handed to a tone generator by ``utils.morse_player``

Timing follows the PARIS calibration: one dot lasts ``1.2 / wpm`` seconds,
a dash is 3 dots, elements are separated by 1 dot, characters by a further
3 dots and words by 7 dots.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Any, Iterable, Mapping, NamedTuple

# Seconds per dot at 1 WPM ("PARIS" = 50 units per word).
PARIS_CONSTANT = 1.2

DOT_UNITS = 1
DASH_UNITS = 3
ELEMENT_GAP_UNITS = 1
CHARACTER_GAP_UNITS = 3
WORD_GAP_UNITS = 7

DEFAULT_WPM = 20
DEFAULT_FREQUENCY = 600.0
DEFAULT_VOLUME = 1.0
DEFAULT_WAVEFORM = 'sine'


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class MorseError(Exception):
    """Base class for Morse playback errors."""


class InvalidConfiguration(MorseError, ValueError):
    """A timing configuration field is outside its valid domain."""

    def __init__(self, field: str, value: Any, message: str):
        self.field = field
        self.value = value
        super().__init__(f'Invalid {field}: {value!r} ({message})')


class AlreadyPlaying(MorseError, RuntimeError):
    """``play`` was called while a playback session is active."""


class EmptyOrUnencodable(MorseError, ValueError):
    """Text is empty or contains nothing that can be keyed."""


class MissingCollaborator(MorseError, TypeError):
    """The engine was built without a usable tone generator."""


# ---------------------------------------------------------------------------
# Alphabet
# ---------------------------------------------------------------------------

# International Morse Code, character -> notation
CHAR_TO_MORSE: dict[str, str] = {
    'a': '.-', 'b': '-...', 'c': '-.-.', 'd': '-..', 'e': '.',
    'f': '..-.', 'g': '--.', 'h': '....', 'i': '..', 'j': '.---',
    'k': '-.-', 'l': '.-..', 'm': '--', 'n': '-.', 'o': '---',
    'p': '.--.', 'q': '--.-', 'r': '.-.', 's': '...', 't': '-',
    'u': '..-', 'v': '...-', 'w': '.--', 'x': '-..-', 'y': '-.--',
    'z': '--..',
    '1': '.----', '2': '..---', '3': '...--', '4': '....-', '5': '.....',
    '6': '-....', '7': '--...', '8': '---..', '9': '----.', '0': '-----',
    '/': '-..-.', '?': '..--..', '=': '-...-', '@': '.--.-.',
}


class Symbol(Enum):
    """Keying element produced by the encoder."""
    DOT = 'dot'
    DASH = 'dash'
    CHARACTER_GAP = 'character_gap'
    WORD_GAP = 'word_gap'

    @property
    def is_mark(self) -> bool:
        return self in (Symbol.DOT, Symbol.DASH)

    @property
    def units(self) -> int:
        """Dot units consumed by this symbol, trailing element gap included."""
        return _SYMBOL_UNITS[self]


_SYMBOL_UNITS = {
    Symbol.DOT: DOT_UNITS + ELEMENT_GAP_UNITS,
    Symbol.DASH: DASH_UNITS + ELEMENT_GAP_UNITS,
    Symbol.CHARACTER_GAP: CHARACTER_GAP_UNITS,
    Symbol.WORD_GAP: WORD_GAP_UNITS,
}

_NOTATION_SYMBOLS = {'.': Symbol.DOT, '-': Symbol.DASH}


def _build_alphabet() -> Mapping[str, tuple[Symbol, ...]]:
    table: dict[str, tuple[Symbol, ...]] = {
        char: tuple(_NOTATION_SYMBOLS[element] for element in notation)
        for char, notation in CHAR_TO_MORSE.items()
    }
    table[' '] = (Symbol.WORD_GAP,)
    return MappingProxyType(table)


ALPHABET: Mapping[str, tuple[Symbol, ...]] = _build_alphabet()


class Waveform(str, Enum):
    """Oscillator shapes supported by the tone generators."""
    SINE = 'sine'
    SQUARE = 'square'
    SAWTOOTH = 'sawtooth'
    TRIANGLE = 'triangle'

    @classmethod
    def parse(cls, value: Any) -> Waveform:
        if isinstance(value, cls):
            return value
        text = str(value or '').strip().lower()
        try:
            return cls(text)
        except ValueError:
            valid = ', '.join(w.value for w in cls)
            raise InvalidConfiguration('waveform', value, f'must be one of: {valid}') from None


# ---------------------------------------------------------------------------
# Timing configuration
# ---------------------------------------------------------------------------

def _positive_float(field: str, value: Any) -> float:
    if isinstance(value, bool):
        raise InvalidConfiguration(field, value, 'must be a number')
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        raise InvalidConfiguration(field, value, 'must be a number') from None
    if not parsed > 0 or parsed == float('inf'):
        raise InvalidConfiguration(field, value, 'must be positive')
    return parsed


@dataclass(frozen=True)
class TimingConfig:
    """Validated speed/pitch/volume/waveform snapshot.

    Instances are immutable; use :meth:`replace` (or the ``with_*`` helpers)
    to derive a new validated configuration.
    """
    unit_duration: float = PARIS_CONSTANT / DEFAULT_WPM
    frequency: float = DEFAULT_FREQUENCY
    amplitude: float = DEFAULT_VOLUME
    waveform: Waveform = Waveform.SINE

    def __post_init__(self) -> None:
        object.__setattr__(self, 'unit_duration', _positive_float('unit_duration', self.unit_duration))
        object.__setattr__(self, 'frequency', _positive_float('frequency', self.frequency))

        amplitude = self.amplitude
        if isinstance(amplitude, bool):
            raise InvalidConfiguration('amplitude', amplitude, 'must be a number')
        try:
            amplitude = float(amplitude)
        except (TypeError, ValueError):
            raise InvalidConfiguration('amplitude', self.amplitude, 'must be a number') from None
        if not 0.0 <= amplitude <= 1.0:
            raise InvalidConfiguration('amplitude', self.amplitude, 'must be between 0 and 1')
        object.__setattr__(self, 'amplitude', amplitude)

        object.__setattr__(self, 'waveform', Waveform.parse(self.waveform))

    @classmethod
    def from_wpm(
        cls,
        wpm: float = DEFAULT_WPM,
        frequency: float = DEFAULT_FREQUENCY,
        amplitude: float = DEFAULT_VOLUME,
        waveform: Waveform | str = DEFAULT_WAVEFORM,
    ) -> TimingConfig:
        return cls(
            unit_duration=PARIS_CONSTANT / _positive_float('wpm', wpm),
            frequency=frequency,
            amplitude=amplitude,
            waveform=waveform,
        )

    @property
    def wpm(self) -> float:
        return PARIS_CONSTANT / self.unit_duration

    @property
    def duration(self) -> float:
        return self.unit_duration

    @property
    def volume(self) -> float:
        return self.amplitude

    def with_wpm(self, wpm: float) -> TimingConfig:
        return dataclasses.replace(self, unit_duration=PARIS_CONSTANT / _positive_float('wpm', wpm))

    def with_duration(self, duration: float) -> TimingConfig:
        return dataclasses.replace(self, unit_duration=duration)

    def replace(self, **changes: Any) -> TimingConfig:
        """Return a copy with ``changes`` applied.

        Accepts the field names plus the ``wpm``, ``duration`` and ``volume``
        aliases. ``wpm`` and ``duration``/``unit_duration`` are mutually
        exclusive.
        """
        changes = {k: v for k, v in changes.items() if v is not None}
        if 'duration' in changes:
            changes['unit_duration'] = changes.pop('duration')
        if 'volume' in changes:
            changes['amplitude'] = changes.pop('volume')
        if 'wpm' in changes:
            if 'unit_duration' in changes:
                raise InvalidConfiguration('wpm', changes['wpm'], 'cannot be combined with duration')
            changes['unit_duration'] = PARIS_CONSTANT / _positive_float('wpm', changes.pop('wpm'))

        fields = {f.name for f in dataclasses.fields(self)}
        unknown = sorted(set(changes) - fields)
        if unknown:
            raise InvalidConfiguration(unknown[0], changes[unknown[0]], 'unknown setting')
        return dataclasses.replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            'wpm': round(self.wpm, 3),
            'duration': self.unit_duration,
            'frequency': self.frequency,
            'volume': self.amplitude,
            'waveform': self.waveform.value,
        }


# ---------------------------------------------------------------------------
# Encoder
# ---------------------------------------------------------------------------

def encode(text: str) -> tuple[Symbol, ...]:
    """Encode ``text`` into keying symbols.

    Matching is case-insensitive and characters missing from the alphabet
    are dropped. A CHARACTER_GAP separates consecutive non-space
    characters; a space contributes its WORD_GAP instead.
    """
    symbols: list[Symbol] = []
    previous: str | None = None
    for char in (text or '').lower():
        elements = ALPHABET.get(char)
        if elements is None:
            continue
        if previous is not None and previous != ' ' and char != ' ':
            symbols.append(Symbol.CHARACTER_GAP)
        symbols.extend(elements)
        previous = char
    return tuple(symbols)


def to_notation(text: str) -> str:
    """Return dot/dash notation for ``text``, words separated by ``/``."""
    words = []
    for word in (text or '').lower().split(' '):
        codes = [CHAR_TO_MORSE[ch] for ch in word if ch in CHAR_TO_MORSE]
        if codes:
            words.append(' '.join(codes))
    return ' / '.join(words)


def has_marks(symbols: Iterable[Symbol]) -> bool:
    return any(symbol.is_mark for symbol in symbols)


def timing_units(symbols: Iterable[Symbol]) -> int:
    """Total dot units occupied by ``symbols``."""
    return sum(symbol.units for symbol in symbols)


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------

class Mark(NamedTuple):
    """Key-down interval in absolute clock seconds."""
    start: float
    stop: float


@dataclass(frozen=True)
class PlaybackSchedule:
    """Precomputed keying envelope for one ``play`` call."""
    origin: float
    end: float
    amplitude: float
    unit_duration: float
    marks: tuple[Mark, ...]

    @property
    def transitions(self) -> tuple[tuple[float, float], ...]:
        """Ordered ``(timestamp, gain)`` pairs; every mark opens and closes."""
        out: list[tuple[float, float]] = []
        for mark in self.marks:
            out.append((mark.start, self.amplitude))
            out.append((mark.stop, 0.0))
        return tuple(out)

    @property
    def duration(self) -> float:
        return self.end - self.origin

    def to_dict(self) -> dict[str, Any]:
        return {
            'origin': self.origin,
            'end': self.end,
            'duration': round(self.duration, 6),
            'marks': len(self.marks),
            'amplitude': self.amplitude,
            'unit_duration': self.unit_duration,
        }


def schedule(symbols: Iterable[Symbol], config: TimingConfig, origin: float) -> PlaybackSchedule:
    """Lay ``symbols`` out on the clock starting at ``origin``.

    The cursor advances by the symbol's units; marks additionally record a
    key-down at the cursor and a key-up after the mark length.
    """
    unit = config.unit_duration
    t = float(origin)
    marks: list[Mark] = []
    for symbol in symbols:
        if symbol is Symbol.DOT:
            marks.append(Mark(t, t + DOT_UNITS * unit))
            t += DOT_UNITS * unit
            t += ELEMENT_GAP_UNITS * unit
        elif symbol is Symbol.DASH:
            marks.append(Mark(t, t + DASH_UNITS * unit))
            t += DASH_UNITS * unit
            t += ELEMENT_GAP_UNITS * unit
        elif symbol is Symbol.CHARACTER_GAP:
            t += CHARACTER_GAP_UNITS * unit
        elif symbol is Symbol.WORD_GAP:
            t += WORD_GAP_UNITS * unit
    return PlaybackSchedule(
        origin=float(origin),
        end=t,
        amplitude=config.amplitude,
        unit_duration=unit,
        marks=tuple(marks),
    )
