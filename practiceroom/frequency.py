"""Note, frequency and interval math shared by the tuner and the drone.

Pitches are addressed by a linear index ``octave * 12 + pitch_class`` with
C as pitch class 0, so A4 sits at index 57. Everything here is pure.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from fractions import Fraction
from types import MappingProxyType
from typing import Literal, Mapping

from .errors import InvalidConfigError

IntervalLabel = Literal["Root", "m2", "M2", "m3", "M3", "P4", "TT", "P5", "m6", "M6", "m7", "M7"]

NOTE_NAMES: tuple[str, ...] = ("C", "C#", "D", "D#", "E", "F", "F#", "G", "G#", "A", "A#", "B")
DEFAULT_REFERENCE_PITCH = 440.0
A4_INDEX = 4 * 12 + 9

JUST_RATIOS: tuple[Fraction, ...] = (
    Fraction(1, 1),
    Fraction(16, 15),
    Fraction(9, 8),
    Fraction(6, 5),
    Fraction(5, 4),
    Fraction(4, 3),
    Fraction(45, 32),
    Fraction(3, 2),
    Fraction(8, 5),
    Fraction(5, 3),
    Fraction(16, 9),
    Fraction(15, 8),
)
INTERVAL_LABELS: tuple[IntervalLabel, ...] = (
    "Root",
    "m2",
    "M2",
    "m3",
    "M3",
    "P4",
    "TT",
    "P5",
    "m6",
    "M6",
    "m7",
    "M7",
)

_FLAT_ALIASES: Mapping[str, str] = MappingProxyType(
    {"DB": "C#", "EB": "D#", "GB": "F#", "AB": "G#", "BB": "A#"}
)
_NOTE_PATTERN = re.compile(r"^\s*([A-Ga-g])([#b]?)(-?\d+)\s*$")


@dataclass(frozen=True, slots=True)
class NotePitch:
    """A discrete pitch: pitch class 0-11 (C=0) plus octave (A4 = 440 Hz octave)."""

    pitch_class: int
    octave: int

    def __post_init__(self) -> None:
        if not 0 <= self.pitch_class <= 11:
            raise InvalidConfigError(f"pitch_class must be in 0..11, got {self.pitch_class}")

    @property
    def index(self) -> int:
        return self.octave * 12 + self.pitch_class

    @property
    def name(self) -> str:
        return NOTE_NAMES[self.pitch_class]

    def with_octave(self, octave: int) -> NotePitch:
        return NotePitch(self.pitch_class, octave)

    def __str__(self) -> str:
        return format_note(self)


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def note_from_index(index: int) -> NotePitch:
    return NotePitch(index % 12, index // 12)


def parse_note(text: str) -> NotePitch:
    """Parse names such as ``"C#4"``, ``"Bb3"`` or ``"a4"``."""
    match = _NOTE_PATTERN.match(text)
    if match is None:
        raise InvalidConfigError(f"Not a note name: {text!r}")
    letter, accidental, octave_text = match.groups()
    name = letter.upper() + accidental.upper()
    name = _FLAT_ALIASES.get(name, name)
    octave = int(octave_text)
    if name in ("CB", "E#", "B#", "FB"):
        raise InvalidConfigError(f"Unsupported enharmonic spelling: {text!r}")
    return NotePitch(NOTE_NAMES.index(name), octave)


def parse_pitch_class(text: str) -> int:
    """Parse a bare note name (``"F#"``, ``"Eb"``) into a pitch class."""
    return parse_note(f"{text.strip()}4").pitch_class


def format_note(note: NotePitch) -> str:
    return f"{NOTE_NAMES[note.pitch_class]}{note.octave}"


def note_to_frequency(note: NotePitch, reference_pitch_hz: float = DEFAULT_REFERENCE_PITCH) -> float:
    return reference_pitch_hz * 2 ** ((note.index - A4_INDEX) / 12)


def frequency_to_note(
    freq_hz: float, reference_pitch_hz: float = DEFAULT_REFERENCE_PITCH
) -> tuple[NotePitch, float]:
    """Return the nearest equal-tempered note and the deviation from it in cents."""
    if freq_hz <= 0 or reference_pitch_hz <= 0:
        raise InvalidConfigError("frequencies must be positive")
    semitones = 12 * math.log2(freq_hz / reference_pitch_hz)
    nearest = _round_half_up(semitones)
    cents = 100 * (semitones - nearest)
    return note_from_index(nearest + A4_INDEX), cents


def interval_class(root: NotePitch, other: NotePitch) -> tuple[int, int]:
    """Return ``(class_index, octave_diff)`` of ``other`` above ``root``."""
    distance = other.index - root.index
    return (distance % 12 + 12) % 12, math.floor(distance / 12)


def just_frequency(root_freq_hz: float, class_index: int, octave_diff: int) -> float:
    return root_freq_hz * float(JUST_RATIOS[class_index]) * 2**octave_diff


def cents_between(freq_a: float, freq_b: float) -> float:
    return 1200 * math.log2(freq_a / freq_b)


def just_deviation_cents(class_index: int) -> float:
    """Cents by which the just interval differs from its equal-tempered counterpart."""
    return 1200 * math.log2(float(JUST_RATIOS[class_index])) - 100 * class_index


# Tuner scale marks: where each just interval lands on a +/-25 cent needle.
JUST_INTONATION_MARKS: Mapping[int, str] = MappingProxyType(
    {
        round(just_deviation_cents(index)): f"{INTERVAL_LABELS[index]} ({round(just_deviation_cents(index)):+d})"
        for index in range(1, 12)
    }
)
