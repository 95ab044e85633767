from __future__ import annotations

import math
import re

# 0V = C4 = MIDI 60.
C4_HZ = 261.6255653005986

_NOTE_PATTERN = re.compile(r"^([a-g])([#b]?)(-?\d+)?$")
_NOTE_SEMITONES = {"c": 0, "d": 2, "e": 4, "f": 5, "g": 7, "a": 9, "b": 11}


def hz(frequency: float) -> float:
    """Convert a frequency in Hz to V/oct."""
    if frequency <= 0:
        raise ValueError("Frequency must be positive")
    return math.log2(frequency / C4_HZ)


def note(name: str) -> float:
    """Convert a note name such as ``c4``, ``c#4`` or ``db-1`` to V/oct.

    The octave defaults to 3 when omitted.
    """
    match = _NOTE_PATTERN.match(name.strip().lower())
    if not match:
        raise ValueError(f"Invalid note name: {name}")

    letter, accidental, octave_text = match.groups()
    octave = int(octave_text) if octave_text else 3
    semitone = _NOTE_SEMITONES[letter]
    if accidental == "#":
        semitone += 1
    elif accidental == "b":
        semitone -= 1

    semitones_from_c4 = (octave - 4) * 12 + semitone
    return hz(C4_HZ * 2 ** (semitones_from_c4 / 12))


def bpm(beats_per_minute: float) -> float:
    """Convert a tempo (quarter notes per minute) to V/oct. 120 BPM is 2 Hz."""
    if beats_per_minute <= 0:
        raise ValueError("BPM must be positive")
    return hz(beats_per_minute / 60)
