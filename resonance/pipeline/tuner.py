# resonance/pipeline/tuner.py
"""Note name and cents offset for a tracked frequency."""
from __future__ import annotations

from functools import lru_cache
from typing import Optional

from music21 import pitch

from .detectors import hz_to_midi
from .models import PitchName


@lru_cache(maxsize=128)
def _note_name(midi: int) -> str:
    # music21 spells flats with '-' (B-4); show them as 'b'
    return pitch.Pitch(midi=midi).nameWithOctave.replace("-", "b")


def describe_pitch(frequency: float) -> Optional[PitchName]:
    """Nearest equal-tempered note (A4 = 440 Hz) and the offset from it in cents."""
    if not frequency or frequency <= 0.0:
        return None
    midi_float = hz_to_midi(frequency)
    midi = int(round(midi_float))
    if midi < 0 or midi > 127:
        return None
    return PitchName(name=_note_name(midi), midi=midi, cents=(midi_float - midi) * 100.0)
