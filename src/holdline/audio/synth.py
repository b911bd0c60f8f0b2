"""Built-in hold audio, synthesised at telephone quality.

All generators return ``list[float]`` normalised roughly to [-1, 1] at 8 kHz.
"""

import math

# Must match the codec sample rate for correct pitch and tempo.
SAMPLE_RATE = 8000

# C major pentatonic, one octave from C5
_PENTATONIC = [523.25, 587.33, 659.25, 783.99, 880.00, 1046.50]

# Index sequence through _PENTATONIC for one chime phrase
_PHRASE = [0, 2, 4, 3, 5, 4, 2, 1]


def tone(freq: float, duration_s: float, *, attack_s: float = 0.005) -> list[float]:
    """Sine tone with a short linear attack and release to avoid clicks."""
    n = int(SAMPLE_RATE * duration_s)
    ramp = max(1, int(SAMPLE_RATE * attack_s))
    out: list[float] = []
    for i in range(n):
        env = min(1.0, i / ramp, (n - i) / ramp)
        out.append(env * math.sin(2.0 * math.pi * freq * i / SAMPLE_RATE))
    return out


def bell(freq: float, duration_s: float, decay: float = 5.0) -> list[float]:
    """Bell-like note: fundamental plus a quiet inharmonic partial, exp decay."""
    n = int(SAMPLE_RATE * duration_s)
    out: list[float] = []
    for i in range(n):
        t = i / SAMPLE_RATE
        env = math.exp(-decay * t)
        fundamental = math.sin(2.0 * math.pi * freq * t)
        partial = 0.3 * math.sin(2.0 * math.pi * freq * 2.76 * t)
        out.append(env * (fundamental + partial) / 1.3)
    return out


def mix_into(dest: list[float], src: list[float], offset: int, gain: float) -> None:
    """Add src samples into dest at offset with gain, clipped to dest length."""
    for i, s in enumerate(src):
        pos = offset + i
        if pos >= len(dest):
            break
        dest[pos] += s * gain


def generate_beeps_pcm(
    count: int = 3, freq: float = 1000.0, beep_s: float = 0.2, gap_s: float = 0.2
) -> list[float]:
    """*count* beeps separated by silent gaps (no trailing gap)."""
    beep = tone(freq, beep_s)
    gap = [0.0] * int(SAMPLE_RATE * gap_s)
    out: list[float] = []
    for i in range(count):
        if i:
            out.extend(gap)
        out.extend(beep)
    return out


def generate_chimes_pcm(duration_s: float = 30.0, bpm: float = 96.0) -> list[float]:
    """Pentatonic bell phrase repeated for *duration_s* seconds."""
    total = int(SAMPLE_RATE * duration_s)
    step = int(SAMPLE_RATE * 60.0 / bpm / 2)  # eighth notes
    notes = {idx: bell(_PENTATONIC[idx], step * 3 / SAMPLE_RATE) for idx in set(_PHRASE)}

    phrase: list[float] = [0.0] * (step * len(_PHRASE))
    for slot, idx in enumerate(_PHRASE):
        mix_into(phrase, notes[idx], slot * step, 0.6)
    # Let the last note ring into the next phrase
    mix_into(phrase, notes[_PHRASE[-1]][step:], 0, 0.6)

    out: list[float] = [0.0] * total
    offset = 0
    while offset < total:
        chunk = min(len(phrase), total - offset)
        out[offset : offset + chunk] = phrase[:chunk]
        offset += len(phrase)
    return out
