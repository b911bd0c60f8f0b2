"""G.711 μ-law (PCMU) encoding."""

from __future__ import annotations

import functools

import numpy as np

SAMPLE_RATE = 8000
ULAW_BIAS = 0x84
ULAW_CLIP = 32635
SILENCE = 0xFF


def linear_to_ulaw(sample: int) -> int:
    """Convert one 16-bit signed PCM sample to an 8-bit μ-law code."""
    sign = 0
    if sample < 0:
        sign = 0x80
        sample = -sample
    sample = min(sample, ULAW_CLIP) + ULAW_BIAS

    exponent = 7
    mask = 0x4000
    while exponent > 0 and not (sample & mask):
        exponent -= 1
        mask >>= 1

    mantissa = (sample >> (exponent + 3)) & 0x0F
    return ~(sign | (exponent << 4) | mantissa) & 0xFF


@functools.cache
def _ulaw_table() -> np.ndarray:
    # Indexed by sample + 32768
    return np.array([linear_to_ulaw(s) for s in range(-32768, 32768)], dtype=np.uint8)


def pcm16_to_ulaw(samples: np.ndarray) -> bytes:
    """Encode an int16 sample array to μ-law bytes."""
    if samples.size == 0:
        return b""
    index = samples.astype(np.int32) + 32768
    return _ulaw_table()[index].tobytes()


def float_to_pcm16(samples: list[float] | np.ndarray, gain: float = 0.8) -> np.ndarray:
    """Scale float samples in [-1, 1] to clipped int16."""
    arr = np.asarray(samples, dtype=np.float64) * gain * 32767.0
    return np.clip(np.round(arr), -32768, 32767).astype(np.int16)
