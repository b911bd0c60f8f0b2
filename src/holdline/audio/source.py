"""Audio sources producing μ-law frames at 8 kHz mono."""

from __future__ import annotations

import functools
import logging
from pathlib import Path
from typing import BinaryIO

import numpy as np
import soundfile as sf

from holdline.audio.synth import SAMPLE_RATE, generate_beeps_pcm, generate_chimes_pcm
from holdline.rtp.pcmu import SILENCE, float_to_pcm16, pcm16_to_ulaw

logger = logging.getLogger(__name__)

RAW_ULAW_SUFFIXES = {".ulaw", ".pcmu", ".raw", ".mulaw"}
# Decoded through libsndfile, then resampled and encoded to μ-law
DECODED_SUFFIXES = {".wav", ".flac", ".ogg", ".mp3", ".aiff", ".aif"}

# Leading silence lets the caller's jitter buffer settle before audio starts
_LEAD_IN = bytes([SILENCE]) * (SAMPLE_RATE // 5)


class AudioSource:
    """Reads encoded audio into caller-supplied buffers.

    ``read`` fills as much of the buffer as it can and returns the number of
    bytes written; 0 means the source is exhausted.
    """

    def read(self, buffer: bytearray) -> int:
        raise NotImplementedError

    def close(self) -> None:
        pass

    def __enter__(self) -> AudioSource:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class BufferAudioSource(AudioSource):
    """Serves a pre-rendered μ-law buffer."""

    def __init__(self, data: bytes) -> None:
        self._data = data
        self._offset = 0

    def read(self, buffer: bytearray) -> int:
        chunk = self._data[self._offset : self._offset + len(buffer)]
        n = len(chunk)
        buffer[:n] = chunk
        self._offset += n
        return n

    def close(self) -> None:
        self._offset = len(self._data)


class RawFileAudioSource(AudioSource):
    """Streams a headerless μ-law file straight from disk."""

    def __init__(self, path: Path) -> None:
        self._file: BinaryIO = path.open("rb")

    def read(self, buffer: bytearray) -> int:
        return self._file.readinto(buffer) or 0

    def close(self) -> None:
        self._file.close()


def _resample(samples: np.ndarray, src_rate: int) -> np.ndarray:
    """Linear-interpolation resample of float samples to SAMPLE_RATE."""
    if src_rate == SAMPLE_RATE or samples.size == 0:
        return samples
    n_out = max(1, int(round(samples.size * SAMPLE_RATE / src_rate)))
    src_idx = np.arange(samples.size, dtype=np.float64)
    dst_idx = np.linspace(0, samples.size - 1, n_out)
    return np.interp(dst_idx, src_idx, samples)


def decode_audio_file(path: Path) -> np.ndarray:
    """Decode any libsndfile-readable file to float mono at SAMPLE_RATE."""
    try:
        with sf.SoundFile(str(path), mode="r") as f:
            audio = f.read(dtype="float32")
            rate = int(f.samplerate)
    except sf.LibsndfileError as exc:
        raise ValueError(f"{path}: cannot decode audio: {exc}") from exc

    if audio.ndim > 1:
        audio = np.mean(audio, axis=1)
    if rate != SAMPLE_RATE:
        logger.debug("Resampling %s from %d Hz to %d Hz", path.name, rate, SAMPLE_RATE)
    return _resample(audio, rate)


@functools.cache
def load_audio_ulaw(path: str) -> bytes:
    """μ-law rendering of an audio file, cached per process."""
    ulaw = pcm16_to_ulaw(float_to_pcm16(decode_audio_file(Path(path)), gain=1.0))
    logger.info("Rendered %s (%.1fs of audio)", path, len(ulaw) / SAMPLE_RATE)
    return ulaw


@functools.cache
def render_builtin(name: str) -> bytes:
    """μ-law rendering of a built-in sound, cached per process."""
    if name == "beeps":
        pcm = generate_beeps_pcm()
    elif name == "chimes":
        pcm = generate_chimes_pcm()
    else:
        raise KeyError(name)
    return _LEAD_IN + pcm16_to_ulaw(float_to_pcm16(pcm))


BUILTIN_SOUNDS = ("beeps", "chimes")


def _resolve(name: str) -> Path:
    path = Path(name)
    if not path.is_file():
        raise FileNotFoundError(f"Audio source {name!r} is neither built in nor a file")
    suffix = path.suffix.lower()
    if suffix not in DECODED_SUFFIXES and suffix not in RAW_ULAW_SUFFIXES:
        raise ValueError(f"Unsupported audio file type {suffix!r} for {name}")
    return path


def prepare_audio(name: str) -> None:
    """Render *name* into the cache so opening it later is cheap.

    Blocking; run it in an executor from async code.
    """
    if name in BUILTIN_SOUNDS:
        render_builtin(name)
        return
    path = _resolve(name)
    if path.suffix.lower() in DECODED_SUFFIXES:
        load_audio_ulaw(str(path.resolve()))


def open_audio_source(name: str) -> AudioSource:
    """Open *name* as a built-in sound, a decodable audio file or raw μ-law.

    The first open of a decodable file renders it, which blocks.
    """
    if name in BUILTIN_SOUNDS:
        return BufferAudioSource(render_builtin(name))

    path = _resolve(name)
    if path.suffix.lower() in RAW_ULAW_SUFFIXES:
        return RawFileAudioSource(path)
    return BufferAudioSource(load_audio_ulaw(str(path.resolve())))
