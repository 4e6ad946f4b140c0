from __future__ import annotations

from math import gcd
from pathlib import Path
from typing import Any, Sequence

import numpy as np
import soundfile as sf  # type: ignore[import]
from numpy.typing import NDArray
from scipy.signal import resample_poly

from .errors import DecodeFailedError

FloatArray = NDArray[np.float32]
AudioNumbers = NDArray[np.floating[Any]] | Sequence[float] | FloatArray

SAMPLE_RATE = 44_100


def ensure_audio_contract(audio: AudioNumbers) -> FloatArray:
    """Normalize dtype/range/shape to mono float32 within [-1, 1]."""

    mono: FloatArray = np.asarray(audio, dtype=np.float32)
    if mono.ndim > 1:
        mono = mono.mean(axis=1, dtype=np.float32)
    mono = mono.reshape(-1)
    if mono.size == 0:
        return mono
    peak = float(np.max(np.abs(mono)))
    if peak > 1.0:
        mono = mono / peak
    return mono


def rms(samples: AudioNumbers) -> float:
    array = np.asarray(samples, dtype=np.float64)
    if array.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(array * array)))


def resample(samples: FloatArray, source_rate: int, target_rate: int) -> FloatArray:
    if source_rate == target_rate or samples.size == 0:
        return samples
    divisor = gcd(source_rate, target_rate)
    converted = resample_poly(samples, target_rate // divisor, source_rate // divisor)
    return np.asarray(converted, dtype=np.float32)


def decode_file(path: str | Path, *, sample_rate: int = SAMPLE_RATE) -> FloatArray:
    """Decode an audio file into the mono float32 contract at ``sample_rate``."""

    try:
        data, source_rate = sf.read(str(path), dtype="float32", always_2d=False)
    except (RuntimeError, OSError) as exc:
        raise DecodeFailedError(f"Could not decode {Path(path).name}: {exc}") from exc
    mono = ensure_audio_contract(data)
    if mono.size == 0:
        raise DecodeFailedError(f"{Path(path).name} contains no audio")
    return resample(mono, int(source_rate), sample_rate)
