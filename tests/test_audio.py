from pathlib import Path

import numpy as np
import pytest
import soundfile as sf  # type: ignore[import]

from practiceroom.audio import decode_file, ensure_audio_contract, resample, rms
from practiceroom.errors import DecodeFailedError


def test_ensure_audio_contract_mixes_down_and_normalises() -> None:
    stereo = np.array([[2.0, 0.0], [-1.0, -1.0]], dtype=np.float32)
    out = ensure_audio_contract(stereo)
    assert out.dtype == np.float32
    assert out.shape == (2,)
    assert np.max(np.abs(out)) == pytest.approx(1.0)


def test_rms_of_empty_is_zero() -> None:
    assert rms([]) == 0.0
    assert rms([0.5, -0.5]) == pytest.approx(0.5)


def test_resample_changes_length() -> None:
    samples = np.zeros(480, dtype=np.float32)
    assert resample(samples, 48_000, 44_100).size == 441
    assert resample(samples, 48_000, 48_000) is samples


def test_decode_file_resamples(tmp_path: Path) -> None:
    target = tmp_path / "click.wav"
    sf.write(str(target), np.full((2400, 2), 0.25, dtype=np.float32), 48_000)

    decoded = decode_file(target, sample_rate=24_000)

    assert decoded.dtype == np.float32
    assert decoded.ndim == 1
    assert decoded.size == 1200


def test_decode_file_rejects_garbage(tmp_path: Path) -> None:
    target = tmp_path / "broken.wav"
    target.write_bytes(b"not audio at all")
    with pytest.raises(DecodeFailedError):
        decode_file(target)
    with pytest.raises(DecodeFailedError):
        decode_file(tmp_path / "missing.wav")
