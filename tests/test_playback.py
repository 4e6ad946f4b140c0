from types import SimpleNamespace
from typing import Any

import numpy as np
import pytest

from practiceroom import playback
from practiceroom.config import PureTimbre, RetroTimbre
from practiceroom.errors import AcquisitionFailedError, InvalidConfigError
from practiceroom.playback import DeviceInput, DeviceOutput, Mixer, OscillatorVoice, build_voice


def test_mixer_places_samples_frame_accurately() -> None:
    mixer = Mixer(sample_rate=1000)
    mixer.schedule("click", np.full(5, 0.5, dtype=np.float32), at=0.01)

    out = mixer.render(20)

    assert np.allclose(out[10:15], 0.5)
    assert np.allclose(out[:10], 0.0)
    assert np.allclose(out[15:], 0.0)
    assert mixer.current_time() == pytest.approx(0.02)


def test_mixer_continues_samples_across_blocks() -> None:
    mixer = Mixer(sample_rate=1000)
    mixer.schedule("click", np.ones(8, dtype=np.float32) * 0.25, at=0.006)

    first = mixer.render(10)
    second = mixer.render(10)

    assert np.allclose(first[6:], 0.25)
    assert np.allclose(second[:4], 0.25)
    assert np.allclose(second[4:], 0.0)


def test_mixer_starts_late_triggers_at_block_head() -> None:
    mixer = Mixer(sample_rate=1000)
    mixer.render(50)
    mixer.schedule("click", np.ones(3, dtype=np.float32) * 0.5, at=0.01)

    out = mixer.render(10)

    assert np.allclose(out[:3], 0.5)


def test_cancel_can_keep_sounding_samples() -> None:
    mixer = Mixer(sample_rate=1000)
    mixer.schedule("click", np.ones(30, dtype=np.float32) * 0.1, at=0.0)
    mixer.schedule("click", np.ones(30, dtype=np.float32) * 0.1, at=0.1)
    mixer.schedule("other", np.ones(30, dtype=np.float32) * 0.1, at=0.1)
    mixer.render(10)

    removed = mixer.cancel("click", include_playing=False)

    assert removed == 1
    assert mixer.scheduled_times("click") == [0.0]
    assert mixer.scheduled_times("other") == [pytest.approx(0.1)]


def test_cancel_including_playing_silences_owner() -> None:
    mixer = Mixer(sample_rate=1000)
    mixer.schedule("click", np.ones(30, dtype=np.float32) * 0.1, at=0.0)
    mixer.render(10)

    assert mixer.cancel("click") == 1
    assert np.allclose(mixer.render(10), 0.0)


def test_voice_glides_to_new_frequency_without_restarting() -> None:
    voice = OscillatorVoice("sine", 100.0, sample_rate=1000, glide=0.05)
    voice.render(100)
    voice.set_frequency(200.0)

    voice.render(20)
    assert 100.0 < voice.frequency < 200.0
    voice.render(1000)
    assert voice.frequency == pytest.approx(200.0, rel=1e-3)
    assert voice.target_frequency == 200.0


def test_voice_release_finishes() -> None:
    voice = OscillatorVoice("sine", 100.0, sample_rate=1000, attack=0.0, release=0.01)
    voice.render(10)
    voice.release()

    tail = voice.render(20)

    assert voice.finished
    assert np.allclose(tail[10:], 0.0)


def test_voice_rejects_non_positive_frequency() -> None:
    with pytest.raises(InvalidConfigError):
        OscillatorVoice("sine", 0.0)
    voice = OscillatorVoice("sine", 220.0)
    with pytest.raises(InvalidConfigError):
        voice.set_frequency(-1.0)


def test_build_voice_matches_timbre() -> None:
    pure = build_voice(PureTimbre(), 220.0, sample_rate=8000)
    retro = build_voice(RetroTimbre(), 220.0, sample_rate=8000)

    assert pure.waveform == "sine"
    assert retro.waveform == "square"
    block = retro.render(4000)
    assert np.max(np.abs(block)) <= RetroTimbre().gain * 1.1


def test_mixer_replaces_voice_on_same_key() -> None:
    mixer = Mixer(sample_rate=1000)
    key = ("drone", 0)
    first = OscillatorVoice("sine", 100.0, sample_rate=1000)
    second = OscillatorVoice("sine", 150.0, sample_rate=1000)

    mixer.start_voice(key, first)
    mixer.start_voice(key, second)

    assert mixer.voice(key) is second
    assert mixer.voice_keys() == [key]
    mixer.retune_voice(key, 175.0)
    assert second.target_frequency == 175.0
    mixer.stop_voice(key)
    assert mixer.voice(key) is None
    with pytest.raises(KeyError):
        mixer.retune_voice(key, 100.0)


def test_stopped_voice_fades_out() -> None:
    mixer = Mixer(sample_rate=1000)
    mixer.start_voice("v", OscillatorVoice("sine", 50.0, sample_rate=1000, attack=0.0, release=0.05))
    assert np.max(np.abs(mixer.render(100))) > 0.0

    mixer.stop_voice("v")
    mixer.render(100)

    assert np.allclose(mixer.render(100), 0.0)


def test_device_input_ring_buffer_keeps_latest_window() -> None:
    stream = DeviceInput(sample_rate=1000, capacity=8)
    stream.write(np.arange(5, dtype=np.float32))
    stream.write(np.arange(5, 11, dtype=np.float32))

    window = stream.read_window(4)

    assert window.tolist() == [7.0, 8.0, 9.0, 10.0]


class _PortAudioError(Exception):
    pass


class _UnstartableStream:
    created: list["_UnstartableStream"] = []

    def __init__(self, **kwargs: Any) -> None:
        self.kwargs = kwargs
        self.closed = False
        _UnstartableStream.created.append(self)

    def start(self) -> None:
        raise _PortAudioError("device unavailable")

    def stop(self) -> None:
        pass

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def unstartable_device(monkeypatch: pytest.MonkeyPatch) -> list[_UnstartableStream]:
    _UnstartableStream.created = []
    fake = SimpleNamespace(
        PortAudioError=_PortAudioError,
        OutputStream=_UnstartableStream,
        InputStream=_UnstartableStream,
    )
    monkeypatch.setattr(playback, "_load_sounddevice", lambda: fake)
    return _UnstartableStream.created


def test_output_that_fails_to_start_is_closed(unstartable_device: list[_UnstartableStream]) -> None:
    output = DeviceOutput(8000)

    with pytest.raises(AcquisitionFailedError):
        output.open()

    assert len(unstartable_device) == 1
    assert unstartable_device[0].closed


def test_input_that_fails_to_start_is_closed(unstartable_device: list[_UnstartableStream]) -> None:
    microphone = DeviceInput(sample_rate=8000)

    with pytest.raises(AcquisitionFailedError):
        microphone.open()

    assert len(unstartable_device) == 1
    assert unstartable_device[0].closed
