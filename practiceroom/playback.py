from __future__ import annotations

import logging
import math
import threading
from collections.abc import Hashable
from dataclasses import dataclass
from typing import Any, Literal

import numpy as np
from numpy.typing import NDArray

from .audio import SAMPLE_RATE, FloatArray, ensure_audio_contract
from .config import PureTimbre, RetroTimbre
from .errors import AcquisitionFailedError, InvalidConfigError

_LOGGER = logging.getLogger("practiceroom.playback")

Waveform = Literal["sine", "square"]


# =============================================================================
# Voices
# =============================================================================


def _poly_blep(phase: NDArray[np.float64], dt: NDArray[np.float64]) -> NDArray[np.float64]:
    """Two-point PolyBLEP residual for a discontinuity at phase 0."""
    correction = np.zeros_like(phase)
    low = phase < dt
    t = phase[low] / dt[low]
    correction[low] = t + t - t * t - 1.0
    high = phase > 1.0 - dt
    t = (phase[high] - 1.0) / dt[high]
    correction[high] = t * t + t + t + 1.0
    return correction


class OscillatorVoice:
    """Phase-continuous oscillator rendered block by block.

    Retuning glides exponentially towards the new frequency instead of
    restarting the waveform, so a sounding voice never clicks.
    """

    def __init__(
        self,
        waveform: Waveform,
        frequency: float,
        *,
        sample_rate: int = SAMPLE_RATE,
        attack: float = 0.05,
        release: float = 0.3,
        glide: float = 0.05,
        gain: float = 0.25,
    ) -> None:
        if frequency <= 0:
            raise InvalidConfigError("voice frequency must be positive")
        self.waveform = waveform
        self.sample_rate = sample_rate
        self._frequency = float(frequency)
        self._target = float(frequency)
        self._phase = 0.0
        self._level = 0.0
        self._attack_step = 1.0 / max(attack * sample_rate, 1.0)
        self._release_step = 1.0 / max(release * sample_rate, 1.0)
        self._glide_coeff = math.exp(-1.0 / (glide * sample_rate)) if glide > 0 else 0.0
        self._gain = gain
        self._releasing = False

    @property
    def frequency(self) -> float:
        return self._frequency

    @property
    def target_frequency(self) -> float:
        return self._target

    @property
    def finished(self) -> bool:
        return self._releasing and self._level <= 0.0

    def set_frequency(self, frequency: float) -> None:
        if frequency <= 0:
            raise InvalidConfigError("voice frequency must be positive")
        self._target = float(frequency)

    def release(self) -> None:
        self._releasing = True

    def render(self, frames: int) -> FloatArray:
        if frames <= 0:
            return np.zeros(0, dtype=np.float32)
        steps = np.arange(1, frames + 1, dtype=np.float64)
        if self._glide_coeff > 0.0 and self._frequency != self._target:
            freqs = self._target + (self._frequency - self._target) * self._glide_coeff**steps
        else:
            freqs = np.full(frames, self._target, dtype=np.float64)
        increments = freqs / self.sample_rate
        phases = (self._phase + np.cumsum(increments) - increments) % 1.0
        self._phase = float((self._phase + increments.sum()) % 1.0)
        self._frequency = float(freqs[-1])

        if self.waveform == "sine":
            wave = np.sin(2.0 * np.pi * phases)
        else:
            naive = np.where(phases < 0.5, 1.0, -1.0)
            wave = naive + _poly_blep(phases, increments) - _poly_blep((phases + 0.5) % 1.0, increments)

        if self._releasing:
            levels = np.maximum(self._level - self._release_step * steps, 0.0)
        else:
            levels = np.minimum(self._level + self._attack_step * steps, 1.0)
        self._level = float(levels[-1])
        return (self._gain * wave * levels).astype(np.float32)


def build_voice(
    timbre: PureTimbre | RetroTimbre,
    frequency: float,
    *,
    sample_rate: int = SAMPLE_RATE,
) -> OscillatorVoice:
    """Synthesis factory for the closed set of drone timbres."""
    match timbre:
        case PureTimbre():
            waveform: Waveform = "sine"
        case RetroTimbre():
            waveform = "square"
        case _:
            raise InvalidConfigError(f"Unsupported timbre: {timbre!r}")
    return OscillatorVoice(
        waveform,
        frequency,
        sample_rate=sample_rate,
        attack=timbre.attack,
        release=timbre.release,
        glide=timbre.glide,
        gain=timbre.gain,
    )


# =============================================================================
# Mixer
# =============================================================================


@dataclass(slots=True)
class _ScheduledSample:
    owner: str
    start_frame: int
    buffer: FloatArray
    offset: int = 0


class Mixer:
    """Sums drone voices and scheduled one-shot samples on a frame clock.

    The clock only advances when ``render`` is called, so every scheduled
    time is expressed in the output's own time base. All methods are safe to
    call from the event loop while the device thread renders.
    """

    def __init__(self, sample_rate: int = SAMPLE_RATE) -> None:
        self.sample_rate = sample_rate
        self._lock = threading.Lock()
        self._frames = 0
        self._scheduled: list[_ScheduledSample] = []
        self._voices: dict[Hashable, OscillatorVoice] = {}
        self._releasing: list[OscillatorVoice] = []

    def current_time(self) -> float:
        with self._lock:
            return self._frames / self.sample_rate

    def schedule(self, owner: str, buffer: FloatArray, at: float) -> None:
        """Trigger ``buffer`` at audio time ``at`` (seconds on this mixer's clock)."""
        samples = ensure_audio_contract(buffer)
        start_frame = int(round(at * self.sample_rate))
        with self._lock:
            self._scheduled.append(_ScheduledSample(owner, start_frame, samples))

    def cancel(self, owner: str, *, include_playing: bool = True) -> int:
        """Drop ``owner``'s queued samples; ``include_playing=False`` lets sounding ones finish."""
        with self._lock:
            kept = [
                item
                for item in self._scheduled
                if item.owner != owner
                or (not include_playing and (item.offset > 0 or item.start_frame < self._frames))
            ]
            removed = len(self._scheduled) - len(kept)
            self._scheduled = kept
        return removed

    def scheduled_times(self, owner: str | None = None) -> list[float]:
        with self._lock:
            return [
                item.start_frame / self.sample_rate
                for item in self._scheduled
                if owner is None or item.owner == owner
            ]

    def start_voice(self, key: Hashable, voice: OscillatorVoice) -> None:
        with self._lock:
            previous = self._voices.pop(key, None)
            if previous is not None:
                previous.release()
                self._releasing.append(previous)
            self._voices[key] = voice

    def retune_voice(self, key: Hashable, frequency: float) -> None:
        with self._lock:
            voice = self._voices.get(key)
            if voice is None:
                raise KeyError(key)
            voice.set_frequency(frequency)

    def stop_voice(self, key: Hashable) -> None:
        with self._lock:
            voice = self._voices.pop(key, None)
            if voice is not None:
                voice.release()
                self._releasing.append(voice)

    def voice(self, key: Hashable) -> OscillatorVoice | None:
        with self._lock:
            return self._voices.get(key)

    def voice_keys(self) -> list[Hashable]:
        with self._lock:
            return list(self._voices)

    def render(self, frames: int) -> FloatArray:
        out = np.zeros(frames, dtype=np.float32)
        with self._lock:
            block_start = self._frames
            block_end = block_start + frames
            for voice in self._voices.values():
                out += voice.render(frames)
            for voice in self._releasing:
                out += voice.render(frames)
            self._releasing = [voice for voice in self._releasing if not voice.finished]

            pending: list[_ScheduledSample] = []
            for item in self._scheduled:
                if item.start_frame >= block_end:
                    pending.append(item)
                    continue
                # Late triggers start at the head of the block rather than being dropped.
                begin = max(item.start_frame - block_start, 0) if item.offset == 0 else 0
                count = min(frames - begin, item.buffer.size - item.offset)
                out[begin : begin + count] += item.buffer[item.offset : item.offset + count]
                item.offset += count
                if item.offset < item.buffer.size:
                    pending.append(item)
            self._scheduled = pending
            self._frames = block_end
        np.clip(out, -1.0, 1.0, out=out)
        return out

    def close(self) -> None:
        with self._lock:
            self._scheduled.clear()
            self._voices.clear()
            self._releasing.clear()


# =============================================================================
# Devices
# =============================================================================


def _load_sounddevice() -> Any:
    try:
        import sounddevice as sd_module  # type: ignore[import]
    except (ImportError, OSError) as exc:
        _LOGGER.info("sounddevice not available: %s", exc, exc_info=True)
        raise AcquisitionFailedError(
            "Audio I/O requires sounddevice and a working PortAudio installation."
        ) from exc
    return sd_module


class DeviceOutput(Mixer):
    """Mixer rendered by a sounddevice output stream callback."""

    def __init__(self, sample_rate: int = SAMPLE_RATE, *, device: int | str | None = None) -> None:
        super().__init__(sample_rate)
        self.device = device
        self._stream: Any | None = None

    def open(self) -> None:
        sd = _load_sounddevice()
        try:
            stream = sd.OutputStream(
                samplerate=self.sample_rate,
                channels=1,
                dtype="float32",
                device=self.device,
                callback=self._callback,
            )
        except (sd.PortAudioError, ValueError) as exc:
            raise AcquisitionFailedError(f"Could not open audio output: {exc}") from exc
        try:
            stream.start()
        except (sd.PortAudioError, ValueError) as exc:
            stream.close()
            raise AcquisitionFailedError(f"Could not start audio output: {exc}") from exc
        self._stream = stream
        _LOGGER.info("audio output opened at %d Hz", self.sample_rate)

    def _callback(self, outdata: Any, frames: int, time_info: Any, status: Any) -> None:
        _ = time_info
        if status:
            _LOGGER.debug("output status: %s", status)
        outdata[:, 0] = self.render(frames)

    def close(self) -> None:
        stream = self._stream
        self._stream = None
        if stream is not None:
            try:
                stream.stop()
            finally:
                stream.close()
            _LOGGER.info("audio output closed")
        super().close()


class DeviceInput:
    """Microphone stream feeding a ring buffer of the most recent samples."""

    def __init__(
        self,
        *,
        sample_rate: int | None = None,
        capacity: int = 8192,
        device: int | str | None = None,
    ) -> None:
        self.sample_rate = sample_rate or SAMPLE_RATE
        self._requested_rate = sample_rate
        self.device = device
        self._buffer = np.zeros(capacity, dtype=np.float32)
        self._write_index = 0
        self._lock = threading.Lock()
        self._stream: Any | None = None

    def open(self) -> None:
        sd = _load_sounddevice()
        try:
            rate = self._requested_rate
            if rate is None:
                info = sd.query_devices(self.device, "input")
                rate = int(info["default_samplerate"])
            stream = sd.InputStream(
                samplerate=rate,
                channels=1,
                dtype="float32",
                device=self.device,
                callback=self._callback,
            )
        except (sd.PortAudioError, ValueError) as exc:
            raise AcquisitionFailedError(f"Could not open microphone: {exc}") from exc
        try:
            stream.start()
        except (sd.PortAudioError, ValueError) as exc:
            stream.close()
            raise AcquisitionFailedError(f"Could not start microphone: {exc}") from exc
        self.sample_rate = rate
        self._stream = stream
        _LOGGER.info("microphone opened at %d Hz", rate)

    def _callback(self, indata: Any, frames: int, time_info: Any, status: Any) -> None:
        _ = time_info
        if status:
            _LOGGER.debug("input status: %s", status)
        self.write(np.asarray(indata[:frames, 0], dtype=np.float32))

    def write(self, samples: FloatArray) -> None:
        capacity = self._buffer.size
        if samples.size >= capacity:
            samples = samples[-capacity:]
        with self._lock:
            end = self._write_index + samples.size
            if end <= capacity:
                self._buffer[self._write_index : end] = samples
            else:
                first = capacity - self._write_index
                self._buffer[self._write_index :] = samples[:first]
                self._buffer[: end - capacity] = samples[first:]
            self._write_index = end % capacity

    def read_window(self, size: int) -> FloatArray:
        size = min(size, self._buffer.size)
        with self._lock:
            ordered = np.roll(self._buffer, -self._write_index)
        return ordered[-size:].copy()

    def close(self) -> None:
        stream = self._stream
        self._stream = None
        if stream is not None:
            try:
                stream.stop()
            finally:
                stream.close()
            _LOGGER.info("microphone closed")


def open_output(sample_rate: int = SAMPLE_RATE, *, device: int | str | None = None) -> DeviceOutput:
    output = DeviceOutput(sample_rate, device=device)
    output.open()
    return output


def open_input(
    sample_rate: int | None = None,
    *,
    window_size: int = 2048,
    device: int | str | None = None,
) -> DeviceInput:
    stream = DeviceInput(sample_rate=sample_rate, capacity=window_size * 4, device=device)
    stream.open()
    return stream


def list_devices() -> str:
    sd = _load_sounddevice()
    return str(sd.query_devices())
