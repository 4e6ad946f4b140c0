"""Continuous pitch detection from a microphone stream.

The estimator is the McLeod pitch method: a normalised square difference
function (an autocorrelation computed through the FFT, normalised by the
windowed energy) followed by key-maximum peak picking and parabolic
interpolation. Its peak height doubles as the clarity score.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Literal, Protocol

import numpy as np
from pydantic import BaseModel, ConfigDict

from .audio import SAMPLE_RATE, AudioNumbers, FloatArray, rms
from .config import TunerSettings
from .errors import AcquisitionFailedError, PracticeRoomError
from .events import ToolEvent, ToolHooks, emit_event
from .frequency import NotePitch, format_note, frequency_to_note
from .logging_utils import log_exception
from .playback import open_input
from .scheduling import RetryTimer

_LOGGER = logging.getLogger("practiceroom.pitch")

DetectorState = Literal["idle", "listening", "error"]
_KEY_MAXIMUM_CUTOFF = 0.9
_FAILURE_MESSAGE = "Could not listen to the microphone; retrying shortly."


class InputStream(Protocol):
    sample_rate: int

    def read_window(self, size: int) -> FloatArray: ...

    def close(self) -> None: ...


InputOpener = Callable[[TunerSettings], InputStream]


def _open_device_input(settings: TunerSettings) -> InputStream:
    return open_input(settings.sample_rate, window_size=settings.window_size)


class PitchReading(BaseModel):
    frequency_hz: float
    clarity: float
    timestamp: float
    note: NotePitch
    cents: float

    model_config = ConfigDict(frozen=True, extra="forbid", arbitrary_types_allowed=True)

    @property
    def label(self) -> str:
        return format_note(self.note)


def normalized_square_difference(samples: AudioNumbers) -> np.ndarray:
    x = np.asarray(samples, dtype=np.float64)
    size = x.size
    fft_size = 1 << (2 * size - 1).bit_length()
    spectrum = np.fft.rfft(x, fft_size)
    autocorrelation = np.fft.irfft(spectrum * np.conj(spectrum), fft_size)[:size]
    cumulative = np.concatenate(([0.0], np.cumsum(x * x)))
    lags = np.arange(size)
    # m(tau) = sum over the overlap of x[j]^2 + x[j + tau]^2
    energy = cumulative[size - lags] + (cumulative[size] - cumulative[lags])
    nsdf = np.zeros(size, dtype=np.float64)
    valid = energy > 0
    nsdf[valid] = 2.0 * autocorrelation[valid] / energy[valid]
    return nsdf


def _key_maxima(nsdf: np.ndarray) -> list[int]:
    positive = nsdf > 0
    if positive.all() or not positive.any():
        return []
    # Skip the lobe around lag 0.
    first_negative = int(np.argmin(positive))
    edges = np.diff(positive[first_negative:].astype(np.int8))
    starts = np.flatnonzero(edges == 1) + first_negative + 1
    ends = np.flatnonzero(edges == -1) + first_negative + 1
    maxima: list[int] = []
    for start in starts:
        following = ends[ends > start]
        stop = int(following[0]) if following.size else nsdf.size
        maxima.append(int(start + np.argmax(nsdf[start:stop])))
    return maxima


def estimate_pitch(samples: AudioNumbers, sample_rate: int) -> tuple[float, float]:
    """Return ``(frequency_hz, clarity)``; ``(0.0, 0.0)`` when nothing is periodic."""
    nsdf = normalized_square_difference(samples)
    maxima = _key_maxima(nsdf)
    if not maxima:
        return 0.0, 0.0
    threshold = _KEY_MAXIMUM_CUTOFF * max(nsdf[index] for index in maxima)
    chosen = next(index for index in maxima if nsdf[index] >= threshold)

    lag = float(chosen)
    peak = float(nsdf[chosen])
    if 0 < chosen < nsdf.size - 1:
        left, centre, right = nsdf[chosen - 1], nsdf[chosen], nsdf[chosen + 1]
        denominator = left - 2.0 * centre + right
        if denominator != 0:
            shift = 0.5 * (left - right) / denominator
            lag = chosen + shift
            peak = float(centre - 0.25 * (left - right) * shift)
    if lag <= 0:
        return 0.0, 0.0
    return sample_rate / lag, min(max(peak, 0.0), 1.0)


class PitchDetector:
    """Tuner engine: ``idle -> listening -> idle`` with ``error`` reachable from both."""

    def __init__(
        self,
        settings: TunerSettings | None = None,
        *,
        hooks: ToolHooks | None = None,
        opener: InputOpener | None = None,
        estimator: Callable[[FloatArray, int], tuple[float, float]] = estimate_pitch,
    ) -> None:
        self.settings = settings or TunerSettings()
        self.hooks = hooks
        self._opener: InputOpener = opener or _open_device_input
        self._estimator = estimator
        self._state: DetectorState = "idle"
        self._wanted = False
        self._stream: InputStream | None = None
        self._opening = False
        self._generation = 0
        self._task: asyncio.Task[None] | None = None
        self._retry = RetryTimer(
            self.settings.retry_delay,
            self._listen,
            should_fire=lambda: self._wanted,
            name="tuner retry",
        )
        self.last_reading: PitchReading | None = None
        self.last_error: str | None = None

    @property
    def state(self) -> DetectorState:
        return self._state

    @property
    def retry_pending(self) -> bool:
        return self._retry.pending

    def _set_state(self, state: DetectorState) -> None:
        if state == self._state:
            return
        self._state = state
        emit_event(self.hooks, ToolEvent(tool="tuner", kind="state", state=state))

    def _emit_reading(self, reading: PitchReading | None) -> None:
        self.last_reading = reading
        if reading is None:
            emit_event(self.hooks, ToolEvent(tool="tuner", kind="no_pitch"))
        else:
            emit_event(self.hooks, ToolEvent(tool="tuner", kind="reading", reading=reading))

    async def start(self) -> None:
        if self._state == "listening" or self._opening:
            return
        self._wanted = True
        self._retry.cancel()
        await self._listen()

    async def _listen(self) -> None:
        if not self._wanted or self._stream is not None or self._opening:
            return
        self._opening = True
        token = self._generation
        self.last_error = None
        try:
            stream = await asyncio.to_thread(self._opener, self.settings)
        except Exception as exc:
            if token == self._generation:
                self._opening = False
                failure = exc if isinstance(exc, PracticeRoomError) else AcquisitionFailedError(str(exc))
                self._fail(failure)
            return
        if token != self._generation or self._stream is not None:
            # stop() ran while the device was opening; this stream is orphaned.
            stream.close()
            return
        self._opening = False
        self._stream = stream
        self._set_state("listening")
        self._task = asyncio.create_task(self._sampling_loop(stream))
        _LOGGER.info("tuner listening at %d Hz", stream.sample_rate)

    async def _sampling_loop(self, stream: InputStream) -> None:
        loop = asyncio.get_running_loop()
        interval = self.settings.update_interval
        while True:
            started = loop.time()
            try:
                window = stream.read_window(self.settings.window_size)
                self.process_window(window, sample_rate=stream.sample_rate)
            except Exception as exc:
                _LOGGER.warning("tuner sampling failed: %s", exc, exc_info=True)
                log_exception("tuner sampling", exc)
                self._task = None
                self._release_stream()
                self._fail(exc)
                return
            await asyncio.sleep(max(interval - (loop.time() - started), 0.0))

    def process_window(self, samples: AudioNumbers, *, sample_rate: int | None = None) -> PitchReading | None:
        """Analyse one window and emit the result; also returns it."""
        settings = self.settings
        rate = sample_rate or settings.sample_rate or SAMPLE_RATE
        window = np.asarray(samples, dtype=np.float32)
        if rms(window) < settings.silence_gate:
            self._emit_reading(None)
            return None
        frequency, clarity = self._estimator(window, rate)
        if clarity < settings.clarity_threshold or not (
            settings.min_frequency <= frequency <= settings.max_frequency
        ):
            self._emit_reading(None)
            return None
        note, cents = frequency_to_note(frequency, settings.reference_pitch)
        reading = PitchReading(
            frequency_hz=frequency,
            clarity=clarity,
            timestamp=time.monotonic(),
            note=note,
            cents=cents,
        )
        self._emit_reading(reading)
        return reading

    def _fail(self, exc: BaseException) -> None:
        self.last_error = str(exc) or _FAILURE_MESSAGE
        _LOGGER.warning("tuner failed: %s", exc)
        self._set_state("error")
        emit_event(self.hooks, ToolEvent(tool="tuner", kind="error", message=_FAILURE_MESSAGE))
        if self._wanted:
            self._retry.schedule()

    def _release_stream(self) -> None:
        stream = self._stream
        self._stream = None
        if stream is not None:
            try:
                stream.close()
            except Exception as exc:
                _LOGGER.warning("closing microphone failed: %s", exc, exc_info=True)

    def stop(self) -> None:
        self._wanted = False
        self._generation += 1
        self._opening = False
        self._retry.cancel()
        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()
        self._release_stream()
        self._set_state("idle")
        if self.last_reading is not None:
            self._emit_reading(None)
