"""Metronome click track driven by the audio clock.

Beats are never fired from a timer callback. A look-ahead task wakes every
``lookahead_interval`` and queues every beat falling inside the next
``schedule_ahead`` seconds on the mixer at its exact audio time, so event
loop jitter only moves *when* a beat is queued, never when it sounds.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Literal

from .catalog import SoundAsset, SoundCatalog
from .config import ClickTrackSettings, validate_tempo
from .errors import (
    AcquisitionFailedError,
    ClickTrackBusyError,
    InvalidStateError,
    PracticeRoomError,
)
from .events import ToolEvent, ToolHooks, emit_event
from .logging_utils import log_exception
from .playback import Mixer
from .scheduling import RetryTimer
from .session import AudioSession

_LOGGER = logging.getLogger("practiceroom.click")

ClickState = Literal["stopped", "starting", "running", "switching", "error"]
BEATS_PER_BAR = 4
_ACQUIRE_MESSAGE = "Audio could not be started; retrying shortly."
_DECODE_MESSAGE = "Failed to load sound; retrying shortly."


class ClickTrackScheduler:
    def __init__(
        self,
        catalog: SoundCatalog,
        settings: ClickTrackSettings | None = None,
        *,
        session: AudioSession | None = None,
        hooks: ToolHooks | None = None,
    ) -> None:
        self.settings = settings or ClickTrackSettings()
        self.catalog = catalog
        self.hooks = hooks
        self.tempo_bpm: int = self.settings.tempo_bpm
        self.sound_id: str = self.settings.sound_id
        self._session = session or AudioSession(sample_rate=catalog.sample_rate)
        self._state: ClickState = "stopped"
        self._wanted = False
        self._generation = 0
        self._output: Mixer | None = None
        self._armed: SoundAsset | None = None
        self._task: asyncio.Task[None] | None = None
        self._next_beat_time = 0.0
        self._queued: list[float] = []
        self._last_trigger_time: float | None = None
        self._beat_count = 0
        self._visual: dict[int, tuple[float, asyncio.TimerHandle]] = {}
        self._visual_serial = 0
        self._loading = False
        self._owner = f"click-{id(self):x}"
        self._retry = RetryTimer(
            self.settings.retry_delay,
            self._restart,
            should_fire=lambda: self._wanted,
            name="click retry",
        )
        self.beat_index = 0
        self.last_error: str | None = None

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    @property
    def state(self) -> ClickState:
        return self._state

    @property
    def interval(self) -> float:
        """Seconds between quarter-note beats."""
        return 60.0 / self.tempo_bpm

    @property
    def loading(self) -> bool:
        return self._loading

    @property
    def armed_sound(self) -> SoundAsset | None:
        return self._armed

    @property
    def retry_pending(self) -> bool:
        return self._retry.pending

    def _set_state(self, state: ClickState) -> None:
        if state == self._state:
            return
        self._state = state
        emit_event(self.hooks, ToolEvent(tool="click", kind="state", state=state))

    def _set_loading(self, loading: bool) -> None:
        if loading == self._loading:
            return
        self._loading = loading
        emit_event(self.hooks, ToolEvent(tool="click", kind="loading", loading=loading))

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def start(self, tempo_bpm: int | None = None, sound_id: str | None = None) -> None:
        if self._state == "switching":
            raise ClickTrackBusyError("a sound switch is in progress")
        tempo = validate_tempo(tempo_bpm if tempo_bpm is not None else self.tempo_bpm)
        sound = sound_id if sound_id is not None else self.sound_id
        self.catalog.asset(sound)
        if self._state == "running":
            self.set_tempo(tempo)
            if sound != self.sound_id:
                await self.switch_sound(sound)
            return
        if self._state == "starting":
            return

        self.tempo_bpm = tempo
        self.sound_id = sound
        self._wanted = True
        self._retry.cancel()
        self._generation += 1
        token = self._generation
        self.last_error = None
        self._set_state("starting")

        try:
            output = await self._session.acquire()
        except AcquisitionFailedError as exc:
            if token == self._generation:
                self._fail(exc, _ACQUIRE_MESSAGE)
            return
        if token != self._generation:
            self._session.release()
            return
        self._output = output

        try:
            asset = await self._load(sound)
        except Exception as exc:
            if token == self._generation:
                self._teardown()
                self._fail(exc, _DECODE_MESSAGE)
            return
        if token != self._generation:
            self.catalog.release(asset.id)
            return

        self._armed = asset
        self._beat_count = 0
        self.beat_index = 0
        self._last_trigger_time = None
        self._queued.clear()
        self._next_beat_time = output.current_time() + self.settings.start_lead
        self._begin_triggering()
        self._set_state("running")
        _LOGGER.info("click track running at %d BPM with %s", self.tempo_bpm, asset.id)

    def set_tempo(self, tempo_bpm: int) -> None:
        self.tempo_bpm = validate_tempo(tempo_bpm)
        if self._state == "running" and self._last_trigger_time is not None:
            # Retime the next unqueued beat from the last one; the bar position is kept.
            self._next_beat_time = self._last_trigger_time + self.interval

    async def switch_sound(self, sound_id: str) -> None:
        if self._state == "switching":
            raise ClickTrackBusyError("a sound switch is already in progress")
        if self._state != "running":
            raise InvalidStateError(f"cannot switch sound while {self._state}")
        self.catalog.asset(sound_id)
        token = self._generation
        self._set_state("switching")

        self._halt_triggering(keep_playing=True)
        previous = self._armed
        self._armed = None
        if previous is not None and previous.id != sound_id:
            self.catalog.release(previous.id)
        self.sound_id = sound_id

        try:
            asset = await self._load(sound_id)
        except Exception as exc:
            if token == self._generation:
                self._teardown()
                self._fail(exc, _DECODE_MESSAGE)
            return
        if token != self._generation or self._output is None:
            self.catalog.release(asset.id)
            return

        self._armed = asset
        self._next_beat_time = max(self._next_beat_time, self._output.current_time())
        self._begin_triggering()
        self._set_state("running")
        _LOGGER.info("click sound switched to %s", asset.id)

    def stop(self) -> None:
        self._wanted = False
        self._generation += 1
        self._retry.cancel()
        self._teardown()
        self._set_loading(False)
        self._set_state("stopped")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _load(self, sound_id: str) -> SoundAsset:
        asset = self.catalog.asset(sound_id)
        if asset.loaded:
            return asset
        self._set_loading(True)
        try:
            return await self.catalog.load(sound_id)
        finally:
            self._set_loading(False)

    def _begin_triggering(self) -> None:
        self._schedule_due_beats()
        self._task = asyncio.create_task(self._trigger_loop(self._generation))

    async def _trigger_loop(self, token: int) -> None:
        while token == self._generation:
            await asyncio.sleep(self.settings.lookahead_interval)
            if token != self._generation or self._state != "running":
                return
            try:
                self._schedule_due_beats()
            except Exception as exc:
                _LOGGER.warning("click scheduling failed: %s", exc, exc_info=True)
                log_exception("click scheduling", exc)
                self._task = None
                self._teardown()
                self._fail(exc, _ACQUIRE_MESSAGE)
                return

    def _schedule_due_beats(self) -> None:
        output = self._output
        asset = self._armed
        if output is None or asset is None or asset.buffer is None:
            return
        now = output.current_time()
        self._queued = [at for at in self._queued if at >= now]
        if self._next_beat_time < now:
            self._next_beat_time = now
        horizon = now + self.settings.schedule_ahead
        while self._next_beat_time < horizon:
            at = self._next_beat_time
            output.schedule(self._owner, asset.buffer, at)
            self._queued.append(at)
            self._queue_visual_beat(at, at - now + self.settings.visual_offset)
            self._last_trigger_time = at
            self._next_beat_time = at + self.interval

    def _queue_visual_beat(self, at: float, delay: float) -> None:
        loop = asyncio.get_running_loop()
        self._visual_serial += 1
        serial = self._visual_serial
        handle = loop.call_later(max(delay, 0.0), self._advance_beat, serial)
        self._visual[serial] = (at, handle)

    def _advance_beat(self, serial: int) -> None:
        self._visual.pop(serial, None)
        self.beat_index = self._beat_count % BEATS_PER_BAR
        self._beat_count += 1
        emit_event(self.hooks, ToolEvent(tool="click", kind="beat", beat_index=self.beat_index))

    def _halt_triggering(self, *, keep_playing: bool = False) -> None:
        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()
        output = self._output
        now = output.current_time() if output is not None else None
        for serial, (at, handle) in list(self._visual.items()):
            # A beat that already sounded still lights up on time.
            if keep_playing and now is not None and at < now:
                continue
            handle.cancel()
            del self._visual[serial]
        if output is None:
            return
        output.cancel(self._owner, include_playing=not keep_playing)
        unplayed = [at for at in self._queued if at >= now]
        if unplayed:
            # Beats pulled from the mixer are re-queued on resume at the same times.
            self._next_beat_time = min(unplayed)
            self._last_trigger_time = None
        self._queued.clear()

    def _teardown(self) -> None:
        self._halt_triggering()
        armed = self._armed
        self._armed = None
        if armed is not None:
            self.catalog.release(armed.id)
        if self._output is not None:
            self._output = None
            self._session.release()

    def _fail(self, exc: PracticeRoomError | Exception, message: str) -> None:
        self.last_error = str(exc)
        _LOGGER.warning("click track failed: %s", exc)
        self._set_state("error")
        emit_event(self.hooks, ToolEvent(tool="click", kind="error", message=message))
        if self._wanted:
            self._retry.schedule()

    async def _restart(self) -> None:
        await self.start(self.tempo_bpm, self.sound_id)
