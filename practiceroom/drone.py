from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal

from pydantic import BaseModel, ConfigDict

from .config import (
    MAX_OCTAVE,
    MIN_OCTAVE,
    DroneSettings,
    OctaveDirection,
    PureTimbre,
    RetroTimbre,
    TuningMode,
    validate_octave,
)
from .errors import AcquisitionFailedError, InvalidConfigError
from .events import ToolEvent, ToolHooks, emit_event
from .frequency import (
    INTERVAL_LABELS,
    IntervalLabel,
    NotePitch,
    cents_between,
    interval_class,
    just_frequency,
    note_to_frequency,
)
from .playback import Mixer, build_voice
from .scheduling import RetryTimer
from .session import AudioSession

_LOGGER = logging.getLogger("practiceroom.drone")

DroneState = Literal["stopped", "starting", "playing", "error"]
_FAILURE_MESSAGE = "Could not start audio; retrying shortly."


@dataclass(frozen=True, slots=True)
class Voice:
    slot_index: int
    note: NotePitch
    target_frequency_hz: float
    is_root: bool


@dataclass(slots=True)
class _SoundingVoice:
    key: tuple[str, int]
    slot: int
    frequency: float


class VoiceDisplay(BaseModel):
    note: str
    octave: int
    frequency_hz: float
    is_root: bool
    interval_label: IntervalLabel | None = None
    cents: float | None = None

    model_config = ConfigDict(frozen=True, extra="forbid")

    def describe(self) -> str:
        parts = [f"{self.frequency_hz:.2f} Hz"]
        if self.is_root and self.interval_label is not None:
            parts.append("root")
        elif self.interval_label is not None:
            parts.append(self.interval_label)
        if self.cents is not None:
            parts.append(f"{self.cents:+.1f} cents")
        return f"{self.note}{self.octave} ({', '.join(parts)})"


class DroneVoiceAllocator:
    """Up to three drone voices; index 0 is the root the others are tuned against.

    Every mutation recomputes the voice targets and, while the drone is
    sounding, pushes only the differences to the output: notes moved in place glide,
    removed notes release and new notes start.
    """

    def __init__(
        self,
        settings: DroneSettings | None = None,
        *,
        session: AudioSession | None = None,
        hooks: ToolHooks | None = None,
    ) -> None:
        settings = settings or DroneSettings()
        self.settings = settings
        self.hooks = hooks
        self.max_voices: int = settings.max_voices
        self.tuning_mode: TuningMode = settings.tuning_mode
        self.reference_pitch: float = settings.reference_pitch
        self.timbre: PureTimbre | RetroTimbre = settings.timbre
        self._session = session
        self._notes: list[NotePitch] = []
        self._slot_octaves: list[int] = [settings.default_octave] * self.max_voices
        self._voices: tuple[Voice, ...] = ()
        self._state: DroneState = "stopped"
        self._wanted = False
        self._output: Mixer | None = None
        self._sounding: dict[NotePitch, _SoundingVoice] = {}
        self._owner = f"drone-{id(self):x}"
        self._voice_serial = 0
        self._generation = 0
        self._retry = RetryTimer(
            settings.retry_delay,
            self._begin,
            should_fire=lambda: self._wanted,
            name="drone retry",
        )
        self.last_error: str | None = None

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def state(self) -> DroneState:
        return self._state

    @property
    def voices(self) -> tuple[Voice, ...]:
        return self._voices

    @property
    def notes(self) -> tuple[NotePitch, ...]:
        return tuple(self._notes)

    @property
    def slot_octaves(self) -> tuple[int, ...]:
        return tuple(self._slot_octaves)

    @property
    def retry_pending(self) -> bool:
        return self._retry.pending

    def frequencies(self) -> list[float]:
        return [voice.target_frequency_hz for voice in self._voices]

    def display(self) -> tuple[VoiceDisplay, ...]:
        if not self._voices:
            return ()
        root = self._voices[0].note
        multi = len(self._voices) > 1
        records: list[VoiceDisplay] = []
        for voice in self._voices:
            equal_tempered = note_to_frequency(voice.note, self.reference_pitch)
            label: IntervalLabel | None = None
            cents: float | None = None
            if multi:
                label = INTERVAL_LABELS[interval_class(root, voice.note)[0]]
                if not voice.is_root and self._uses_just_intonation():
                    cents = cents_between(voice.target_frequency_hz, equal_tempered)
            records.append(
                VoiceDisplay(
                    note=voice.note.name,
                    octave=voice.note.octave,
                    frequency_hz=voice.target_frequency_hz,
                    is_root=voice.is_root,
                    interval_label=label,
                    cents=cents,
                )
            )
        return tuple(records)

    # ------------------------------------------------------------------
    # Session mutations
    # ------------------------------------------------------------------

    def set_max_voices(self, count: int) -> None:
        if count not in (1, 2, 3):
            raise InvalidConfigError(f"max voices must be 1, 2 or 3, got {count!r}")
        self.max_voices = count
        if len(self._notes) > count:
            # Oldest voices go first.
            self._notes = self._notes[-count:]
        octaves = self._slot_octaves[:count]
        while len(octaves) < count:
            octaves.append(self.settings.default_octave)
        self._slot_octaves = octaves
        self._refresh()

    def toggle_note(self, pitch_class: int) -> None:
        if not 0 <= pitch_class <= 11:
            raise InvalidConfigError(f"pitch_class must be in 0..11, got {pitch_class}")
        if any(note.pitch_class == pitch_class for note in self._notes):
            self._notes = [note for note in self._notes if note.pitch_class != pitch_class]
        elif len(self._notes) < self.max_voices:
            slot = len(self._notes)
            self._notes.append(NotePitch(pitch_class, self._slot_octaves[slot]))
        elif self.max_voices == 1:
            self._notes = [NotePitch(pitch_class, self._slot_octaves[0])]
        else:
            last_slot = self.max_voices - 1
            self._notes = self._notes[1:] + [NotePitch(pitch_class, self._slot_octaves[last_slot])]
        self._refresh()

    def set_octave(self, slot_index: int, octave: int) -> bool:
        """Move a slot to ``octave``; returns False when that would double a voice."""
        validate_octave(octave)
        self._check_slot(slot_index)
        if slot_index >= len(self._notes):
            self._slot_octaves[slot_index] = octave
            return True
        candidate = self._notes[slot_index].with_octave(octave)
        if any(note == candidate for index, note in enumerate(self._notes) if index != slot_index):
            _LOGGER.debug("rejected %s: already sounding", candidate)
            return False
        self._notes[slot_index] = candidate
        self._slot_octaves[slot_index] = octave
        self._enforce_capacity()
        self._refresh()
        return True

    def shift_octave(self, slot_index: int, direction: OctaveDirection) -> bool:
        self._check_slot(slot_index)
        if slot_index < len(self._notes):
            current = self._notes[slot_index].octave
        else:
            current = self._slot_octaves[slot_index]
        if direction == "up":
            target = current + 1 if current + 1 <= MAX_OCTAVE else current - 1
        elif direction == "down":
            target = current - 1 if current - 1 >= MIN_OCTAVE else current + 1
        else:
            raise InvalidConfigError(f"direction must be 'up' or 'down', got {direction!r}")
        return self.set_octave(slot_index, target)

    def set_tuning_mode(self, mode: TuningMode) -> None:
        if mode not in ("equal_tempered", "just_intonation"):
            raise InvalidConfigError(f"Unknown tuning mode: {mode!r}")
        self.tuning_mode = mode
        self._refresh()

    def set_reference_pitch(self, reference_pitch_hz: float) -> None:
        if not reference_pitch_hz > 0:
            raise InvalidConfigError("reference pitch must be positive")
        self.reference_pitch = float(reference_pitch_hz)
        self._refresh()

    def set_timbre(self, timbre: PureTimbre | RetroTimbre) -> None:
        self.timbre = timbre
        self._refresh(rebuild=True)

    def clear(self) -> None:
        self._notes = []
        self._refresh()

    def _check_slot(self, slot_index: int) -> None:
        if not 0 <= slot_index < self.max_voices:
            raise InvalidConfigError(f"slot must be within 0..{self.max_voices - 1}")

    def _enforce_capacity(self) -> None:
        """Keep the set within max_voices after an octave move.

        Octave moves replace a voice in place today, so this only trims a set
        that already grew past the limit.
        """
        while len(self._notes) > self.max_voices:
            # FIFO, but the root only goes when it is the last candidate.
            evict = 1 if len(self._notes) > 1 else 0
            _LOGGER.debug("evicting %s", self._notes[evict])
            del self._notes[evict]

    # ------------------------------------------------------------------
    # Frequencies
    # ------------------------------------------------------------------

    def _uses_just_intonation(self) -> bool:
        return self.tuning_mode == "just_intonation" and 2 <= len(self._notes) <= 3

    def _compute_voices(self) -> tuple[Voice, ...]:
        if not self._notes:
            return ()
        root = self._notes[0]
        root_frequency = note_to_frequency(root, self.reference_pitch)
        just = self._uses_just_intonation()
        voices = [Voice(0, root, root_frequency, True)]
        for slot, note in enumerate(self._notes[1:], start=1):
            if just:
                class_index, octave_diff = interval_class(root, note)
                frequency = just_frequency(root_frequency, class_index, octave_diff)
            else:
                frequency = note_to_frequency(note, self.reference_pitch)
            voices.append(Voice(slot, note, frequency, False))
        return tuple(voices)

    def _refresh(self, *, rebuild: bool = False) -> None:
        self._voices = self._compute_voices()
        emit_event(self.hooks, ToolEvent(tool="drone", kind="voices", voices=self.display()))
        if self._state == "playing":
            self._apply(rebuild=rebuild)

    # ------------------------------------------------------------------
    # Playback
    # ------------------------------------------------------------------

    def _set_state(self, state: DroneState) -> None:
        if state == self._state:
            return
        self._state = state
        emit_event(self.hooks, ToolEvent(tool="drone", kind="state", state=state))

    def _new_voice_key(self) -> tuple[str, int]:
        self._voice_serial += 1
        return (self._owner, self._voice_serial)

    def _apply(self, *, rebuild: bool = False) -> None:
        """Push the current targets to the output.

        Mixer voices follow notes, not slots: a note that keeps sounding is
        never restarted when its neighbours come and go. A slot whose note
        changed in place (an octave move or a single-voice replace) glides.
        """
        output = self._output
        if output is None:
            return
        orphans = {
            entry.slot: entry for note, entry in self._sounding.items() if note not in self._notes
        }
        sounding: dict[NotePitch, _SoundingVoice] = {}
        for voice in self._voices:
            frequency = voice.target_frequency_hz
            entry = self._sounding.get(voice.note) or orphans.pop(voice.slot_index, None)
            if entry is None or rebuild:
                key = entry.key if entry is not None else self._new_voice_key()
                output.start_voice(key, build_voice(self.timbre, frequency, sample_rate=output.sample_rate))
                entry = _SoundingVoice(key, voice.slot_index, frequency)
            elif entry.frequency != frequency:
                output.retune_voice(entry.key, frequency)
                entry.frequency = frequency
            entry.slot = voice.slot_index
            sounding[voice.note] = entry
        for entry in orphans.values():
            output.stop_voice(entry.key)
        self._sounding = sounding

    async def start(self) -> None:
        if self._state in ("playing", "starting"):
            return
        self._wanted = True
        self._retry.cancel()
        await self._begin()

    async def _begin(self) -> None:
        if not self._wanted or self._output is not None:
            return
        if self._session is None:
            self._session = AudioSession()
        session = self._session
        token = self._generation
        self._set_state("starting")
        self.last_error = None
        try:
            output = await session.acquire()
        except AcquisitionFailedError as exc:
            if token == self._generation:
                self._fail(exc)
            return
        if token != self._generation or self._output is not None:
            # stop() ran during the open; this hold belongs to nobody.
            session.release()
            return
        self._output = output
        self._set_state("playing")
        self._apply(rebuild=True)
        _LOGGER.info("drone playing %d voice(s)", len(self._voices))

    def _fail(self, exc: BaseException) -> None:
        self.last_error = str(exc)
        _LOGGER.warning("drone failed: %s", exc)
        self._set_state("error")
        emit_event(self.hooks, ToolEvent(tool="drone", kind="error", message=_FAILURE_MESSAGE))
        if self._wanted:
            self._retry.schedule()

    def stop(self) -> None:
        self._wanted = False
        self._generation += 1
        self._retry.cancel()
        output = self._output
        self._output = None
        if output is not None:
            for entry in self._sounding.values():
                output.stop_voice(entry.key)
            if self._session is not None:
                self._session.release()
        self._sounding.clear()
        self._set_state("stopped")
