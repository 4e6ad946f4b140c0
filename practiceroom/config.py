from __future__ import annotations

import logging
import os
from pathlib import Path
from types import MappingProxyType
from typing import Annotated, Literal, Mapping, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import InvalidConfigError
from .frequency import DEFAULT_REFERENCE_PITCH

_LOGGER = logging.getLogger("practiceroom.config")

SOUNDS_DIR_ENV = "PRACTICEROOM_SOUNDS_DIR"

TuningMode = Literal["equal_tempered", "just_intonation"]
OctaveDirection = Literal["up", "down"]
MaxVoices = Literal[1, 2, 3]

MIN_TEMPO = 30
MAX_TEMPO = 300
MIN_OCTAVE = 2
MAX_OCTAVE = 6
RETRY_DELAY_SECONDS = 2.0

COMMON_TEMPOS: tuple[int, ...] = (
    44, 46, 48, 50, 52, 54, 56, 58, 60, 63, 66, 69, 72, 76, 80, 84, 88, 92,
    96, 100, 104, 108, 112, 116, 120, 126, 132, 138, 144, 152, 160, 168, 176,
    184, 200, 208,
)  # fmt: skip

# Main click sounds and their short labels; the first one is the default.
MAIN_SOUNDS: Mapping[str, str] = MappingProxyType(
    {
        "Perc_Chair_lo.wav": "Click 1",
        "Perc_MetronomeQuartz_lo.wav": "Click 2",
        "Synth_Bell_A_hi.wav": "Click 3",
        "Synth_Square_D_hi.wav": "Click 4",
        "Synth_Weird_A_hi.wav": "Click 5",
    }
)
DEFAULT_SOUND_ID = "Perc_Chair_lo.wav"


ReferencePitch = Annotated[float, Field(gt=0.0, le=2000.0)]


class PureTimbre(BaseModel):
    """Sine oscillator with a soft envelope."""

    kind: Literal["pure"] = "pure"
    attack: float = Field(default=0.05, ge=0.0)
    release: float = Field(default=0.3, ge=0.0)
    glide: float = Field(default=0.05, ge=0.0)
    gain: float = Field(default=0.25, gt=0.0, le=1.0)

    model_config = ConfigDict(frozen=True, extra="forbid")


class RetroTimbre(BaseModel):
    """Band-limited square oscillator, quieter to match the sine's loudness."""

    kind: Literal["retro"] = "retro"
    attack: float = Field(default=0.02, ge=0.0)
    release: float = Field(default=0.2, ge=0.0)
    glide: float = Field(default=0.03, ge=0.0)
    gain: float = Field(default=0.12, gt=0.0, le=1.0)

    model_config = ConfigDict(frozen=True, extra="forbid")


Timbre = Annotated[PureTimbre | RetroTimbre, Field(discriminator="kind")]
TimbreName = Literal["pure", "retro"]


def timbre_from_name(name: TimbreName) -> PureTimbre | RetroTimbre:
    match name:
        case "pure":
            return PureTimbre()
        case "retro":
            return RetroTimbre()
        case _:
            raise InvalidConfigError(f"Unknown timbre: {name!r}")


class TunerSettings(BaseModel):
    window_size: int = Field(default=2048, ge=256)
    silence_gate: float = Field(default=0.01, ge=0.0)
    clarity_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    min_frequency: float = Field(default=50.0, gt=0.0)
    max_frequency: float = Field(default=2000.0, gt=0.0)
    update_interval: float = Field(default=0.016, ge=0.016)
    reference_pitch: ReferencePitch = DEFAULT_REFERENCE_PITCH
    sample_rate: int | None = None
    retry_delay: float = Field(default=RETRY_DELAY_SECONDS, ge=0.0)

    model_config = ConfigDict(frozen=True, extra="forbid")

    @field_validator("window_size")
    @classmethod
    def _validate_window(cls, value: int) -> int:
        if value & (value - 1):
            raise ValueError("window_size must be a power of two")
        return value


class DroneSettings(BaseModel):
    reference_pitch: ReferencePitch = DEFAULT_REFERENCE_PITCH
    max_voices: MaxVoices = 1
    tuning_mode: TuningMode = "just_intonation"
    timbre: Timbre = Field(default_factory=PureTimbre)
    default_octave: int = Field(default=4, ge=MIN_OCTAVE, le=MAX_OCTAVE)
    retry_delay: float = Field(default=RETRY_DELAY_SECONDS, ge=0.0)

    model_config = ConfigDict(frozen=True, extra="forbid")


class ClickTrackSettings(BaseModel):
    tempo_bpm: int = Field(default=88, ge=MIN_TEMPO, le=MAX_TEMPO)
    sound_id: str = DEFAULT_SOUND_ID
    schedule_ahead: float = Field(default=0.1, gt=0.0)
    lookahead_interval: float = Field(default=0.025, gt=0.0)
    start_lead: float = Field(default=0.05, ge=0.0)
    visual_offset: float = Field(default=0.03, ge=0.0)
    retry_delay: float = Field(default=RETRY_DELAY_SECONDS, ge=0.0)

    model_config = ConfigDict(frozen=True, extra="forbid")

    @field_validator("lookahead_interval")
    @classmethod
    def _validate_lookahead(cls, value: float) -> float:
        # The scheduler must wake at least once per scheduling window.
        if value > 1.0:
            raise ValueError("lookahead_interval must be at most one second")
        return value


def validate_tempo(tempo_bpm: int) -> int:
    if isinstance(tempo_bpm, bool) or not isinstance(tempo_bpm, int):
        raise InvalidConfigError(f"tempo must be an integer BPM, got {tempo_bpm!r}")
    if not MIN_TEMPO <= tempo_bpm <= MAX_TEMPO:
        raise InvalidConfigError(f"tempo must be within {MIN_TEMPO}..{MAX_TEMPO} BPM")
    return tempo_bpm


def validate_octave(octave: int) -> int:
    if not MIN_OCTAVE <= octave <= MAX_OCTAVE:
        raise InvalidConfigError(f"octave must be within {MIN_OCTAVE}..{MAX_OCTAVE}")
    return octave


def step_tempo(tempo_bpm: int, direction: int) -> int:
    """Move to the neighbouring entry of COMMON_TEMPOS (clamped at both ends)."""
    if direction > 0:
        larger = [value for value in COMMON_TEMPOS if value > tempo_bpm]
        return larger[0] if larger else COMMON_TEMPOS[-1]
    if direction < 0:
        smaller = [value for value in COMMON_TEMPOS if value < tempo_bpm]
        return smaller[-1] if smaller else COMMON_TEMPOS[0]
    return tempo_bpm


def default_sounds_dir() -> Path:
    configured = os.environ.get(SOUNDS_DIR_ENV)
    if configured:
        return Path(configured).expanduser()
    return Path.cwd() / "metronome_sounds"


SettingsT = TypeVar("SettingsT", bound=BaseModel)


def coerce_settings(model: type[SettingsT], values: Mapping[str, object]) -> SettingsT:
    """Build a settings model, converting validation failures into InvalidConfigError."""
    try:
        return model.model_validate(dict(values))
    except ValidationError as exc:
        _LOGGER.debug("Rejected %s: %s", model.__name__, exc)
        raise InvalidConfigError(str(exc)) from exc
