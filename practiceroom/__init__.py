from __future__ import annotations

from .audio import SAMPLE_RATE
from .catalog import SoundAsset, SoundCatalog
from .click import ClickTrackScheduler
from .config import (
    COMMON_TEMPOS,
    ClickTrackSettings,
    DroneSettings,
    PureTimbre,
    RetroTimbre,
    TunerSettings,
    TuningMode,
    step_tempo,
)
from .drone import DroneVoiceAllocator, Voice, VoiceDisplay
from .errors import (
    AcquisitionFailedError,
    ClickTrackBusyError,
    DecodeFailedError,
    InvalidConfigError,
    InvalidStateError,
    PracticeRoomError,
)
from .events import ToolEvent, ToolHooks
from .frequency import (
    INTERVAL_LABELS,
    JUST_RATIOS,
    NotePitch,
    cents_between,
    format_note,
    frequency_to_note,
    interval_class,
    just_frequency,
    note_to_frequency,
    parse_note,
)
from .logging_utils import configure_logging as _configure_logging
from .pitch import PitchDetector, PitchReading, estimate_pitch
from .session import AudioSession

__all__ = [
    "SAMPLE_RATE",
    "COMMON_TEMPOS",
    "INTERVAL_LABELS",
    "JUST_RATIOS",
    "AcquisitionFailedError",
    "AudioSession",
    "ClickTrackBusyError",
    "ClickTrackScheduler",
    "ClickTrackSettings",
    "DecodeFailedError",
    "DroneSettings",
    "DroneVoiceAllocator",
    "InvalidConfigError",
    "InvalidStateError",
    "NotePitch",
    "PitchDetector",
    "PitchReading",
    "PracticeRoomError",
    "PureTimbre",
    "RetroTimbre",
    "SoundAsset",
    "SoundCatalog",
    "ToolEvent",
    "ToolHooks",
    "TunerSettings",
    "TuningMode",
    "Voice",
    "VoiceDisplay",
    "cents_between",
    "estimate_pitch",
    "format_note",
    "frequency_to_note",
    "interval_class",
    "just_frequency",
    "note_to_frequency",
    "parse_note",
    "step_tempo",
]

__version__ = "0.1.0"

_configure_logging()
del _configure_logging
