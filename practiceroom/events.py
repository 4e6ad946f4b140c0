from __future__ import annotations

import logging
from typing import Callable, Literal

from pydantic import BaseModel, ConfigDict

_LOGGER = logging.getLogger("practiceroom.events")

ToolName = Literal["tuner", "drone", "click"]
EventKind = Literal["state", "reading", "no_pitch", "voices", "loading", "beat", "error"]


class ToolEvent(BaseModel):
    """Everything a tool reports to its presentation layer."""

    tool: ToolName
    kind: EventKind
    state: str | None = None
    reading: object | None = None
    voices: tuple[object, ...] | None = None
    loading: bool | None = None
    beat_index: int | None = None
    message: str | None = None

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        arbitrary_types_allowed=True,
    )


class ToolHooks(BaseModel):
    on_event: Callable[[ToolEvent], None] | None = None
    on_state_change: Callable[[str], None] | None = None
    on_reading: Callable[[object | None], None] | None = None
    on_voices: Callable[[tuple[object, ...]], None] | None = None
    on_loading: Callable[[bool], None] | None = None
    on_beat: Callable[[int], None] | None = None
    on_error: Callable[[str], None] | None = None

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        arbitrary_types_allowed=True,
    )


def emit_event(hooks: ToolHooks | None, event: ToolEvent) -> None:
    """Dispatch an event; a failing presentation callback never reaches the audio code."""
    if hooks is None:
        return
    try:
        if hooks.on_event is not None:
            hooks.on_event(event)
        match event.kind:
            case "state":
                if hooks.on_state_change is not None and event.state is not None:
                    hooks.on_state_change(event.state)
            case "reading" | "no_pitch":
                if hooks.on_reading is not None:
                    hooks.on_reading(event.reading)
            case "voices":
                if hooks.on_voices is not None and event.voices is not None:
                    hooks.on_voices(event.voices)
            case "loading":
                if hooks.on_loading is not None and event.loading is not None:
                    hooks.on_loading(event.loading)
            case "beat":
                if hooks.on_beat is not None and event.beat_index is not None:
                    hooks.on_beat(event.beat_index)
            case "error":
                if hooks.on_error is not None and event.message is not None:
                    hooks.on_error(event.message)
    except Exception as exc:
        _LOGGER.warning("%s hook failed for %s: %s", event.tool, event.kind, exc, exc_info=True)
