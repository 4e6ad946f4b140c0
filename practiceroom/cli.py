from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
import threading
from pathlib import Path
from typing import Any, Coroutine, TypeVar

from rich.console import Console
from rich.live import Live
from rich.markup import escape
from rich.text import Text

from .catalog import SoundCatalog, display_name
from .click import ClickTrackScheduler
from .config import (
    ClickTrackSettings,
    DroneSettings,
    TunerSettings,
    coerce_settings,
    default_sounds_dir,
    step_tempo,
    timbre_from_name,
)
from .drone import DroneVoiceAllocator
from .errors import PracticeRoomError
from .events import ToolHooks
from .frequency import JUST_INTONATION_MARKS, parse_note, parse_pitch_class
from .logging_utils import DEBUG_ENV, configure_logging, log_exception
from .pitch import PitchDetector, PitchReading
from .playback import list_devices
from .session import AudioSession

_LOGGER = logging.getLogger("practiceroom.cli")
_CONSOLE = Console()
_NEEDLE_RANGE = 25

T = TypeVar("T")

uvloop: Any | None
if sys.platform.startswith("win"):
    uvloop = None
else:
    try:
        import uvloop as _uvloop
    except ImportError:
        uvloop = None
    else:
        uvloop = _uvloop


def _run(coro: Coroutine[object, object, T]) -> T:
    if uvloop is not None:
        asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
    return asyncio.run(coro)


class _StdinCommands:
    """Feeds stdin lines to the event loop from a daemon thread so exit never blocks on input."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[str | None] = asyncio.Queue()
        loop = asyncio.get_running_loop()

        def _reader() -> None:
            for line in sys.stdin:
                loop.call_soon_threadsafe(self._queue.put_nowait, line.strip())
            loop.call_soon_threadsafe(self._queue.put_nowait, None)

        threading.Thread(target=_reader, name="practiceroom-stdin", daemon=True).start()

    async def next(self, timeout: float | None) -> str | None:
        return await asyncio.wait_for(self._queue.get(), timeout)


async def _command_loop(seconds: float | None, handle: Any) -> None:
    commands = _StdinCommands()
    loop = asyncio.get_running_loop()
    deadline = loop.time() + seconds if seconds is not None else None
    while True:
        remaining = None if deadline is None else deadline - loop.time()
        if remaining is not None and remaining <= 0:
            return
        try:
            line = await commands.next(remaining)
        except asyncio.TimeoutError:
            return
        if line is None or line in ("q", "quit", "exit"):
            return
        if not line:
            continue
        try:
            await handle(line)
        except PracticeRoomError as exc:
            _CONSOLE.print(f"[red]{exc}[/red]")


def render_needle(cents: float | None) -> Text:
    """A +/-25 cent scale with the just-intonation marks and the current reading."""
    text = Text()
    for offset in range(-_NEEDLE_RANGE, _NEEDLE_RANGE + 1):
        if cents is not None and offset == round(max(-_NEEDLE_RANGE, min(_NEEDLE_RANGE, cents))):
            in_range = -_NEEDLE_RANGE <= cents <= _NEEDLE_RANGE
            text.append("●", style="bold green" if in_range else "bold red")
        elif offset == 0:
            text.append("|", style="bold")
        elif offset in JUST_INTONATION_MARKS:
            text.append("'", style="magenta")
        else:
            text.append("-", style="dim")
    return text


def _tuner_view(reading: PitchReading | None, error: str | None) -> Text:
    view = Text()
    if reading is None:
        view.append("--\n", style="bold")
        view.append("cents: --\n")
    else:
        view.append(f"{reading.label}\n", style="bold")
        view.append(f"cents: {reading.cents:+.1f}  ({reading.frequency_hz:.2f} Hz)\n")
    view.append_text(render_needle(None if reading is None else reading.cents))
    if error:
        view.append(f"\n{error}", style="red")
    return view


async def _run_tuner(args: argparse.Namespace) -> int:
    settings = coerce_settings(TunerSettings, {"reference_pitch": args.reference})
    status: dict[str, Any] = {"reading": None, "error": None}
    with Live(_tuner_view(None, None), console=_CONSOLE, refresh_per_second=20) as live:

        def _on_reading(reading: object | None) -> None:
            status["reading"] = reading
            live.update(_tuner_view(status["reading"], status["error"]))

        def _on_error(message: str) -> None:
            status["error"] = message
            live.update(_tuner_view(status["reading"], status["error"]))

        def _on_state(state: str) -> None:
            if state == "listening":
                status["error"] = None

        detector = PitchDetector(
            settings,
            hooks=ToolHooks(on_reading=_on_reading, on_error=_on_error, on_state_change=_on_state),
        )
        await detector.start()
        try:
            await _command_loop(args.seconds, _ignore_command)
        finally:
            detector.stop()
    return 0


async def _ignore_command(line: str) -> None:
    _CONSOLE.print("[dim]press q then Enter to quit[/dim]")


def _print_voices(voices: tuple[object, ...]) -> None:
    if not voices:
        _CONSOLE.print("--")
        return
    for voice in voices:
        _CONSOLE.print(getattr(voice, "describe")())


async def _run_drone(args: argparse.Namespace) -> int:
    notes = [parse_note(text) for text in args.notes]
    if not 1 <= len(notes) <= 3:
        _CONSOLE.print("[red]Give one to three notes.[/red]")
        return 2
    settings = coerce_settings(
        DroneSettings,
        {
            "reference_pitch": args.reference,
            "max_voices": max(len(notes), args.max_voices),
            "tuning_mode": "equal_tempered" if args.equal else "just_intonation",
            "timbre": timbre_from_name(args.timbre),
        },
    )
    drone = DroneVoiceAllocator(
        settings,
        session=AudioSession(),
        hooks=ToolHooks(on_error=lambda message: _CONSOLE.print(f"[red]{message}[/red]")),
    )
    for slot, note in enumerate(notes):
        drone.set_octave(slot, note.octave)
        drone.toggle_note(note.pitch_class)
    _print_voices(drone.display())
    drone.hooks = ToolHooks(
        on_voices=_print_voices,
        on_error=lambda message: _CONSOLE.print(f"[red]{message}[/red]"),
    )

    async def _handle(line: str) -> None:
        parts = line.split()
        match parts:
            case ["o", slot, ("up" | "down") as direction]:
                drone.shift_octave(int(slot) - 1, direction)
            case ["j"]:
                drone.set_tuning_mode(
                    "equal_tempered" if drone.tuning_mode == "just_intonation" else "just_intonation"
                )
            case ["t", name]:
                drone.set_timbre(timbre_from_name(name))  # type: ignore[arg-type]
            case ["n", count]:
                drone.set_max_voices(int(count))
            case [name]:
                drone.toggle_note(parse_pitch_class(name))
            case _:
                _CONSOLE.print("[dim]<note> | o <slot> up|down | j | t pure|retro | n <1-3> | q[/dim]")

    await drone.start()
    try:
        await _command_loop(args.seconds, _handle)
    finally:
        drone.stop()
    return 0


async def _run_click(args: argparse.Namespace) -> int:
    catalog = SoundCatalog(args.sounds_dir or default_sounds_dir())
    settings = coerce_settings(ClickTrackSettings, {"tempo_bpm": args.bpm})
    sound = args.sound or settings.sound_id
    if sound not in catalog:
        sound = catalog.ids()[0]
    failed = await catalog.prewarm()
    if failed:
        _CONSOLE.print(f"[yellow]Could not pre-load: {', '.join(failed)}[/yellow]")

    def _on_beat(index: int) -> None:
        _CONSOLE.print("●" if index == 0 else "○", end=" " if index < 3 else "\n")

    click = ClickTrackScheduler(
        catalog,
        settings,
        session=AudioSession(sample_rate=catalog.sample_rate),
        hooks=ToolHooks(
            on_beat=_on_beat if args.show_beats else None,
            on_loading=lambda loading: _CONSOLE.print("[dim]Loading sound...[/dim]") if loading else None,
            on_error=lambda message: _CONSOLE.print(f"[red]{message}[/red]"),
        ),
    )

    async def _handle(line: str) -> None:
        match line.split():
            case ["+"]:
                click.set_tempo(step_tempo(click.tempo_bpm, +1))
            case ["-"]:
                click.set_tempo(step_tempo(click.tempo_bpm, -1))
            case ["s", sound_id]:
                await click.switch_sound(sound_id)
            case [value] if value.isdigit():
                click.set_tempo(int(value))
            case _:
                _CONSOLE.print("[dim]<bpm> | + | - | s <sound> | q[/dim]")
                return
        _CONSOLE.print(f"{click.tempo_bpm} BPM, {display_name(click.sound_id)}")

    await click.start(settings.tempo_bpm, sound)
    try:
        await _command_loop(args.seconds, _handle)
    finally:
        click.stop()
    return 0


def _list_sounds(args: argparse.Namespace) -> int:
    catalog = SoundCatalog(args.sounds_dir or default_sounds_dir())
    for sound_id in catalog.ids():
        _CONSOLE.print(f"{sound_id}  [dim]{display_name(sound_id)}[/dim]")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="practiceroom")
    parser.add_argument("--sounds-dir", type=Path, default=None, help="Directory of click sounds.")
    sub = parser.add_subparsers(dest="command", required=True)

    tuner = sub.add_parser("tuner", help="Show the pitch of the microphone input.")
    tuner.add_argument("--reference", type=float, default=440.0, help="A4 in Hz.")
    tuner.add_argument("--seconds", type=float, default=None)

    drone = sub.add_parser("drone", help="Sound one to three drone notes.")
    drone.add_argument("notes", nargs="+", help="Notes such as C4 E4 G4; the first is the root.")
    drone.add_argument("--reference", type=float, default=440.0, help="A4 in Hz.")
    drone.add_argument("--equal", action="store_true", help="Equal temperament instead of just intonation.")
    drone.add_argument("--timbre", choices=["pure", "retro"], default="pure")
    drone.add_argument("--max-voices", type=int, choices=[1, 2, 3], default=1)
    drone.add_argument("--seconds", type=float, default=None)

    click = sub.add_parser("click", help="Run the metronome.")
    click.add_argument("--bpm", type=int, default=88)
    click.add_argument("--sound", type=str, default=None)
    click.add_argument("--show-beats", action="store_true")
    click.add_argument("--seconds", type=float, default=None)

    sub.add_parser("sounds", help="List the available click sounds.")
    sub.add_parser("devices", help="List audio devices.")
    return parser


def main(argv: list[str] | None = None) -> int:
    configure_logging()
    try:
        parser = build_parser()
        args = parser.parse_args(argv)

        if args.command == "tuner":
            return _run(_run_tuner(args))
        if args.command == "drone":
            return _run(_run_drone(args))
        if args.command == "click":
            return _run(_run_click(args))
        if args.command == "sounds":
            return _list_sounds(args)
        if args.command == "devices":
            _CONSOLE.print(list_devices())
            return 0

        parser.print_help()
        return 1
    except KeyboardInterrupt:
        return 130
    except Exception as exc:
        debug = bool(os.environ.get(DEBUG_ENV))
        _LOGGER.warning("practiceroom CLI failed: %s", exc, exc_info=debug)
        log_exception("practiceroom CLI", exc)
        _CONSOLE.print(f"[red]practiceroom: {escape(str(exc))}[/red]")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
