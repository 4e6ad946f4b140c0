import asyncio
import time
from collections.abc import Hashable

import pytest

from practiceroom.config import DroneSettings, RetroTimbre
from practiceroom.drone import DroneVoiceAllocator
from practiceroom.errors import AcquisitionFailedError, InvalidConfigError
from practiceroom.events import ToolHooks
from practiceroom.frequency import NotePitch
from practiceroom.playback import Mixer, OscillatorVoice
from practiceroom.session import AudioSession


class _RecordingMixer(Mixer):
    def __init__(self, sample_rate: int) -> None:
        super().__init__(sample_rate)
        self.started: list[Hashable] = []
        self.retuned: list[tuple[Hashable, float]] = []
        self.stopped: list[Hashable] = []

    def start_voice(self, key: Hashable, voice: OscillatorVoice) -> None:
        self.started.append(key)
        super().start_voice(key, voice)

    def retune_voice(self, key: Hashable, frequency: float) -> None:
        self.retuned.append((key, frequency))
        super().retune_voice(key, frequency)

    def stop_voice(self, key: Hashable) -> None:
        self.stopped.append(key)
        super().stop_voice(key)


def _drone(max_voices: int = 3, **settings: object) -> DroneVoiceAllocator:
    return DroneVoiceAllocator(DroneSettings(max_voices=max_voices, **settings))  # type: ignore[arg-type]


def test_toggle_twice_restores_empty_set() -> None:
    drone = _drone()
    drone.toggle_note(0)
    drone.toggle_note(0)
    assert drone.notes == ()
    assert drone.voices == ()


def test_new_notes_use_slot_default_octaves() -> None:
    drone = _drone()
    drone.set_octave(1, 3)
    drone.toggle_note(0)
    drone.toggle_note(7)
    assert drone.notes == (NotePitch(0, 4), NotePitch(7, 3))


def test_full_set_drops_oldest_note() -> None:
    drone = _drone()
    for pitch_class in (0, 4, 7, 11):
        drone.toggle_note(pitch_class)
    assert [note.pitch_class for note in drone.notes] == [4, 7, 11]
    assert drone.voices[0].is_root
    assert drone.voices[0].note.pitch_class == 4


def test_single_voice_mode_replaces_note() -> None:
    drone = _drone(max_voices=1)
    drone.toggle_note(0)
    drone.toggle_note(9)
    assert drone.notes == (NotePitch(9, 4),)
    assert drone.frequencies() == [pytest.approx(440.0)]


def test_lowering_max_voices_trims_notes() -> None:
    drone = _drone()
    for pitch_class in (0, 4, 7):
        drone.toggle_note(pitch_class)
    drone.set_max_voices(2)
    assert [note.pitch_class for note in drone.notes] == [4, 7]
    assert len(drone.slot_octaves) == 2
    with pytest.raises(InvalidConfigError):
        drone.set_max_voices(4)


def test_set_octave_moves_only_that_slot() -> None:
    drone = _drone()
    drone.toggle_note(0)
    drone.toggle_note(7)

    assert drone.set_octave(1, 5) is True
    assert drone.notes == (NotePitch(0, 4), NotePitch(7, 5))
    assert drone.slot_octaves == (4, 5, 4)

    assert drone.set_octave(2, 3) is True
    assert len(drone.notes) == 2
    drone.toggle_note(2)
    assert drone.notes[2] == NotePitch(2, 3)


def test_set_octave_refuses_duplicate_voice() -> None:
    drone = _drone()
    # toggle_note never keeps one pitch class twice, so build the set directly.
    drone._notes = [NotePitch(0, 4), NotePitch(0, 5)]

    assert drone.set_octave(1, 4) is False
    assert drone.notes == (NotePitch(0, 4), NotePitch(0, 5))
    assert drone.shift_octave(1, "down") is False


def test_set_octave_rejects_out_of_range() -> None:
    drone = _drone()
    drone.toggle_note(0)
    with pytest.raises(InvalidConfigError):
        drone.set_octave(0, 7)
    with pytest.raises(InvalidConfigError):
        drone.set_octave(3, 4)


def test_shift_octave_reflects_at_bounds() -> None:
    drone = _drone(max_voices=1)
    drone.toggle_note(0)
    drone.set_octave(0, 6)
    assert drone.shift_octave(0, "up")
    assert drone.notes == (NotePitch(0, 5),)
    drone.set_octave(0, 2)
    assert drone.shift_octave(0, "down")
    assert drone.notes == (NotePitch(0, 3),)


def test_just_intonation_tunes_against_root() -> None:
    drone = _drone()
    drone.toggle_note(0)
    drone.toggle_note(4)
    drone.toggle_note(7)

    root, third, fifth = drone.frequencies()

    assert root == pytest.approx(261.6256, abs=1e-3)
    assert third == pytest.approx(root * 5 / 4)
    assert fifth == pytest.approx(root * 3 / 2)
    display = drone.display()
    assert [record.interval_label for record in display] == ["Root", "M3", "P5"]
    assert display[0].cents is None
    assert display[1].cents == pytest.approx(-13.7, abs=0.05)


def test_equal_temperament_and_single_voice_skip_just_ratios() -> None:
    drone = _drone(tuning_mode="equal_tempered")
    drone.toggle_note(0)
    drone.toggle_note(4)
    assert drone.frequencies()[1] == pytest.approx(329.6276, abs=1e-3)
    assert all(record.cents is None for record in drone.display())

    single = _drone(max_voices=1)
    single.toggle_note(4)
    assert single.frequencies() == [pytest.approx(329.6276, abs=1e-3)]
    assert single.display()[0].interval_label is None


def test_reference_pitch_scales_every_voice() -> None:
    drone = _drone()
    drone.toggle_note(9)
    drone.toggle_note(4)
    drone.set_reference_pitch(442.0)
    assert drone.frequencies()[0] == pytest.approx(442.0)
    with pytest.raises(InvalidConfigError):
        drone.set_reference_pitch(0.0)


def test_voice_views_are_emitted() -> None:
    seen: list[tuple[object, ...]] = []
    drone = DroneVoiceAllocator(DroneSettings(max_voices=2), hooks=ToolHooks(on_voices=seen.append))
    drone.toggle_note(0)
    drone.toggle_note(7)
    assert len(seen) == 2
    assert len(seen[-1]) == 2


@pytest.mark.asyncio
async def test_live_changes_glide_instead_of_restarting() -> None:
    mixers: list[_RecordingMixer] = []

    def opener(rate: int) -> Mixer:
        mixers.append(_RecordingMixer(rate))
        return mixers[-1]

    session = AudioSession(opener)
    drone = DroneVoiceAllocator(DroneSettings(max_voices=3), session=session)
    drone.toggle_note(0)
    drone.toggle_note(4)

    await drone.start()
    assert drone.state == "playing"
    mixer = mixers[0]
    assert len(mixer.started) == 2

    drone.set_octave(0, 3)
    assert len(mixer.started) == 2
    assert mixer.started[0] in {key for key, _ in mixer.retuned}
    assert mixer.stopped == []

    drone.toggle_note(7)
    assert len(mixer.started) == 3
    drone.toggle_note(4)
    assert mixer.stopped

    drone.stop()
    assert drone.state == "stopped"
    assert mixer.voice_keys() == []
    assert not session.running


@pytest.mark.asyncio
async def test_timbre_change_rebuilds_sounding_voices() -> None:
    mixer = _RecordingMixer(44_100)
    session = AudioSession(lambda rate: mixer)
    drone = DroneVoiceAllocator(DroneSettings(max_voices=1), session=session)
    drone.toggle_note(9)
    await drone.start()

    drone.set_timbre(RetroTimbre())

    assert len(mixer.started) == 2
    voice = mixer.voice(mixer.started[-1])
    assert voice is not None and voice.waveform == "square"
    drone.stop()


@pytest.mark.asyncio
async def test_acquisition_failure_retries_once() -> None:
    attempts: list[int] = []
    errors: list[str] = []

    def opener(rate: int) -> Mixer:
        attempts.append(rate)
        if len(attempts) == 1:
            raise AcquisitionFailedError("device busy")
        return Mixer(rate)

    drone = DroneVoiceAllocator(
        DroneSettings(retry_delay=0.01),
        session=AudioSession(opener),
        hooks=ToolHooks(on_error=errors.append),
    )
    drone.toggle_note(0)

    await drone.start()
    assert drone.state == "error"
    assert drone.retry_pending
    assert errors

    await asyncio.sleep(0.05)

    assert len(attempts) == 2
    assert drone.state == "playing"
    drone.stop()


@pytest.mark.asyncio
async def test_stop_cancels_retry() -> None:
    attempts: list[int] = []

    def opener(rate: int) -> Mixer:
        attempts.append(rate)
        raise AcquisitionFailedError("device busy")

    drone = DroneVoiceAllocator(DroneSettings(retry_delay=0.01), session=AudioSession(opener))
    await drone.start()
    drone.stop()
    await asyncio.sleep(0.05)

    assert len(attempts) == 1
    assert drone.state == "stopped"


@pytest.mark.asyncio
async def test_removing_a_note_leaves_the_others_untouched() -> None:
    mixer = _RecordingMixer(44_100)
    drone = DroneVoiceAllocator(
        DroneSettings(max_voices=3, tuning_mode="equal_tempered"),
        session=AudioSession(lambda rate: mixer),
    )
    for pitch_class in (0, 4, 7):
        drone.toggle_note(pitch_class)
    await drone.start()
    assert len(mixer.started) == 3

    drone.toggle_note(0)

    assert len(mixer.started) == 3
    assert mixer.retuned == []
    assert mixer.stopped == [mixer.started[0]]
    assert sorted(mixer.voice_keys()) == sorted(mixer.started[1:])
    drone.stop()


@pytest.mark.asyncio
async def test_octave_move_glides_the_same_voice() -> None:
    mixer = _RecordingMixer(44_100)
    drone = DroneVoiceAllocator(DroneSettings(max_voices=2), session=AudioSession(lambda rate: mixer))
    drone.toggle_note(0)
    drone.toggle_note(7)
    await drone.start()

    drone.set_octave(1, 5)

    assert len(mixer.started) == 2
    assert mixer.stopped == []
    assert mixer.retuned[-1][0] == mixer.started[1]
    drone.stop()


@pytest.mark.asyncio
async def test_restart_while_opening_keeps_one_holder() -> None:
    def opener(rate: int) -> Mixer:
        time.sleep(0.02)
        return Mixer(rate)

    session = AudioSession(opener)
    drone = DroneVoiceAllocator(DroneSettings(), session=session)
    drone.toggle_note(0)

    first = asyncio.ensure_future(drone.start())
    await asyncio.sleep(0)
    drone.stop()
    await drone.start()
    await first

    assert drone.state == "playing"
    assert session.holders == 1
    assert session.running

    drone.stop()
    assert session.holders == 0
    assert not session.running


@pytest.mark.asyncio
async def test_stop_while_opening_releases_the_late_hold() -> None:
    def opener(rate: int) -> Mixer:
        time.sleep(0.02)
        return Mixer(rate)

    session = AudioSession(opener)
    drone = DroneVoiceAllocator(DroneSettings(), session=session)

    pending = asyncio.ensure_future(drone.start())
    await asyncio.sleep(0)
    drone.stop()
    await pending

    assert drone.state == "stopped"
    assert session.holders == 0
    assert not session.running


def test_octave_move_trims_an_overfull_set_but_keeps_the_root() -> None:
    drone = _drone()
    drone._notes = [NotePitch(0, 4), NotePitch(4, 4), NotePitch(7, 4), NotePitch(11, 4)]

    assert drone.set_octave(2, 5) is True

    assert drone.notes == (NotePitch(0, 4), NotePitch(7, 5), NotePitch(11, 4))
