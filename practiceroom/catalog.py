from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Literal, Sequence

from .audio import SAMPLE_RATE, FloatArray, decode_file
from .config import MAIN_SOUNDS
from .errors import DecodeFailedError, InvalidConfigError

_LOGGER = logging.getLogger("practiceroom.catalog")

AssetState = Literal["unloaded", "loading", "loaded", "failed"]
Decoder = Callable[[Path, int], FloatArray]
_INDEX_FILE = "index.json"


def _default_decoder(path: Path, sample_rate: int) -> FloatArray:
    return decode_file(path, sample_rate=sample_rate)


@dataclass(slots=True)
class SoundAsset:
    id: str
    path: Path
    state: AssetState = "unloaded"
    buffer: FloatArray | None = None
    error: str | None = None

    @property
    def loaded(self) -> bool:
        return self.state == "loaded" and self.buffer is not None


def display_name(sound_id: str) -> str:
    """``Perc_Chair_lo.wav`` -> ``Perc_Chair_lo (Click 1)``."""
    base = Path(sound_id).name
    stem = base[:-4] if base.lower().endswith(".wav") else base
    label = MAIN_SOUNDS.get(base)
    return f"{stem} ({label})" if label else stem


class SoundCatalog:
    """Click sounds addressed by file name inside one directory.

    The directory's ``index.json`` (a JSON list of file names) defines the
    order when present; otherwise every ``*.wav`` is listed. Assets are
    created on first reference and decoded on demand, except the pre-warmed
    set which is decoded up front and never evicted.
    """

    def __init__(
        self,
        root: str | Path,
        *,
        sample_rate: int = SAMPLE_RATE,
        prewarmed: Sequence[str] | None = None,
        decoder: Decoder | None = None,
    ) -> None:
        self.root = Path(root)
        self.sample_rate = sample_rate
        self._decoder: Decoder = decoder or _default_decoder
        self._assets: dict[str, SoundAsset] = {}
        self._loads: dict[str, asyncio.Task[SoundAsset]] = {}
        self._ids = self._discover()
        self.prewarmed: tuple[str, ...] = tuple(
            sound_id for sound_id in (prewarmed if prewarmed is not None else MAIN_SOUNDS) if sound_id in self._ids
        )

    def _discover(self) -> tuple[str, ...]:
        index_path = self.root / _INDEX_FILE
        try:
            entries = json.loads(index_path.read_text(encoding="utf-8"))
            if not isinstance(entries, list) or not all(isinstance(item, str) for item in entries):
                raise ValueError("index.json must be a list of file names")
            return tuple(entries)
        except FileNotFoundError:
            pass
        except (OSError, ValueError) as exc:
            _LOGGER.warning("Ignoring sound index %s: %s", index_path, exc)
            return tuple(MAIN_SOUNDS)
        if self.root.is_dir():
            found = tuple(sorted(path.name for path in self.root.glob("*.wav")))
            if found:
                return found
        return tuple(MAIN_SOUNDS)

    def ids(self) -> tuple[str, ...]:
        return self._ids

    def __contains__(self, sound_id: object) -> bool:
        return sound_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def asset(self, sound_id: str) -> SoundAsset:
        if sound_id not in self._ids:
            raise InvalidConfigError(f"Unknown sound: {sound_id!r}")
        asset = self._assets.get(sound_id)
        if asset is None:
            asset = SoundAsset(id=sound_id, path=self.root / sound_id)
            self._assets[sound_id] = asset
        return asset

    async def load(self, sound_id: str) -> SoundAsset:
        """Decode ``sound_id`` off the event loop; concurrent calls share one decode."""
        asset = self.asset(sound_id)
        if asset.loaded:
            return asset
        task = self._loads.get(sound_id)
        if task is None:
            task = asyncio.ensure_future(self._decode(asset))
            self._loads[sound_id] = task
        return await asyncio.shield(task)

    async def _decode(self, asset: SoundAsset) -> SoundAsset:
        asset.state = "loading"
        asset.error = None
        try:
            buffer = await asyncio.to_thread(self._decoder, asset.path, self.sample_rate)
        except DecodeFailedError as exc:
            asset.state = "failed"
            asset.error = str(exc)
            raise
        except Exception as exc:
            asset.state = "failed"
            asset.error = str(exc)
            raise DecodeFailedError(f"Could not read {asset.id}: {exc}") from exc
        finally:
            self._loads.pop(asset.id, None)
        asset.buffer = buffer
        asset.state = "loaded"
        _LOGGER.debug("decoded %s (%d samples)", asset.id, buffer.size)
        return asset

    async def prewarm(self) -> list[str]:
        """Decode the pre-warmed set; returns the ids that failed."""
        results = await asyncio.gather(
            *(self.load(sound_id) for sound_id in self.prewarmed), return_exceptions=True
        )
        failed: list[str] = []
        for sound_id, result in zip(self.prewarmed, results):
            if isinstance(result, BaseException):
                _LOGGER.warning("Could not pre-warm %s: %s", sound_id, result)
                failed.append(sound_id)
        return failed

    def release(self, sound_id: str) -> None:
        """Drop a superseded asset's buffer unless it belongs to the pre-warmed set."""
        if sound_id in self.prewarmed:
            return
        asset = self._assets.pop(sound_id, None)
        if asset is not None:
            asset.buffer = None
            asset.state = "unloaded"
