from __future__ import annotations

import asyncio
import logging
from typing import Callable

from .audio import SAMPLE_RATE
from .errors import AcquisitionFailedError, PracticeRoomError
from .playback import Mixer, open_output

_LOGGER = logging.getLogger("practiceroom.session")

OutputOpener = Callable[[int], Mixer]


class AudioSession:
    """Process-wide handle on the shared audio output.

    ``ensure_running()`` is the single entry point that unlocks the device;
    concurrent callers share one pending open. Tools that need the output
    hold it through ``acquire()``/``release()`` and the device closes when
    the last holder lets go.
    """

    def __init__(
        self,
        opener: OutputOpener | None = None,
        *,
        sample_rate: int = SAMPLE_RATE,
    ) -> None:
        self.sample_rate = sample_rate
        self._opener: OutputOpener = opener or (lambda rate: open_output(rate))
        self._output: Mixer | None = None
        self._opening: asyncio.Future[Mixer] | None = None
        self._holders = 0
        self.open_count = 0

    @property
    def running(self) -> bool:
        return self._output is not None

    @property
    def holders(self) -> int:
        return self._holders

    @property
    def output(self) -> Mixer | None:
        return self._output

    async def ensure_running(self) -> Mixer:
        if self._output is not None:
            return self._output
        if self._opening is None:
            self._opening = asyncio.ensure_future(self._open())
        return await asyncio.shield(self._opening)

    async def _open(self) -> Mixer:
        try:
            self.open_count += 1
            output = await asyncio.to_thread(self._opener, self.sample_rate)
        except PracticeRoomError:
            raise
        except Exception as exc:
            raise AcquisitionFailedError(f"Audio output unavailable: {exc}") from exc
        finally:
            self._opening = None
        self._output = output
        _LOGGER.info("audio session running")
        return output

    async def acquire(self) -> Mixer:
        # Counted before the open so a holder that bails out on arrival
        # cannot close the output under one still waiting.
        self._holders += 1
        try:
            return await self.ensure_running()
        except BaseException:
            self._holders -= 1
            raise

    def release(self) -> None:
        if self._holders == 0:
            return
        self._holders -= 1
        if self._holders == 0:
            self.close()

    def close(self) -> None:
        output = self._output
        self._output = None
        self._holders = 0
        if output is not None:
            output.close()
            _LOGGER.info("audio session closed")
