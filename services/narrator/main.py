# services/narrator/main.py
from __future__ import annotations
import asyncio, shutil
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Protocol

from common.errors import NarrationFailed
from common.logging import get_logger

log = get_logger("narrator")

BASE_WPM = 175  # words per minute at rate 1.0


class NarrationOutcome(str, Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(frozen=True)
class NarrationResult:
    outcome: NarrationOutcome
    reason: Optional[str] = None


class SpeechEngine(Protocol):
    async def speak(self, text: str, rate: float, voice: Optional[str]) -> None:
        """Return once speech has finished. Raise on synthesis errors."""
        ...

# ----------------- Engines -----------------
class SubprocessSpeechEngine:
    """
    Speaks through a local TTS binary:
      espeak-ng / espeak: -s <wpm> [-v voice] "<text>"
      say (macOS):        -r <wpm> [-v voice] "<text>"
    engine="auto" picks the first one found on PATH.
    """

    CANDIDATES = ("espeak-ng", "espeak", "say")

    def __init__(self, engine: str = "auto"):
        self.engine = engine

    def _binary(self) -> str:
        names = self.CANDIDATES if self.engine == "auto" else (self.engine,)
        for name in names:
            found = shutil.which(name)
            if found:
                return found
        raise RuntimeError(f"no speech synthesizer found (tried {', '.join(names)})")

    def command(self, binary: str, text: str, rate: float, voice: Optional[str]) -> List[str]:
        wpm = str(max(1, int(BASE_WPM * rate)))
        rate_flag = "-r" if binary.endswith("say") else "-s"
        parts = [binary, rate_flag, wpm]
        if voice:
            parts += ["-v", voice]
        parts.append(text)
        return parts

    async def speak(self, text: str, rate: float, voice: Optional[str]) -> None:
        parts = self.command(self._binary(), text, rate, voice)
        proc = await asyncio.create_subprocess_exec(
            *parts,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            _out, err = await proc.communicate()
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.terminate()
                await proc.wait()
            raise
        if proc.returncode != 0:
            raise RuntimeError(f"{parts[0]} exited {proc.returncode}: {(err or b'').decode(errors='ignore').strip()}")


class LogSpeechEngine:
    """Headless stand-in: writes the commentary to the log instead of a speaker."""

    async def speak(self, text: str, rate: float, voice: Optional[str]) -> None:
        log.info(f"[speak] rate={rate} voice={voice} text={text!r}")


def engine_from_name(name: str) -> SpeechEngine:
    if name == "log":
        return LogSpeechEngine()
    return SubprocessSpeechEngine(name)

# ----------------- Narrator -----------------
class Narrator:
    """
    One narration in flight at a time. narrate() resolves exactly once:
      completed - speech finished
      cancelled - stop() was called
      failed    - the engine raised
    """

    def __init__(self, engine: SpeechEngine, rate: float = 1.0, voice: Optional[str] = None):
        self._engine = engine
        self.rate = rate
        self.voice = voice
        self._task: Optional[asyncio.Task] = None
        self._stopping = False

    @property
    def speaking(self) -> bool:
        return self._task is not None and not self._task.done()

    async def narrate(self, text: str) -> NarrationResult:
        if self.speaking:
            raise NarrationFailed("a narration is already in progress")
        self._stopping = False
        self._task = asyncio.ensure_future(self._engine.speak(text, self.rate, self.voice))
        log.info(f"[narrating] chars={len(text)} rate={self.rate}")
        try:
            await self._task
        except asyncio.CancelledError:
            if self._stopping:
                log.info("[narration] stopped")
                return NarrationResult(NarrationOutcome.CANCELLED)
            raise
        except Exception as e:
            log.error(f"[narration] failed: {e}")
            return NarrationResult(NarrationOutcome.FAILED, reason=str(e) or type(e).__name__)
        finally:
            self._task = None
        log.info("[narration] done")
        return NarrationResult(NarrationOutcome.COMPLETED)

    def stop(self):
        if self.speaking:
            self._stopping = True
            self._task.cancel()
