# services/frame_sampler/main.py
from __future__ import annotations
import asyncio, math
from pathlib import Path
from typing import List, Protocol

import ffmpeg

from common.errors import DurationUnknown, FrameExtractionFailed, NoFramesExtracted
from common.logging import get_logger
from common.schemas import Capture, Frame

log = get_logger("frame_sampler")

# ----------------- Timestamp math -----------------
def sample_timestamps(duration_ms: int, frame_count: int) -> List[int]:
    """
    N evenly spaced interior timestamps:
      interval = duration / (N + 1); t(i) = floor(interval * i), i = 1..N
    t(0) and t(N+1) (first/last instants) are never sampled.
    """
    if duration_ms <= 0:
        raise ValueError(f"duration_ms must be positive, got {duration_ms}")
    if frame_count < 1:
        raise ValueError(f"frame_count must be >= 1, got {frame_count}")
    if duration_ms < frame_count + 1:
        # interval < 1ms would repeat timestamps
        raise ValueError(f"{duration_ms}ms is too short for {frame_count} samples")
    interval = duration_ms / (frame_count + 1)
    return [int(math.floor(interval * i)) for i in range(1, frame_count + 1)]

# ----------------- Collaborators -----------------
class MediaProbe(Protocol):
    async def get_duration_ms(self, capture: Capture) -> int: ...


class ThumbnailExtractor(Protocol):
    async def extract_at(self, capture: Capture, timestamp_ms: int) -> Path: ...


class FfmpegMediaProbe:
    """Duration via ffprobe (ffmpeg-python). Trusts capture.duration_ms when the source already knows it."""

    async def get_duration_ms(self, capture: Capture) -> int:
        if capture.duration_ms:
            return capture.duration_ms
        try:
            probe = await asyncio.to_thread(ffmpeg.probe, str(capture.path))
        except ffmpeg.Error as e:
            stderr = (e.stderr or b"").decode(errors="ignore").strip()
            raise DurationUnknown(f"ffprobe failed for {capture.path}: {stderr or e}") from e
        except FileNotFoundError as e:
            raise DurationUnknown(f"ffprobe not available: {e}") from e

        raw = (probe.get("format") or {}).get("duration")
        if raw is None:
            streams = [s for s in probe.get("streams", []) if s.get("codec_type") == "video"]
            raw = streams[0].get("duration") if streams else None
        try:
            duration_ms = int(float(raw) * 1000)
        except (TypeError, ValueError):
            raise DurationUnknown(f"no duration reported for {capture.path}")
        if duration_ms <= 0:
            raise DurationUnknown(f"non-positive duration for {capture.path}")
        return duration_ms


class FfmpegThumbnailExtractor:
    """One JPEG still per call, written to <work_dir>/frames/<stem>_<ts>ms.jpg."""

    def __init__(self, work_dir: Path, ffmpeg_bin: str = "ffmpeg"):
        self._out_dir = Path(work_dir) / "frames"
        self._ffmpeg_bin = ffmpeg_bin

    def command(self, capture: Capture, timestamp_ms: int, out_path: Path) -> List[str]:
        return (
            ffmpeg
            .input(str(capture.path), ss=timestamp_ms / 1000.0)
            .output(str(out_path), vframes=1, format="image2", vcodec="mjpeg")
            .global_args("-loglevel", "error")
            .overwrite_output()
            .compile(cmd=self._ffmpeg_bin)
        )

    async def extract_at(self, capture: Capture, timestamp_ms: int) -> Path:
        self._out_dir.mkdir(parents=True, exist_ok=True)
        out_path = self._out_dir / f"{capture.path.stem}_{timestamp_ms}ms.jpg"
        parts = self.command(capture, timestamp_ms, out_path)
        log.debug(f"ffmpeg: {' '.join(parts)}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *parts,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise FrameExtractionFailed(f"ffmpeg not available: {e}") from e
        _out, err = await proc.communicate()
        if proc.returncode != 0:
            raise FrameExtractionFailed(
                f"ffmpeg exited {proc.returncode} at {timestamp_ms}ms: {err.decode(errors='ignore').strip()}"
            )
        if not out_path.exists() or out_path.stat().st_size == 0:
            raise FrameExtractionFailed(f"no still written at {timestamp_ms}ms")
        return out_path

# ----------------- Sampler -----------------
class FrameSampler:
    def __init__(self, probe: MediaProbe, extractor: ThumbnailExtractor, max_frames: int = 10):
        self._probe = probe
        self._extractor = extractor
        self._max_frames = max_frames

    async def sample(self, capture: Capture, frame_count: int) -> List[Frame]:
        """
        Probe duration, then extract one still per interior timestamp.
        Per-timestamp failures are logged and skipped; ordinals stay contiguous
        over the frames that did succeed. Zero frames -> NoFramesExtracted.
        """
        try:
            duration_ms = await self._probe.get_duration_ms(capture)
        except DurationUnknown:
            raise
        except Exception as e:
            raise DurationUnknown(f"could not determine duration of {capture.path}: {e}") from e
        if not duration_ms or duration_ms <= 0:
            raise DurationUnknown(f"could not determine duration of {capture.path}")

        count = max(1, min(int(frame_count), self._max_frames))
        if duration_ms < count + 1:
            log.warning(f"[sampling] clip too short ({duration_ms}ms) for {count} frames; using {duration_ms - 1}")
            count = duration_ms - 1
        if count < 1:
            raise NoFramesExtracted(f"clip too short to sample ({duration_ms}ms)")

        timestamps = sample_timestamps(duration_ms, count)
        log.info(f"[sampling] path={capture.path} duration_ms={duration_ms} timestamps={timestamps}")

        frames: List[Frame] = []
        for i, ts in enumerate(timestamps, start=1):
            try:
                path = await self._extractor.extract_at(capture, ts)
            except Exception as e:
                log.warning(f"[sampling] skip frame {i}/{len(timestamps)} at {ts}ms: {e}")
                continue
            frames.append(Frame(path=path, ordinal=len(frames) + 1, timestamp_ms=ts))

        if not frames:
            raise NoFramesExtracted(f"all {len(timestamps)} extractions failed for {capture.path}")
        log.info(f"[sampled] path={capture.path} frames={len(frames)}/{len(timestamps)}")
        return frames
