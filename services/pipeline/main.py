# services/pipeline/main.py
from __future__ import annotations
import argparse, asyncio, uuid
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Protocol

from common.bus import EventBus
from common.config import Settings, load_settings
from common.errors import (
    CaptureFailed, NarrationFailed, PipelineBusy, PipelineError, RunCancelled, UpstreamError,
)
from common.logging import get_logger, set_level
from common.schemas import Capture, Commentary, EncodedImage, MediaKind, Memory, StageEvent, now_ms
from services.frame_sampler.main import FfmpegMediaProbe, FfmpegThumbnailExtractor, FrameSampler
from services.inference_client.main import InferenceClient
from services.media_encoder.main import MediaEncoder
from services.memory_uploader.main import MemoryUploader, uploader_from_settings
from services.narrator.main import Narrator, NarrationOutcome, engine_from_name

log = get_logger("pipeline")


class Stage(str, Enum):
    IDLE = "idle"
    CAPTURING = "capturing"
    SAMPLING = "sampling"
    ENCODING = "encoding"
    ANALYSING = "analysing"
    NARRATING = "narrating"
    UPLOADING = "uploading"
    DONE = "done"
    FAILED = "failed"


TERMINAL = (Stage.DONE, Stage.FAILED)

StageListener = Callable[[StageEvent], None]

# ----------------- Capture source -----------------
class CaptureSource(Protocol):
    async def start_capture(self, kind: MediaKind, facing: str = "back") -> Capture: ...
    async def stop_capture(self) -> None: ...


class FileCaptureSource:
    """A capture that already sits on disk (camera roll, upload, test clip)."""

    def __init__(self, path: Path, duration_ms: Optional[int] = None):
        self.path = Path(path)
        self.duration_ms = duration_ms

    async def start_capture(self, kind: MediaKind, facing: str = "back") -> Capture:
        if not self.path.is_file():
            raise CaptureFailed(f"media file not found: {self.path}")
        return Capture(
            path=self.path,
            kind=kind,
            duration_ms=self.duration_ms if kind is MediaKind.VIDEO else None,
            captured_at_ms=now_ms(),
        )

    async def stop_capture(self) -> None:
        return None

# ----------------- Orchestrator -----------------
class PipelineOrchestrator:
    """
    One capture-to-memory run at a time:
      idle -> capturing -> (sampling | encoding) -> analysing -> narrating -> uploading -> done
    Any stage may end in failed; the error is raised to the caller unchanged.
    No retries. A new run starts again from idle.
    """

    def __init__(
        self,
        capture_source: CaptureSource,
        sampler: FrameSampler,
        encoder: MediaEncoder,
        inference: InferenceClient,
        narrator: Narrator,
        uploader: MemoryUploader,
        bus: Optional[EventBus] = None,
        status_stream: str = "memories.status",
        frame_count: int = 3,
        cleanup: bool = True,
    ):
        self._capture = capture_source
        self._sampler = sampler
        self._encoder = encoder
        self._inference = inference
        self._narrator = narrator
        self._uploader = uploader
        self._bus = bus
        self._status_stream = status_stream
        self.frame_count = frame_count
        self._cleanup = cleanup

        self.stage = Stage.IDLE
        self.last_error: Optional[PipelineError] = None
        self.last_memory: Optional[Memory] = None
        self._listeners: List[StageListener] = []
        self._active = False
        self._cancel_requested = False
        self._run_id = ""
        self._owner_id = ""
        self._transient: List[Path] = []
        self._stop_task: Optional[asyncio.Future] = None

    @property
    def active(self) -> bool:
        return self._active

    def add_listener(self, fn: StageListener):
        self._listeners.append(fn)

    def cancel(self):
        """Ask the active run to stop; it fails with RunCancelled at the next stage boundary."""
        if not self._active or self.stage is Stage.UPLOADING:
            return
        log.info(f"[cancel] run={self._run_id} stage={self.stage.value}")
        self._cancel_requested = True
        if self.stage is Stage.CAPTURING:
            self._stop_task = asyncio.ensure_future(self._capture.stop_capture())
        elif self.stage is Stage.NARRATING:
            self._narrator.stop()

    async def run(self, owner_id: str, kind: MediaKind, facing: str = "back",
                  frame_count: Optional[int] = None) -> Memory:
        if self._active:
            raise PipelineBusy(f"run {self._run_id} is still {self.stage.value}")
        self._active = True
        self._cancel_requested = False
        self._run_id = uuid.uuid4().hex[:12]
        self._owner_id = owner_id
        self._transient = []
        self.last_error = None
        self.last_memory = None
        try:
            if self.stage in TERMINAL:
                await self._transition(Stage.IDLE)
            memory = await self._run(owner_id, MediaKind(kind), facing, frame_count or self.frame_count)
            self.last_memory = memory
            await self._transition(Stage.DONE, memory_id=memory.id)
            return memory
        except PipelineError as e:
            await self._fail(e)
            raise
        except asyncio.CancelledError:
            await self._fail(RunCancelled("run task was cancelled"))
            raise
        except Exception as e:
            log.exception(f"[failed] run={self._run_id} unexpected error: {e}")
            await self._fail(PipelineError(f"{type(e).__name__}: {e}"))
            raise
        finally:
            await self._settle_stop_capture()
            self._discard_transient()
            self._active = False

    async def _run(self, owner_id: str, kind: MediaKind, facing: str, frame_count: int) -> Memory:
        await self._transition(Stage.CAPTURING)
        try:
            capture = await self._capture.start_capture(kind, facing)
        except Exception as e:
            # a capture stopped by cancel() ends as RunCancelled, not CaptureFailed
            await self._settle_stop_capture()
            self._check_cancelled()
            if isinstance(e, PipelineError):
                raise
            raise CaptureFailed(str(e) or type(e).__name__) from e
        await self._settle_stop_capture()
        self._check_cancelled()

        if capture.kind is MediaKind.VIDEO:
            await self._transition(Stage.SAMPLING)
            frames = await self._sampler.sample(capture, frame_count)
            self._transient.extend(f.path for f in frames)
            images: List[EncodedImage] = []
            for frame in frames:
                images.append(self._remember(await self._encoder.encode(frame.path)))
                self._check_cancelled()
            await self._transition(Stage.ANALYSING)
            commentary = await self._inference.describe_frame_sequence(images)
        else:
            await self._transition(Stage.ENCODING)
            image = self._remember(await self._encoder.encode(capture.path))
            self._check_cancelled()
            await self._transition(Stage.ANALYSING)
            commentary = await self._inference.describe_image(image)
        self._check_commentary(commentary)
        self._check_cancelled()

        await self._transition(Stage.NARRATING)
        result = await self._narrator.narrate(commentary.text)
        if result.outcome is NarrationOutcome.FAILED:
            raise NarrationFailed(result.reason or "speech synthesis failed")
        self._check_cancelled()

        await self._transition(Stage.UPLOADING)
        url = await self._uploader.upload(capture.path, owner_id, capture.kind, capture.captured_at_ms)
        return await self._uploader.persist(owner_id, commentary, url, capture.kind)

    # ----------------- helpers -----------------
    def _remember(self, image: EncodedImage) -> EncodedImage:
        if image.path is not None:
            self._transient.append(image.path)
        return image

    async def _settle_stop_capture(self):
        task, self._stop_task = self._stop_task, None
        if task is None:
            return
        try:
            await task
        except Exception as e:
            log.warning(f"[cancel] run={self._run_id} stop_capture failed: {e}")

    def _check_cancelled(self):
        if self._cancel_requested:
            raise RunCancelled(f"cancelled during {self.stage.value}")

    @staticmethod
    def _check_commentary(commentary: Optional[Commentary]):
        if commentary is None or not commentary.text or not commentary.text.strip():
            raise UpstreamError("inference returned an empty commentary")

    def _discard_transient(self):
        if not self._cleanup:
            return
        for p in self._transient:
            try:
                Path(p).unlink(missing_ok=True)
            except OSError as e:
                log.warning(f"could not remove transient file {p}: {e}")
        self._transient = []

    async def _fail(self, error: PipelineError):
        self.last_error = error
        log.error(f"[failed] run={self._run_id} stage={self.stage.value} {error.kind}: {error.message}")
        await self._transition(Stage.FAILED, error=error)

    async def _transition(self, stage: Stage, error: Optional[PipelineError] = None,
                          memory_id: Optional[str] = None):
        prev, self.stage = self.stage, stage
        log.info(f"[stage] run={self._run_id} {prev.value} -> {stage.value}")
        await self._publish(StageEvent(
            run_id=self._run_id,
            user_id=self._owner_id,
            stage=stage.value,
            error_kind=error.kind if error else None,
            error_message=error.message if error else None,
            memory_id=memory_id,
        ))

    async def _publish(self, event: StageEvent):
        for fn in self._listeners:
            try:
                fn(event)
            except Exception as e:
                log.warning(f"stage listener failed run={self._run_id} stage={event.stage}: {e}")
        if self._bus is None:
            return
        try:
            await self._bus.publish(self._status_stream, event)
        except Exception as e:
            log.warning(f"status publish failed stream={self._status_stream}: {e}")

# ----------------- Wiring -----------------
def build_orchestrator(settings: Settings, capture_source: CaptureSource,
                       bus: Optional[EventBus] = None) -> PipelineOrchestrator:
    work_dir = Path(settings.runtime.work_dir)
    inf = settings.inference
    sampler = FrameSampler(
        FfmpegMediaProbe(),
        FfmpegThumbnailExtractor(work_dir, settings.sampler.ffmpeg_bin),
        max_frames=settings.sampler.max_frames,
    )
    encoder = MediaEncoder(settings.encoder.target_width, settings.encoder.quality, work_dir)
    inference = InferenceClient(
        api_key=inf.api_key, api_url=inf.api_url, model=inf.model, max_tokens=inf.max_tokens,
        timeout_sec=inf.timeout_sec, source=inf.source,
        image_prompt=inf.image_prompt, frames_prompt=inf.frames_prompt,
    )
    narrator = Narrator(engine_from_name(settings.narrator.engine), settings.narrator.rate, settings.narrator.voice)
    uploader = uploader_from_settings(settings)
    return PipelineOrchestrator(
        capture_source, sampler, encoder, inference, narrator, uploader,
        bus=bus, status_stream=settings.runtime.stream_status,
        frame_count=settings.sampler.frame_count,
    )

# ----------------- Main -----------------
def _kind_for(path: Path) -> MediaKind:
    return MediaKind.VIDEO if path.suffix.lower() in (".mp4", ".mov", ".m4v", ".webm", ".mkv") else MediaKind.PHOTO


async def main(media: str, user_id: str, kind: Optional[str] = None, frames: Optional[int] = None,
               config_path: Optional[str] = None) -> int:
    log.info("pipeline starting…")
    settings = load_settings(config_path)
    set_level(settings.runtime.log_level)
    media_path = Path(media)
    media_kind = MediaKind(kind) if kind else _kind_for(media_path)

    bus = None
    if settings.runtime.redis_url:
        bus = await EventBus(settings.runtime.redis_url).connect()

    orchestrator = build_orchestrator(settings, FileCaptureSource(media_path), bus)
    try:
        memory = await orchestrator.run(user_id, media_kind, frame_count=frames)
    except PipelineError as e:
        log.error(f"Run failed: {e}")
        return 1
    finally:
        if bus is not None:
            await bus.close()
    log.info(f"Memory saved id={memory.id} commentary={memory.commentary[:80]!r}")
    return 0


def cli():
    ap = argparse.ArgumentParser(description="Turn a photo or video into a narrated memory")
    ap.add_argument("--media", required=True, help="photo or video file")
    ap.add_argument("--user", required=True, help="owning user id")
    ap.add_argument("--kind", choices=[k.value for k in MediaKind], help="default: from file extension")
    ap.add_argument("--frames", type=int, help="video sample count (1-10)")
    ap.add_argument("--config", default=None, help="config/config.yaml by default")
    args = ap.parse_args()
    raise SystemExit(asyncio.run(main(args.media, args.user, args.kind, args.frames, args.config)))


if __name__ == "__main__":
    cli()
