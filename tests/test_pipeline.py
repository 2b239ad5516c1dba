import asyncio

import pytest

from common.errors import (
    CaptureFailed, NarrationFailed, NoFramesExtracted, PipelineBusy, RunCancelled, UploadFailed, UpstreamError,
)
from common.schemas import MediaKind
from services.pipeline.main import FileCaptureSource, Stage


def kinds(journal):
    return [entry[0] for entry in journal]


def test_photo_run_produces_image_memory(parts):
    orch = parts.build()

    memory = asyncio.run(orch.run("user-1", MediaKind.PHOTO))

    assert memory.user_id == "user-1"
    assert memory.commentary == "A calm evening by the lake."
    assert memory.image_uri == "https://cdn.test/her-bucket/user-1_1700000000000.jpg"
    assert memory.video_uri is None
    assert parts.stages == ["capturing", "encoding", "analysing", "narrating", "uploading", "done"]
    assert kinds(parts.journal) == ["capture", "describe", "speak", "put", "insert"]
    assert orch.stage is Stage.DONE
    assert not orch.active


def test_video_run_samples_frames_and_stores_video_reference(parts):
    parts.capture.path = parts.video_path
    orch = parts.build(frame_count=3)

    memory = asyncio.run(orch.run("user-1", MediaKind.VIDEO))

    assert parts.extractor.requested == [2500, 5000, 7500]
    assert len(parts.inference.images) == 3
    assert memory.video_uri == "https://cdn.test/her-bucket/user-1_1700000000000.mp4"
    assert memory.image_uri is None
    assert parts.stages == ["capturing", "sampling", "analysing", "narrating", "uploading", "done"]
    _data, content_type = parts.storage.objects["user-1_1700000000000.mp4"]
    assert content_type == "video/mp4"


def test_video_run_proceeds_with_partial_frames(parts):
    parts.capture.path = parts.video_path
    parts.extractor.fail_at = {5000}
    orch = parts.build(frame_count=3)

    memory = asyncio.run(orch.run("user-1", MediaKind.VIDEO))

    assert len(parts.inference.images) == 2
    assert memory.video_uri


def test_transient_frames_are_removed_after_run(parts):
    parts.capture.path = parts.video_path
    orch = parts.build(frame_count=2)

    asyncio.run(orch.run("user-1", MediaKind.VIDEO))

    assert parts.extractor.written
    assert not any(p.exists() for p in parts.extractor.written)
    assert parts.video_path.exists()


def test_zero_extracted_frames_fails_without_memory(parts):
    parts.capture.path = parts.video_path
    parts.extractor.fail_all = True
    orch = parts.build()

    with pytest.raises(NoFramesExtracted):
        asyncio.run(orch.run("user-1", MediaKind.VIDEO))

    assert orch.stage is Stage.FAILED
    assert orch.last_error.kind == "NoFramesExtracted"
    assert "describe" not in kinds(parts.journal)
    assert "put" not in kinds(parts.journal)
    assert parts.datastore.rows == []


def test_inference_error_stops_before_narration(parts):
    parts.inference.error = UpstreamError("model overloaded", status_code=503)
    orch = parts.build()

    with pytest.raises(UpstreamError) as exc:
        asyncio.run(orch.run("user-1", MediaKind.PHOTO))

    assert exc.value.status_code == 503
    assert "speak" not in kinds(parts.journal)
    assert parts.stages[-2:] == ["analysing", "failed"]


def test_empty_commentary_aborts_before_upload(parts):
    parts.inference.text = "   "
    orch = parts.build()

    with pytest.raises(UpstreamError):
        asyncio.run(orch.run("user-1", MediaKind.PHOTO))

    assert "put" not in kinds(parts.journal)
    assert "insert" not in kinds(parts.journal)


def test_narration_error_prevents_upload(parts):
    parts.engine.error = RuntimeError("audio device busy")
    orch = parts.build()

    with pytest.raises(NarrationFailed) as exc:
        asyncio.run(orch.run("user-1", MediaKind.PHOTO))

    assert "audio device busy" in exc.value.message
    assert "put" not in kinds(parts.journal)
    assert "uploading" not in parts.stages


def test_upload_failure_never_persists(parts):
    parts.storage.error = UploadFailed("bucket is read-only")
    orch = parts.build()

    with pytest.raises(UploadFailed):
        asyncio.run(orch.run("user-1", MediaKind.PHOTO))

    assert "insert" not in kinds(parts.journal)
    assert orch.stage is Stage.FAILED


def test_persist_only_sees_url_returned_by_upload(parts):
    orch = parts.build()

    asyncio.run(orch.run("user-1", MediaKind.PHOTO))

    (_, record), = [e for e in parts.journal if e[0] == "insert"]
    put_keys = [e[1] for e in parts.journal if e[0] == "put"]
    assert record["image_uri"] == f"https://cdn.test/her-bucket/{put_keys[0]}"


def test_capture_errors_are_wrapped(parts):
    parts.capture.error = OSError("camera unavailable")
    orch = parts.build()

    with pytest.raises(CaptureFailed):
        asyncio.run(orch.run("user-1", MediaKind.PHOTO))

    assert parts.stages == ["capturing", "failed"]


def test_new_run_after_failure_starts_from_idle(parts):
    parts.engine.error = RuntimeError("tts crashed")
    orch = parts.build()
    with pytest.raises(NarrationFailed):
        asyncio.run(orch.run("user-1", MediaKind.PHOTO))

    parts.engine.error = None
    parts.stages.clear()
    asyncio.run(orch.run("user-1", MediaKind.PHOTO))

    assert parts.stages[0] == "idle"
    assert parts.stages[-1] == "done"
    assert orch.last_error is None


def test_second_run_is_rejected_and_cancel_fails_the_first(parts):
    parts.engine.block = True
    orch = parts.build()

    async def scenario():
        first = asyncio.create_task(orch.run("user-1", MediaKind.PHOTO))
        for _ in range(500):
            if parts.narrator.speaking:
                break
            await asyncio.sleep(0.01)
        assert orch.stage is Stage.NARRATING

        with pytest.raises(PipelineBusy):
            await orch.run("user-1", MediaKind.PHOTO)

        orch.cancel()
        with pytest.raises(RunCancelled):
            await asyncio.wait_for(first, timeout=5)

    asyncio.run(scenario())

    assert "put" not in kinds(parts.journal)
    assert orch.stage is Stage.FAILED
    assert orch.last_error.kind == "RunCancelled"


def test_stage_events_go_to_status_stream(parts):
    class RecordingBus:
        def __init__(self):
            self.sent = []

        async def publish(self, stream, event):
            self.sent.append((stream, event.model_dump(mode="json", exclude_none=True)))
            return "1-0"

    bus = RecordingBus()
    orch = parts.build(bus=bus, status_stream="memories.status")

    memory = asyncio.run(orch.run("user-1", MediaKind.PHOTO))

    streams = {s for s, _ in bus.sent}
    assert streams == {"memories.status"}
    last = bus.sent[-1][1]
    assert last["event"] == "pipeline.stage"
    assert last["stage"] == "done"
    assert last["memory_id"] == memory.id
    assert len({p["run_id"] for _, p in bus.sent}) == 1


def test_status_bus_failure_does_not_fail_run(parts):
    class BrokenBus:
        async def publish(self, stream, event):
            raise ConnectionError("redis down")

    orch = parts.build(bus=BrokenBus())

    memory = asyncio.run(orch.run("user-1", MediaKind.PHOTO))

    assert memory.image_uri


def test_file_capture_source(tmp_path, jpeg_path):
    capture = asyncio.run(FileCaptureSource(jpeg_path).start_capture(MediaKind.PHOTO))
    assert capture.path == jpeg_path
    assert capture.duration_ms is None

    with pytest.raises(CaptureFailed):
        asyncio.run(FileCaptureSource(tmp_path / "missing.mp4").start_capture(MediaKind.VIDEO))


def test_listener_error_does_not_fail_a_persisted_run(parts):
    orch = parts.build()

    def crash_on_done(event):
        if event.stage == "done":
            raise RuntimeError("ui listener crashed")

    orch.add_listener(crash_on_done)

    memory = asyncio.run(orch.run("user-1", MediaKind.PHOTO))

    assert orch.stage is Stage.DONE
    assert orch.last_memory == memory
    assert orch.last_error is None
    assert parts.stages[-1] == "done"
    assert len(parts.datastore.rows) == 1


class StuckCapture:
    """Capture that only ends when stop_capture() is called."""

    def __init__(self, stop_error=None):
        self.stop_error = stop_error
        self.started = asyncio.Event()
        self.released = asyncio.Event()
        self.stop_calls = 0

    async def start_capture(self, kind, facing="back"):
        self.started.set()
        await self.released.wait()
        raise OSError("recording interrupted")

    async def stop_capture(self):
        self.stop_calls += 1
        self.released.set()
        if self.stop_error:
            raise self.stop_error


@pytest.mark.parametrize("stop_error", [None, OSError("camera already closed")])
def test_cancel_during_capture_stops_it_and_fails_cancelled(parts, stop_error):
    loop_errors = []

    async def scenario():
        asyncio.get_running_loop().set_exception_handler(lambda loop, ctx: loop_errors.append(ctx["message"]))
        parts.capture = StuckCapture(stop_error)
        orch = parts.build()
        first = asyncio.create_task(orch.run("user-1", MediaKind.VIDEO))
        await asyncio.wait_for(parts.capture.started.wait(), timeout=5)
        assert orch.stage is Stage.CAPTURING

        orch.cancel()
        with pytest.raises(RunCancelled):
            await asyncio.wait_for(first, timeout=5)
        return orch

    orch = asyncio.run(scenario())

    assert parts.capture.stop_calls == 1
    assert orch.last_error.kind == "RunCancelled"
    assert parts.stages == ["capturing", "failed"]
    assert loop_errors == []


def test_narration_stopped_outside_cancel_still_uploads(parts):
    parts.engine.block = True
    orch = parts.build()

    async def scenario():
        first = asyncio.create_task(orch.run("user-1", MediaKind.PHOTO))
        for _ in range(500):
            if parts.narrator.speaking:
                break
            await asyncio.sleep(0.01)
        parts.narrator.stop()
        return await asyncio.wait_for(first, timeout=5)

    memory = asyncio.run(scenario())

    assert memory.image_uri
    assert parts.stages[-3:] == ["narrating", "uploading", "done"]
    assert kinds(parts.journal)[-2:] == ["put", "insert"]


def test_unexpected_error_is_recorded_as_last_error(parts):
    parts.inference.error = ValueError("bad tensor shape")
    orch = parts.build()

    with pytest.raises(ValueError):
        asyncio.run(orch.run("user-1", MediaKind.PHOTO))

    assert orch.stage is Stage.FAILED
    assert orch.last_error is not None
    assert "ValueError" in orch.last_error.message
    assert "bad tensor shape" in orch.last_error.message
    assert parts.stages[-1] == "failed"
