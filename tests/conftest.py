import asyncio
import os
import tempfile
from pathlib import Path
from types import SimpleNamespace

import pytest
from PIL import Image

os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="her-logs-"))

from common.errors import DurationUnknown  # noqa: E402
from common.schemas import Capture, Commentary, MediaKind  # noqa: E402
from services.frame_sampler.main import FrameSampler  # noqa: E402
from services.media_encoder.main import MediaEncoder  # noqa: E402
from services.memory_uploader.main import MemoryUploader  # noqa: E402
from services.narrator.main import Narrator  # noqa: E402
from services.pipeline.main import PipelineOrchestrator  # noqa: E402


def write_image(path: Path, size=(800, 600), color=(200, 120, 40), fmt="JPEG", mode="RGB") -> Path:
    Image.new(mode, size, color if mode == "RGB" else color + (255,)).save(path, format=fmt)
    return path


@pytest.fixture
def jpeg_path(tmp_path):
    return write_image(tmp_path / "photo.jpg")


@pytest.fixture
def png_path(tmp_path):
    return write_image(tmp_path / "shot.png", fmt="PNG", mode="RGBA")


# ----------------- fakes -----------------
class FakeCaptureSource:
    def __init__(self, journal, path: Path, duration_ms=10_000):
        self.journal = journal
        self.path = path
        self.duration_ms = duration_ms
        self.error = None
        self.stopped = False

    async def start_capture(self, kind, facing="back"):
        self.journal.append(("capture", kind.value))
        if self.error:
            raise self.error
        return Capture(
            path=self.path,
            kind=kind,
            duration_ms=self.duration_ms if kind is MediaKind.VIDEO else None,
            captured_at_ms=1_700_000_000_000,
        )

    async def stop_capture(self):
        self.stopped = True


class FakeProbe:
    def __init__(self, duration_ms=10_000):
        self.duration_ms = duration_ms

    async def get_duration_ms(self, capture):
        if self.duration_ms is None:
            raise DurationUnknown("probe could not read the clip")
        return self.duration_ms


class FakeExtractor:
    def __init__(self, journal, out_dir: Path):
        self.journal = journal
        self.out_dir = out_dir
        self.fail_at = set()
        self.fail_all = False
        self.requested = []
        self.written = []

    async def extract_at(self, capture, timestamp_ms):
        self.requested.append(timestamp_ms)
        self.journal.append(("extract", timestamp_ms))
        if self.fail_all or timestamp_ms in self.fail_at:
            raise RuntimeError(f"decoder error at {timestamp_ms}")
        self.out_dir.mkdir(parents=True, exist_ok=True)
        path = write_image(self.out_dir / f"frame_{timestamp_ms}.jpg", color=(timestamp_ms % 255, 10, 10))
        self.written.append(path)
        return path


class FakeInference:
    def __init__(self, journal, text="A calm evening by the lake."):
        self.journal = journal
        self.text = text
        self.error = None
        self.images = []

    async def describe_image(self, image):
        return await self._describe([image])

    async def describe_frame_sequence(self, images):
        return await self._describe(list(images))

    async def _describe(self, images):
        self.journal.append(("describe", len(images)))
        self.images = images
        if self.error:
            raise self.error
        return Commentary(text=self.text, source="OpenAI", created_at_ms=1_700_000_000_500)


class FakeSpeechEngine:
    def __init__(self, journal):
        self.journal = journal
        self.error = None
        self.block = False

    async def speak(self, text, rate, voice):
        self.journal.append(("speak", text))
        if self.error:
            raise self.error
        if self.block:
            await asyncio.Event().wait()


class FakeStorage:
    def __init__(self, journal):
        self.journal = journal
        self.error = None
        self.objects = {}

    async def put_object(self, bucket, key, data, content_type):
        self.journal.append(("put", key))
        if self.error:
            raise self.error
        self.objects[key] = (data, content_type)
        return f"https://cdn.test/{bucket}/{key}"


class FakeDatastore:
    def __init__(self, journal):
        self.journal = journal
        self.error = None
        self.rows = []

    async def insert_memory(self, record):
        self.journal.append(("insert", record))
        if self.error:
            raise self.error
        row = dict(record, id=len(self.rows) + 1,
                   created_at=f"2026-10-19T12:00:{len(self.rows):02d}+00:00")
        self.rows.append(row)
        return row

    async def list_memories(self, owner_id, limit=None):
        if self.error:
            raise self.error
        rows = sorted((r for r in self.rows if r["user_id"] == owner_id),
                      key=lambda r: r["created_at"], reverse=True)
        return rows[:limit] if limit else rows


@pytest.fixture
def parts(tmp_path, jpeg_path):
    """Real sampler/encoder/narrator/uploader over fake I/O collaborators."""
    journal = []
    video_path = tmp_path / "clip.mp4"
    video_path.write_bytes(b"\x00\x00\x00\x18ftypmp42" + b"\x00" * 64)

    ns = SimpleNamespace(journal=journal, jpeg_path=jpeg_path, video_path=video_path)
    ns.capture = FakeCaptureSource(journal, jpeg_path)
    ns.probe = FakeProbe()
    ns.extractor = FakeExtractor(journal, tmp_path / "frames")
    ns.inference = FakeInference(journal)
    ns.engine = FakeSpeechEngine(journal)
    ns.storage = FakeStorage(journal)
    ns.datastore = FakeDatastore(journal)
    ns.narrator = Narrator(ns.engine)
    ns.uploader = MemoryUploader(ns.storage, ns.datastore, bucket="her-bucket")
    ns.stages = []

    def build(**kw):
        orch = PipelineOrchestrator(
            ns.capture,
            FrameSampler(ns.probe, ns.extractor, max_frames=10),
            MediaEncoder(work_dir=tmp_path / "work"),
            ns.inference,
            ns.narrator,
            ns.uploader,
            **kw,
        )
        orch.add_listener(lambda ev: ns.stages.append(ev.stage))
        return orch

    ns.build = build
    return ns

