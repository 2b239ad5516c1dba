# services/media_encoder/main.py
from __future__ import annotations
import asyncio, base64, hashlib
from io import BytesIO
from pathlib import Path
from typing import Optional

from PIL import Image, UnidentifiedImageError

from common.errors import EncodingFailed
from common.logging import get_logger
from common.schemas import EncodedImage

log = get_logger("media_encoder")

TARGET_WIDTH = 512
JPEG_QUALITY = 70
MEDIA_TYPE = "image/jpeg"


def _resize_to_width(img: Image.Image, width: int) -> Image.Image:
    if img.width == width:
        return img
    height = max(1, round(img.height * width / img.width))
    return img.resize((width, height), Image.LANCZOS)


def encode_image(
    path: Path,
    target_width: int = TARGET_WIDTH,
    quality: int = JPEG_QUALITY,
    out_dir: Optional[Path] = None,
) -> EncodedImage:
    """Fixed-width RGB JPEG at a fixed quality. Same input bytes -> same payload."""
    path = Path(path)
    try:
        with Image.open(path) as src:
            src.load()
            img = _resize_to_width(src.convert("RGB"), target_width)
    except (FileNotFoundError, UnidentifiedImageError, OSError, ValueError) as e:
        raise EncodingFailed(f"cannot read image {path}: {e}") from e

    buf = BytesIO()
    img.save(buf, format="JPEG", quality=quality)
    raw = buf.getvalue()

    out_path = None
    if out_dir is not None:
        out_dir = Path(out_dir)
        out_dir.mkdir(parents=True, exist_ok=True)
        digest = hashlib.sha1(raw).hexdigest()[:12]
        out_path = out_dir / f"{path.stem}_{digest}.jpg"
        out_path.write_bytes(raw)

    return EncodedImage(
        data=base64.b64encode(raw).decode("ascii"),
        media_type=MEDIA_TYPE,
        width=img.width,
        height=img.height,
        path=out_path,
    )


class MediaEncoder:
    def __init__(self, target_width: int = TARGET_WIDTH, quality: int = JPEG_QUALITY,
                 work_dir: Optional[Path] = None):
        self.target_width = target_width
        self.quality = quality
        self._out_dir = Path(work_dir) / "encoded" if work_dir else None

    async def encode(self, path: Path) -> EncodedImage:
        image = await asyncio.to_thread(encode_image, path, self.target_width, self.quality, self._out_dir)
        log.debug(f"[encoded] path={path} size={image.width}x{image.height} b64_len={len(image.data)}")
        return image
