# services/inference_client/main.py
from __future__ import annotations
import base64, binascii, re, time
from typing import Any, Dict, List, Optional, Sequence, Union

import httpx

from common.config import FRAMES_PROMPT, IMAGE_PROMPT
from common.errors import InvalidInput, NotConfigured, UpstreamError
from common.logging import get_logger
from common.schemas import Commentary, EncodedImage, now_ms

log = get_logger("inference_client")

DEFAULT_API_URL = "https://api.openai.com/v1/chat/completions"
MIN_PAYLOAD_CHARS = 100
PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"

_WS = re.compile(r"\s+")

ImageLike = Union[EncodedImage, str]

# ----------------- Payload helpers -----------------
def clean_base64(payload: str) -> str:
    if "base64," in payload:
        payload = payload.split("base64,", 1)[1]
    return _WS.sub("", payload)


def sniff_media_type(b64: str) -> str:
    """PNG when the decoded bytes open with the PNG signature, JPEG otherwise."""
    try:
        head = base64.b64decode(b64[:16], validate=False)
    except (binascii.Error, ValueError):
        return "image/jpeg"
    return "image/png" if head.startswith(PNG_SIGNATURE) else "image/jpeg"


def to_data_url(image: ImageLike) -> str:
    b64 = clean_base64(image.data if isinstance(image, EncodedImage) else image)
    return f"data:{sniff_media_type(b64)};base64,{b64}"


def build_request(model: str, prompt: str, images: Sequence[ImageLike], max_tokens: int) -> Dict[str, Any]:
    content: List[Dict[str, Any]] = [{"type": "text", "text": prompt}]
    for img in images:
        content.append({"type": "image_url", "image_url": {"url": to_data_url(img)}})
    return {
        "model": model,
        "messages": [{"role": "user", "content": content}],
        "max_tokens": max_tokens,
    }


def _error_message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:300] or resp.reason_phrase
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str):
            return err
    return resp.reason_phrase

# ----------------- Client -----------------
class InferenceClient:
    """Vision-language commentary over an OpenAI-compatible chat-completions endpoint."""

    def __init__(
        self,
        api_key: Optional[str],
        api_url: str = DEFAULT_API_URL,
        model: str = "gpt-4o",
        max_tokens: int = 300,
        timeout_sec: float = 60,
        source: str = "OpenAI",
        image_prompt: str = IMAGE_PROMPT,
        frames_prompt: str = FRAMES_PROMPT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._api_key = api_key or ""
        self._api_url = api_url
        self.model = model
        self.max_tokens = max_tokens
        self._timeout = timeout_sec
        self.source = source
        self.image_prompt = image_prompt
        self.frames_prompt = frames_prompt
        self._transport = transport
        if not self._api_key:
            log.warning("Inference API key is not set; describe calls will fail with NotConfigured")

    async def describe_image(self, image: ImageLike) -> Commentary:
        return await self._complete(self.image_prompt, [image])

    async def describe_frame_sequence(self, images: Sequence[ImageLike]) -> Commentary:
        return await self._complete(self.frames_prompt, list(images))

    def _validate(self, images: Sequence[ImageLike]):
        if not images:
            raise InvalidInput("no images provided")
        for i, img in enumerate(images, start=1):
            data = img.data if isinstance(img, EncodedImage) else img
            if not data or len(clean_base64(data)) < MIN_PAYLOAD_CHARS:
                raise InvalidInput(f"image {i} payload is empty or too short")

    async def _complete(self, prompt: str, images: Sequence[ImageLike]) -> Commentary:
        if not self._api_key:
            raise NotConfigured("inference API key is not set")
        self._validate(images)

        payload = build_request(self.model, prompt, images, self.max_tokens)
        headers = {"Authorization": f"Bearer {self._api_key}", "Content-Type": "application/json"}

        log.info(f"[describing] images={len(images)} model={self.model} ...")
        t0 = time.time()
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.post(self._api_url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            log.error(f"Inference request failed: {e}")
            raise UpstreamError(f"inference request failed: {e}") from e

        if resp.status_code >= 400:
            msg = _error_message(resp)
            log.error(f"Inference error status={resp.status_code}: {msg}")
            raise UpstreamError(msg, status_code=resp.status_code)

        try:
            data = resp.json()
            text = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise UpstreamError(f"unexpected response shape: {e!r}", status_code=resp.status_code) from e
        if not isinstance(text, str) or not text.strip():
            raise UpstreamError("empty commentary in response", status_code=resp.status_code)

        elapsed = time.time() - t0
        log.info(f"[described] images={len(images)} chars={len(text)} inference_time_sec={elapsed:.2f}")
        return Commentary(text=text.strip(), source=self.source, created_at_ms=now_ms())
