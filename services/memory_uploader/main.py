# services/memory_uploader/main.py
from __future__ import annotations
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol
from urllib.parse import quote

import aiofiles
import httpx
from pydantic import ValidationError

from common.config import Settings
from common.errors import NotConfigured, PersistFailed, QueryFailed, UploadFailed
from common.logging import get_logger
from common.schemas import Commentary, MediaKind, Memory, now_ms

log = get_logger("memory_uploader")

# ---------- Collaborators ----------
class ObjectStorage(Protocol):
    async def put_object(self, bucket: str, key: str, data: bytes, content_type: str) -> str: ...


class Datastore(Protocol):
    async def insert_memory(self, record: Dict[str, Any]) -> Dict[str, Any]: ...
    async def list_memories(self, owner_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]: ...

# ---------- Supabase REST backends ----------
def _error_text(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:300] or resp.reason_phrase
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or body.get("msg") or body)
    return str(body)


class _SupabaseRest:
    def __init__(self, base_url: Optional[str], api_key: Optional[str], timeout_sec: float = 30,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self._base_url = (base_url or "").rstrip("/")
        self._api_key = api_key or ""
        self._timeout = timeout_sec
        self._transport = transport

    def _headers(self, **extra: str) -> Dict[str, str]:
        if not self._base_url or not self._api_key:
            raise NotConfigured("SUPABASE_URL / SUPABASE_ANON_KEY are not set")
        h = {"apikey": self._api_key, "Authorization": f"Bearer {self._api_key}"}
        h.update(extra)
        return h

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)


class SupabaseStorage(_SupabaseRest):
    def public_url(self, bucket: str, key: str) -> str:
        return f"{self._base_url}/storage/v1/object/public/{bucket}/{quote(key)}"

    async def put_object(self, bucket: str, key: str, data: bytes, content_type: str) -> str:
        headers = self._headers(**{"Content-Type": content_type, "x-upsert": "true"})
        url = f"{self._base_url}/storage/v1/object/{bucket}/{quote(key)}"
        try:
            async with self._client() as client:
                resp = await client.post(url, content=data, headers=headers)
        except httpx.HTTPError as e:
            raise UploadFailed(f"storage request failed: {e}") from e
        if resp.status_code >= 400:
            raise UploadFailed(f"storage rejected {key} ({resp.status_code}): {_error_text(resp)}")
        return self.public_url(bucket, key)


class SupabaseDatastore(_SupabaseRest):
    def __init__(self, base_url: Optional[str], api_key: Optional[str], table: str = "memories",
                 timeout_sec: float = 30, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(base_url, api_key, timeout_sec, transport)
        self.table = table

    async def insert_memory(self, record: Dict[str, Any]) -> Dict[str, Any]:
        headers = self._headers(**{"Content-Type": "application/json", "Prefer": "return=representation"})
        try:
            async with self._client() as client:
                resp = await client.post(f"{self._base_url}/rest/v1/{self.table}", json=[record], headers=headers)
        except httpx.HTTPError as e:
            raise PersistFailed(f"datastore request failed: {e}") from e
        if resp.status_code >= 400:
            raise PersistFailed(f"insert rejected ({resp.status_code}): {_error_text(resp)}")
        try:
            rows = resp.json()
        except ValueError as e:
            raise PersistFailed("insert returned a non-JSON body") from e
        if not isinstance(rows, list) or not rows:
            raise PersistFailed("insert returned no row")
        return rows[0]

    async def list_memories(self, owner_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        params = {"select": "*", "user_id": f"eq.{owner_id}", "order": "created_at.desc"}
        if limit:
            params["limit"] = str(limit)
        try:
            headers = self._headers()
        except NotConfigured as e:
            raise QueryFailed(e.message) from e
        try:
            async with self._client() as client:
                resp = await client.get(f"{self._base_url}/rest/v1/{self.table}", params=params, headers=headers)
        except httpx.HTTPError as e:
            raise QueryFailed(f"datastore request failed: {e}") from e
        if resp.status_code >= 400:
            raise QueryFailed(f"query rejected ({resp.status_code}): {_error_text(resp)}")
        try:
            rows = resp.json()
        except ValueError as e:
            raise QueryFailed("query returned a non-JSON body") from e
        return rows if isinstance(rows, list) else []

# ---------- Uploader ----------
def object_key(owner_id: str, captured_at_ms: int, kind: MediaKind) -> str:
    return f"{owner_id}_{captured_at_ms}.{kind.ext}"


class MemoryUploader:
    """Blob upload then row insert. persist() is only ever handed a URL upload() returned."""

    def __init__(self, storage: ObjectStorage, datastore: Datastore, bucket: str = "her-bucket"):
        self._storage = storage
        self._datastore = datastore
        self.bucket = bucket

    async def upload(self, local_ref: Path, owner_id: str, kind: MediaKind,
                     captured_at_ms: Optional[int] = None) -> str:
        key = object_key(owner_id, captured_at_ms or now_ms(), kind)
        try:
            async with aiofiles.open(local_ref, "rb") as f:
                data = await f.read()
        except OSError as e:
            raise UploadFailed(f"cannot read {local_ref}: {e}") from e
        if not data:
            raise UploadFailed(f"{local_ref} is empty")

        try:
            url = await self._storage.put_object(self.bucket, key, data, kind.content_type)
        except UploadFailed:
            raise
        except NotConfigured as e:
            raise UploadFailed(e.message) from e
        except Exception as e:
            raise UploadFailed(f"upload of {key} failed: {e}") from e
        if not url:
            raise UploadFailed(f"storage returned no URL for {key}")
        log.info(f"[uploaded] key={key} bytes={len(data)} url={url}")
        return url

    async def persist(self, owner_id: str, commentary: Commentary, media_url: Optional[str],
                      kind: MediaKind) -> Memory:
        if not commentary.text.strip():
            raise PersistFailed("refusing to persist an empty commentary")
        record = {
            "user_id": owner_id,
            "commentary": commentary.text,
            "image_uri": media_url if kind is MediaKind.PHOTO else None,
            "video_uri": media_url if kind is MediaKind.VIDEO else None,
            "source": commentary.source,
        }
        try:
            row = await self._datastore.insert_memory(record)
        except PersistFailed:
            raise
        except NotConfigured as e:
            raise PersistFailed(e.message) from e
        except Exception as e:
            raise PersistFailed(f"insert failed: {e}") from e
        try:
            memory = Memory.model_validate(row)
        except ValidationError as e:
            raise PersistFailed(f"stored row is not a valid memory: {e}") from e
        log.info(f"[persisted] memory={memory.id} user={owner_id} kind={kind.value}")
        return memory

    async def list_memories(self, owner_id: str, limit: Optional[int] = None) -> List[Memory]:
        rows = await self._datastore.list_memories(owner_id, limit)
        memories = []
        for row in rows:
            try:
                memories.append(Memory.model_validate(row))
            except ValidationError as e:
                log.warning(f"[timeline] skipping malformed row id={row.get('id')}: {e}")
        return memories


def uploader_from_settings(settings: Settings) -> MemoryUploader:
    st = settings.storage
    return MemoryUploader(
        SupabaseStorage(st.supabase_url, st.supabase_key, st.timeout_sec),
        SupabaseDatastore(st.supabase_url, st.supabase_key, st.table, st.timeout_sec),
        bucket=st.bucket,
    )
