"""Media ingestion - download, convert and upload images, videos and files."""

import asyncio
import mimetypes
import os
import re
import shutil
import tempfile
import unicodedata
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Any
from urllib.parse import quote, urlparse

import httpx

from ..models import APIRequest, APIResult, UploadError, UploadResult
from . import queries
from .api_client_core import _ClientLogger

IMAGE_MIME_TYPES = {
    "image/jpeg": ".jpeg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/svg+xml": ".svg",
    "image/bmp": ".bmp",
    "image/webp": ".webp",
    "image/avif": ".avif",
}


def url_safe_file_name(name: str) -> str:
    """ASCII-fold and hyphenate a file name so it survives in a URL."""
    folded = unicodedata.normalize("NFKD", name).encode("ascii", "ignore").decode("ascii")
    return re.sub(r"[^A-Za-z0-9_-]+", "-", folded).strip("-") or "file"


def _mime_from_name(name: str) -> str | None:
    mime, _ = mimetypes.guess_type(name)
    return mime


class MediaUploader:
    """Uploads assets to the tenant's object store.

    Results are kept in a run-scoped side table keyed by source, so a source
    referenced from many nodes (or on several languages) is uploaded once.
    """

    def __init__(
        self,
        scheduler: Any,
        tenant_id: str,
        http_client: httpx.AsyncClient | None = None,
        log_level: str = "silent",
    ) -> None:
        self.scheduler = scheduler
        self.tenant_id = tenant_id
        self.log_level = log_level
        self.uploads: dict[str, UploadResult] = {}
        self._http = http_client
        self._owns_http = http_client is None
        self._ffmpeg: bool | None = None
        self._logger = _ClientLogger("MEDIA")

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=httpx.Timeout(120.0), follow_redirects=True)
        return self._http

    async def close(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
        self._http = None

    def ffmpeg_available(self) -> bool:
        if self._ffmpeg is None:
            self._ffmpeg = shutil.which("ffmpeg") is not None
        return self._ffmpeg

    async def _submit(self, request: APIRequest) -> APIResult:
        return await self.scheduler.submit(request)

    # ------------------------------------------------------------------
    # Spec nodes
    # ------------------------------------------------------------------

    async def ensure_uploaded(self, node: dict[str, Any]) -> UploadResult | None:
        """Key and mime type for a media node, uploading its `src` when needed."""
        if node.get("key"):
            mime_type = node.get("mimeType") or _mime_from_name(node["key"]) or "application/octet-stream"
            return UploadResult(key=node["key"], mime_type=mime_type)

        source = node.get("src")
        if not source:
            return None

        cached = self.uploads.get(source)
        if cached is not None:
            return cached

        result = await self.upload(source, node.get("fileName"))
        self.uploads[source] = result
        return result

    # ------------------------------------------------------------------
    # Upload pipeline
    # ------------------------------------------------------------------

    async def upload(
        self,
        source: str | bytes,
        file_name: str | None = None,
        content_type: str | None = None,
    ) -> UploadResult:
        """Upload a URL, a local path or raw bytes; return the object key."""
        if isinstance(source, bytes):
            file = source
            content_type = content_type or (_mime_from_name(file_name) if file_name else None)
            if not content_type:
                raise UploadError(f"Cannot determine filetype for {file_name or 'buffer'}")
            file_name = file_name or "file"
        else:
            downloaded_name, content_type, file = await self._download(source)
            file_name = file_name or downloaded_name

        key = await self._upload_to_presigned_url(file, file_name, content_type)

        if content_type in IMAGE_MIME_TYPES:
            await self._submit(queries.build_register_image(self.tenant_id, key))

        return UploadResult(key=key, mime_type=content_type)

    async def _download(self, source: str) -> tuple[str, str, bytes]:
        stem = url_safe_file_name(Path(urlparse(source).path).stem or "file")

        if source.endswith(".m3u8"):
            if not self.ffmpeg_available():
                raise UploadError("No support for video conversion, install ffmpeg")
            return f"{stem}.mp4", "video/mp4", await self._convert_m3u8(source)

        content_type: str | None = None
        if os.path.exists(source):
            file = await asyncio.to_thread(Path(source).read_bytes)
        else:
            try:
                response = await self.http.get(quote(source, safe=":/?&=%#+@,;~"))
                response.raise_for_status()
            except (httpx.HTTPError, httpx.InvalidURL) as err:
                raise UploadError(f"Could not download {source}: {err}") from err
            file = response.content
            header = response.headers.get("Content-Type", "")
            content_type = header.split(";")[0].strip() or None

        if content_type in (None, "application/octet-stream", "binary/octet-stream"):
            content_type = _mime_from_name(urlparse(source).path) or content_type

        # Servers tend to label svg files as text/xml or octet-stream
        if source.endswith(".svg"):
            content_type = "image/svg+xml"

        if not content_type or content_type in ("application/octet-stream", "binary/octet-stream"):
            raise UploadError(f'Cannot determine filetype for "{source}"')

        ext = IMAGE_MIME_TYPES.get(content_type) or mimetypes.guess_extension(content_type) or ""
        return f"{stem}{ext}", content_type, file

    async def _convert_m3u8(self, source: str) -> bytes:
        with tempfile.TemporaryDirectory() as tmp_dir:
            target = os.path.join(tmp_dir, "video.mp4")
            process = await asyncio.create_subprocess_exec(
                "ffmpeg", "-y", "-loglevel", "error", "-i", source, "-c", "copy", target,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
            _, stderr = await process.communicate()
            if process.returncode != 0:
                raise UploadError(f"ffmpeg could not convert {source}: {stderr.decode(errors='replace')[:300]}")
            return await asyncio.to_thread(Path(target).read_bytes)

    async def _upload_to_presigned_url(self, file: bytes, file_name: str, content_type: str) -> str:
        signed = await self._submit(
            queries.build_generate_presigned_request(self.tenant_id, file_name, content_type)
        )
        presigned = ((signed.data or {}).get("fileUpload") or {}).get("generatePresignedRequest")
        if signed.errors or not presigned:
            raise UploadError("Could not get presigned request fields")

        fields = {f["name"]: f["value"] for f in presigned.get("fields") or []}
        if self.log_level == "verbose":
            self._logger.info(f"Uploading {file_name} ({content_type}, {len(file)} bytes)")

        try:
            response = await self.http.post(
                presigned["url"], data=fields, files={"file": (file_name, file, content_type)}
            )
        except httpx.HTTPError as err:
            raise UploadError(f"Cannot upload {file_name}: {err}") from err

        if self.log_level == "verbose":
            self._logger.info(f"Upload response: {response.status_code}")
        if response.status_code != 201:
            raise UploadError(f"Cannot upload {file_name}: HTTP {response.status_code}")

        return self._key_from_upload_response(response.text, file_name)

    @staticmethod
    def _key_from_upload_response(body: str, file_name: str) -> str:
        try:
            root = ET.fromstring(body)
        except ET.ParseError as err:
            raise UploadError(f"Unreadable upload response for {file_name}") from err
        for element in root.iter():
            if element.tag.rsplit("}", 1)[-1] == "Key" and element.text:
                return element.text
        raise UploadError(f"Upload response for {file_name} carries no key")
