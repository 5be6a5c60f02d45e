# statement_analyzer/storage.py
"""
Staging for uploaded statements. The upload endpoint puts the PDF in a blob
store and hands the client a URL; the analysis endpoint fetches it back by
URL and deletes it when the run ends, whatever the outcome.
"""
import asyncio
import logging
import os
import re
import uuid
from typing import Optional, Protocol, Tuple
from urllib.parse import unquote, urlparse

import httpx

from . import config
from .errors import StagingError

logger = logging.getLogger("statement-analyzer.storage")

SAFE_NAME_RE = re.compile(r"[^A-Za-z0-9._-]+")


def suffixed_name(filename: Optional[str]) -> str:
    """statement.pdf -> statement-3f2a9c1d.pdf"""
    base = SAFE_NAME_RE.sub("-", os.path.basename(filename or "statement.pdf")).strip("-") or "statement.pdf"
    stem, ext = os.path.splitext(base)
    return f"{stem}-{uuid.uuid4().hex[:8]}{ext or '.pdf'}"


def name_from_url(url: str) -> str:
    return unquote(urlparse(url).path.rstrip("/").split("/")[-1]) or "statement.pdf"


class BlobStore(Protocol):
    async def put(self, filename: str, content: bytes) -> str: ...

    async def fetch(self, url: str) -> Tuple[bytes, str]: ...

    async def delete(self, url: str) -> None: ...


class LocalBlobStore:
    """Blobs as files in one directory, served back under base_url."""

    def __init__(self, root: str = config.BLOB_DIR, base_url: str = config.BLOB_BASE_URL):
        self.root = root
        self.base_url = base_url.rstrip("/")

    def path_for(self, name: str) -> str:
        name = os.path.basename(name)
        if not name or name in (".", ".."):
            raise StagingError(f"Invalid blob name: {name!r}")
        return os.path.join(self.root, name)

    def _url_to_path(self, url: str) -> str:
        if not url.startswith(self.base_url + "/"):
            raise StagingError(f"Not a URL from this blob store: {url}")
        return self.path_for(name_from_url(url))

    def _write(self, path: str, content: bytes) -> None:
        os.makedirs(self.root, exist_ok=True)
        with open(path, "wb") as f:
            f.write(content)

    async def put(self, filename: str, content: bytes) -> str:
        name = suffixed_name(filename)
        await asyncio.to_thread(self._write, self.path_for(name), content)
        return f"{self.base_url}/{name}"

    async def fetch(self, url: str) -> Tuple[bytes, str]:
        path = self._url_to_path(url)
        try:
            with open(path, "rb") as f:
                content = await asyncio.to_thread(f.read)
        except FileNotFoundError as e:
            raise StagingError("Failed to fetch the uploaded file for analysis.") from e
        return content, os.path.basename(path)

    async def delete(self, url: str) -> None:
        path = self._url_to_path(url)
        try:
            os.remove(path)
        except FileNotFoundError:
            pass


class HttpBlobStore:
    """
    Remote object store addressed by URL (Vercel Blob compatible API):
    PUT {api_url}/{name} to store, GET the returned URL to read,
    POST {api_url}/delete {"urls": [...]} to remove.
    """

    def __init__(
        self,
        api_url: str = "https://blob.vercel-storage.com",
        token: Optional[str] = None,
        http: Optional[httpx.AsyncClient] = None,
    ):
        self.api_url = api_url.rstrip("/")
        self.token = token or config.BLOB_TOKEN
        self._http = http or httpx.AsyncClient(timeout=60)

    @property
    def _auth(self):
        if not self.token:
            raise StagingError("Blob store token is missing.")
        return {"authorization": f"Bearer {self.token}"}

    async def put(self, filename: str, content: bytes) -> str:
        r = await self._http.put(
            f"{self.api_url}/{suffixed_name(filename)}",
            headers={**self._auth, "x-content-type": "application/pdf"},
            content=content,
        )
        if not r.is_success:
            raise StagingError(f"Upload failed ({r.status_code})")
        return r.json()["url"]

    async def fetch(self, url: str) -> Tuple[bytes, str]:
        try:
            r = await self._http.get(url, follow_redirects=True)
        except httpx.HTTPError as e:
            raise StagingError("Failed to fetch the uploaded file for analysis.") from e
        if not r.is_success:
            raise StagingError("Failed to fetch the uploaded file for analysis.")
        return r.content, name_from_url(url)

    async def delete(self, url: str) -> None:
        r = await self._http.post(f"{self.api_url}/delete", headers=self._auth, json={"urls": [url]})
        if not r.is_success:
            raise StagingError(f"Failed to delete blob ({r.status_code})")

    async def aclose(self) -> None:
        await self._http.aclose()


def make_store() -> BlobStore:
    if config.BLOB_TOKEN:
        return HttpBlobStore()
    return LocalBlobStore()
