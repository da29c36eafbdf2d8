"""
Blob storage clients.

Two backends share one narrow interface: a Supabase Storage REST client
(via requests) and a local directory store used for development and tests.
"""

import logging
import shutil
from pathlib import Path
from urllib.parse import quote, unquote, urlparse

import requests

from chunkscribe.core.constants import DOWNLOAD_TIMEOUT_SEC, UPLOAD_TIMEOUT_SEC

logger = logging.getLogger(__name__)

_DOWNLOAD_CHUNK_BYTES = 1024 * 1024


class BlobStoreError(Exception):
    """Raised when a storage operation fails."""


def safe_object_path(root: Path, object_path: str) -> Path:
    """
    Resolve ``object_path`` under ``root``. Enforces that realpath(result)
    starts with realpath(root).
    """
    real_root = root.resolve(strict=False)
    candidate = (root / object_path.lstrip('/')).resolve(strict=False)
    if candidate != real_root and real_root not in candidate.parents:
        raise BlobStoreError(f"Path traversal detected: {object_path!r}")
    return candidate


class BlobStore:
    """Interface the pipeline needs from object storage."""

    def upload_bytes(self, path: str, data: bytes, content_type: str) -> str:
        """Store ``data`` at ``path`` (overwriting) and return its public URL."""
        raise NotImplementedError

    def public_url(self, path: str) -> str:
        raise NotImplementedError

    def delete(self, paths: list[str]):
        raise NotImplementedError

    def path_from_url(self, url: str) -> str | None:
        """Map a public URL back to an object path, or None if foreign."""
        raise NotImplementedError

    def download_to(self, url: str, dest: Path, timeout: int = DOWNLOAD_TIMEOUT_SEC) -> Path:
        """Fetch ``url`` into ``dest``. Supports http(s) and file URLs."""
        dest.parent.mkdir(parents=True, exist_ok=True)
        parsed = urlparse(url)

        if parsed.scheme == 'file':
            src = Path(unquote(parsed.path))
            try:
                shutil.copyfile(src, dest)
            except OSError as e:
                raise BlobStoreError(f"Copy from {src} failed: {e}")
            return dest

        if parsed.scheme not in ('http', 'https'):
            raise BlobStoreError(f"Unsupported URL scheme: {parsed.scheme!r}")

        try:
            with requests.get(url, stream=True, timeout=timeout) as resp:
                if not 200 <= resp.status_code < 400:
                    raise BlobStoreError(f"GET returned {resp.status_code}")
                with open(dest, 'wb') as f:
                    for block in resp.iter_content(chunk_size=_DOWNLOAD_CHUNK_BYTES):
                        if block:
                            f.write(block)
        except requests.exceptions.Timeout:
            raise BlobStoreError(f"Download timed out after {timeout}s")
        except requests.exceptions.RequestException as e:
            raise BlobStoreError(f"Download failed: {e}")
        return dest


class LocalBlobStore(BlobStore):
    """Objects stored as files below a root directory, addressed by file:// URLs."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def upload_bytes(self, path: str, data: bytes, content_type: str) -> str:
        target = safe_object_path(self.root, path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        logger.debug("Stored %d bytes at %s", len(data), target)
        return self.public_url(path)

    def public_url(self, path: str) -> str:
        return safe_object_path(self.root, path).as_uri()

    def delete(self, paths: list[str]):
        for path in paths:
            target = safe_object_path(self.root, path)
            if target.exists():
                target.unlink()

    def path_from_url(self, url: str) -> str | None:
        parsed = urlparse(url)
        if parsed.scheme != 'file':
            return None
        local = Path(unquote(parsed.path)).resolve(strict=False)
        real_root = self.root.resolve(strict=False)
        if real_root not in local.parents:
            return None
        return local.relative_to(real_root).as_posix()

    def exists(self, path: str) -> bool:
        return safe_object_path(self.root, path).exists()

    def list(self, prefix: str = "") -> list[str]:
        base = self.root.resolve(strict=False)
        return sorted(
            p.relative_to(base).as_posix()
            for p in base.rglob('*')
            if p.is_file() and p.relative_to(base).as_posix().startswith(prefix)
        )


class SupabaseBlobStore(BlobStore):
    """Supabase Storage REST API client for one bucket."""

    def __init__(self, base_url: str, bucket: str, service_key: str,
                 timeout: int = UPLOAD_TIMEOUT_SEC):
        self.base_url = base_url.rstrip('/')
        self.bucket = bucket
        self.timeout = timeout
        self._session = requests.Session()
        self._session.headers.update({
            "Authorization": f"Bearer {service_key}",
            "apikey": service_key,
        })

    def _object_url(self, path: str) -> str:
        return f"{self.base_url}/storage/v1/object/{self.bucket}/{quote(path)}"

    def upload_bytes(self, path: str, data: bytes, content_type: str) -> str:
        try:
            resp = self._session.post(
                self._object_url(path),
                data=data,
                headers={"Content-Type": content_type, "x-upsert": "true"},
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            raise BlobStoreError(f"Upload of {path} failed: {e}")
        if resp.status_code not in (200, 201):
            raise BlobStoreError(f"Upload of {path} returned {resp.status_code}: {resp.text[:300]}")
        return self.public_url(path)

    def public_url(self, path: str) -> str:
        return f"{self.base_url}/storage/v1/object/public/{self.bucket}/{quote(path)}"

    def delete(self, paths: list[str]):
        if not paths:
            return
        try:
            resp = self._session.delete(
                f"{self.base_url}/storage/v1/object/{self.bucket}",
                json={"prefixes": list(paths)},
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            raise BlobStoreError(f"Delete failed: {e}")
        if resp.status_code != 200:
            raise BlobStoreError(f"Delete returned {resp.status_code}: {resp.text[:300]}")

    def path_from_url(self, url: str) -> str | None:
        prefix = f"{self.base_url}/storage/v1/object/public/{self.bucket}/"
        if not url.startswith(prefix):
            return None
        return unquote(url[len(prefix):].split('?', 1)[0])
