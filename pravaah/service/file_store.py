from __future__ import annotations

import asyncio
import hashlib
import os
import shutil
import time
import uuid
from pathlib import Path
from typing import Optional

import httpx

from pravaah.logging import get_logger
from pravaah.service.fs import safe_join, sanitize_filename

logger = get_logger(__name__)

CLOUDINARY_UPLOAD_URL = "https://api.cloudinary.com/v1_1/{cloud}/auto/upload"
CLOUDINARY_DESTROY_URL = "https://api.cloudinary.com/v1_1/{cloud}/{resource_type}/destroy"


def cloudinary_signature(params: dict, api_secret: str) -> str:
    """Sign upload parameters the way the Cloudinary upload API expects.

    Parameters are sorted by name, joined as ``k=v`` pairs with ``&`` and the
    API secret is appended before taking the SHA-1 hex digest.
    """
    to_sign = "&".join(f"{key}={params[key]}" for key in sorted(params))
    return hashlib.sha1(f"{to_sign}{api_secret}".encode()).hexdigest()


def _discard(local_path: Path) -> None:
    try:
        local_path.unlink()
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("upload_local_cleanup_failed", path=str(local_path), error=str(exc))


class FileStore:
    """Uploads local files and returns ``{"url", "duration", "public_id"}``, or None on failure.

    With Cloudinary credentials the file is pushed to the Cloudinary upload API.
    Without them, files are moved under ``<media_root>`` and served by the app
    from ``/media``. The local file is always removed afterwards. ``remove``
    deletes a stored asset again when nothing ends up referencing it.
    """

    def __init__(
        self,
        *,
        media_root: str,
        public_base_url: str,
        cloud_name: Optional[str] = None,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        folder: str = "Pravaah",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.media_root = Path(media_root)
        self.public_base_url = public_base_url.rstrip("/")
        self.cloud_name = cloud_name
        self.api_key = api_key
        self.api_secret = api_secret
        self.folder = folder
        self.timeout = timeout
        self._transport = transport

    @property
    def is_remote(self) -> bool:
        return bool(self.cloud_name and self.api_key and self.api_secret)

    async def upload(self, local_path: str | os.PathLike | None) -> Optional[dict]:
        if not local_path:
            logger.warning("upload_missing_path")
            return None
        path = Path(local_path)
        if not path.is_file():
            logger.warning("upload_file_not_found", path=str(path))
            return None
        try:
            if self.is_remote:
                return await self._upload_remote(path)
            return await asyncio.to_thread(self._store_local, path)
        finally:
            _discard(path)

    async def _upload_remote(self, path: Path) -> Optional[dict]:
        params = {"folder": self.folder, "timestamp": int(time.time())}
        form = {
            **{k: str(v) for k, v in params.items()},
            "api_key": self.api_key,
            "signature": cloudinary_signature(params, self.api_secret),
        }
        url = CLOUDINARY_UPLOAD_URL.format(cloud=self.cloud_name)
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, follow_redirects=False, transport=self._transport
            ) as client:
                with path.open("rb") as handle:
                    response = await client.post(
                        url, data=form, files={"file": (path.name, handle)}
                    )
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(
                "upload_http_error",
                status_code=e.response.status_code,
                error=str(e),
            )
            return None
        except (httpx.HTTPError, ValueError) as e:
            logger.error("upload_error", error_type=type(e).__name__, error=str(e))
            return None

        secure_url = payload.get("secure_url") or payload.get("url")
        if not secure_url:
            logger.error("upload_missing_url")
            return None
        logger.info("upload_completed", backend="cloudinary", bytes=payload.get("bytes"))
        return {
            "url": secure_url,
            "duration": payload.get("duration"),
            "public_id": payload.get("public_id"),
            "resource_type": payload.get("resource_type") or "image",
        }

    async def remove(self, asset: Optional[dict]) -> bool:
        """Delete a previously uploaded asset; returns False when it could not be removed."""
        public_id = (asset or {}).get("public_id")
        if not public_id:
            return False
        if self.is_remote:
            return await self._remove_remote(public_id, asset.get("resource_type") or "image")
        return await asyncio.to_thread(self._remove_local, public_id)

    async def _remove_remote(self, public_id: str, resource_type: str) -> bool:
        params = {"public_id": public_id, "timestamp": int(time.time())}
        form = {
            **{k: str(v) for k, v in params.items()},
            "api_key": self.api_key,
            "signature": cloudinary_signature(params, self.api_secret),
        }
        url = CLOUDINARY_DESTROY_URL.format(cloud=self.cloud_name, resource_type=resource_type)
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, follow_redirects=False, transport=self._transport
            ) as client:
                response = await client.post(url, data=form)
                response.raise_for_status()
                payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("upload_remove_error", error_type=type(e).__name__, error=str(e))
            return False
        removed = payload.get("result") == "ok"
        logger.info("upload_removed", backend="cloudinary", removed=removed)
        return removed

    def _remove_local(self, name: str) -> bool:
        try:
            safe_join(self.media_root, name).unlink()
        except (OSError, ValueError) as e:
            logger.warning("upload_remove_error", error_type=type(e).__name__, error=str(e))
            return False
        logger.info("upload_removed", backend="local", name=name)
        return True

    def _store_local(self, path: Path) -> Optional[dict]:
        name = f"{uuid.uuid4().hex}_{sanitize_filename(path.name)}"
        try:
            self.media_root.mkdir(parents=True, exist_ok=True)
            target = safe_join(self.media_root, name)
            shutil.copyfile(path, target)
        except (OSError, ValueError) as e:
            logger.error("upload_local_failed", error_type=type(e).__name__, error=str(e))
            return None
        logger.info("upload_completed", backend="local", name=name)
        return {"url": f"{self.public_base_url}/media/{name}", "duration": None, "public_id": name}
