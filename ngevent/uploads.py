"""Signed direct-upload parameters for the hosted image store."""

from __future__ import annotations

import hashlib
import logging
import re
import time
from dataclasses import dataclass
from typing import Any

import httpx

from .config import settings


@dataclass(frozen=True)
class FolderPolicy:
    max_size: int
    allowed_types: tuple[str, ...]
    transformation: str
    organizer_only: bool = False


_IMAGE_TYPES = ("image/jpeg", "image/png", "image/webp")

FOLDERS: dict[str, FolderPolicy] = {
    "event-images": FolderPolicy(
        max_size=5 * 1024 * 1024,
        allowed_types=_IMAGE_TYPES,
        transformation="c_limit,w_1920,h_1080,q_auto:good",
        organizer_only=True,
    ),
    "avatar-images": FolderPolicy(
        max_size=2 * 1024 * 1024,
        allowed_types=_IMAGE_TYPES,
        transformation="c_fill,w_400,h_400,g_face,q_auto:good",
    ),
    "payment-proofs": FolderPolicy(
        max_size=5 * 1024 * 1024,
        allowed_types=(*_IMAGE_TYPES, "application/pdf"),
        transformation="q_auto:good",
    ),
    "custom-images": FolderPolicy(
        max_size=5 * 1024 * 1024,
        allowed_types=_IMAGE_TYPES,
        transformation="c_limit,w_1920,q_auto:good",
        organizer_only=True,
    ),
    "speaker-images": FolderPolicy(
        max_size=2 * 1024 * 1024,
        allowed_types=_IMAGE_TYPES,
        transformation="c_fill,w_400,h_400,g_face,q_auto:good",
        organizer_only=True,
    ),
}

_public_id_pattern = re.compile(r"/upload/(?:v\d+/)?(?P<public_id>.+?)(?:\.[a-zA-Z0-9]+)?$")


class UploadError(Exception):
    """Raised for unknown folders or unconfigured storage."""


def sign_params(params: dict[str, Any], api_secret: str) -> str:
    """SHA-256 of the sorted ``key=value`` pairs joined by ``&`` plus the secret."""
    to_sign = "&".join(
        f"{key}={params[key]}" for key in sorted(params) if params[key] not in (None, "")
    )
    return hashlib.sha256(f"{to_sign}{api_secret}".encode("utf-8")).hexdigest()


def public_id_from_url(url: str | None) -> str | None:
    if not url:
        return None
    match = _public_id_pattern.search(url.split("?", 1)[0])
    return match.group("public_id") if match else None


class UploadSigner:
    def __init__(
        self,
        *,
        cloud_name: str | None = None,
        api_key: str | None = None,
        api_secret: str | None = None,
        folder_prefix: str | None = None,
        timeout: float = 10.0,
        client: httpx.Client | None = None,
    ) -> None:
        self.cloud_name = settings.upload_cloud_name if cloud_name is None else cloud_name
        self.api_key = settings.upload_api_key if api_key is None else api_key
        self.api_secret = settings.upload_api_secret if api_secret is None else api_secret
        self.folder_prefix = (
            settings.upload_folder_prefix if folder_prefix is None else folder_prefix
        )
        self._client = client or httpx.Client(timeout=timeout)
        self._logger = logging.getLogger(__name__)

    @property
    def configured(self) -> bool:
        return bool(self.cloud_name and self.api_key and self.api_secret)

    def _folder_path(self, folder: str) -> str:
        prefix = (self.folder_prefix or "").strip("/")
        return f"{prefix}/{folder}" if prefix else folder

    def signature_for(self, folder: str, *, timestamp: int | None = None) -> dict[str, Any]:
        if folder not in FOLDERS:
            raise UploadError(f"Unknown upload folder {folder!r}")
        if not self.configured:
            raise UploadError("Image storage is not configured")
        policy = FOLDERS[folder]
        timestamp = timestamp or int(time.time())
        params = {
            "folder": self._folder_path(folder),
            "timestamp": timestamp,
            "transformation": policy.transformation,
        }
        return {
            "signature": sign_params(params, self.api_secret),
            "timestamp": timestamp,
            "api_key": self.api_key,
            "cloud_name": self.cloud_name,
            "folder": params["folder"],
            "transformation": policy.transformation,
            "max_size": policy.max_size,
            "allowed_types": list(policy.allowed_types),
            "upload_url": f"https://api.cloudinary.com/v1_1/{self.cloud_name}/image/upload",
        }

    def delete_by_url(self, url: str | None) -> bool:
        """Best-effort removal of a stored asset; never raises."""
        public_id = public_id_from_url(url)
        if not public_id or not self.configured:
            return False
        timestamp = int(time.time())
        params = {"public_id": public_id, "timestamp": timestamp}
        form = {
            **params,
            "api_key": self.api_key,
            "signature": sign_params(params, self.api_secret),
        }
        try:
            response = self._client.post(
                f"https://api.cloudinary.com/v1_1/{self.cloud_name}/image/destroy",
                data=form,
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            self._logger.warning("Could not delete stored image %s: %s", public_id, exc)
            return False
        return data.get("result") == "ok"
