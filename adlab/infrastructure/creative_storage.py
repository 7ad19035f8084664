"""
Creative asset storage and signed-URL issuance.

The ads platform fetches creative images by URL, so every asset reference is
turned into a short-lived URL right before the creative is created.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Optional, Protocol

from supabase import create_client

from ..config import SIGNED_URL_MAX_TTL_SECONDS, Settings
from ..models import Creative
from .error_handling import RemotePolicyError, RemoteTransientError, ValidationError

logger = logging.getLogger(__name__)

MIME_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
}


class AssetSigner(Protocol):
    def sign(self, asset_ref: str, ttl_seconds: int) -> str: ...


class CreativeSource(Protocol):
    def get_creative(self, creative_id: str) -> Optional[Creative]: ...


def clamp_ttl(ttl_seconds: int) -> int:
    """Signed URLs may not outlive what the platform accepts (7 days)."""
    return max(1, min(int(ttl_seconds), SIGNED_URL_MAX_TTL_SECONDS))


class SupabaseAssetSigner:
    """Assets live in a Supabase Storage bucket; refs are object paths inside it."""

    def __init__(self, supabase_client: Any, bucket: str):
        self.client = supabase_client
        self.bucket_name = bucket

    def upload_creative(self, creative_id: str, image_path: str) -> str:
        path = Path(image_path)
        if not path.exists():
            raise ValidationError(f"Image file not found: {image_path}")
        ext = path.suffix.lower() or ".png"
        storage_path = f"{creative_id}{ext}"
        self.client.storage.from_(self.bucket_name).upload(
            storage_path,
            path.read_bytes(),
            file_options={"content-type": MIME_TYPES.get(ext, "image/png"), "upsert": "true"},
        )
        logger.info(f"Uploaded creative {creative_id} to {self.bucket_name}/{storage_path}")
        return storage_path

    def sign(self, asset_ref: str, ttl_seconds: int) -> str:
        if not asset_ref:
            raise ValidationError("creative has no asset reference")
        ttl = clamp_ttl(ttl_seconds)
        try:
            resp = self.client.storage.from_(self.bucket_name).create_signed_url(asset_ref, ttl)
        except Exception as e:
            raise RemoteTransientError(f"signing {asset_ref} failed: {e}", op="sign_asset") from e
        url = None
        if isinstance(resp, dict):
            url = resp.get("signedURL") or resp.get("signedUrl") or resp.get("signed_url")
        elif isinstance(resp, str):
            url = resp
        if not url:
            raise RemotePolicyError(f"signing {asset_ref} returned no URL: {resp!r}", op="sign_asset")
        return str(url)


class StaticAssetSigner:
    """
    Assets already publicly hosted: absolute URLs pass through, relative refs join
    ``base_url``. Nothing expires, so the TTL is not used.
    """

    def __init__(self, base_url: str = ""):
        self.base_url = base_url.rstrip("/")

    def sign(self, asset_ref: str, ttl_seconds: int) -> str:
        if not asset_ref:
            raise ValidationError("creative has no asset reference")
        if asset_ref.startswith(("http://", "https://")):
            return asset_ref
        if not self.base_url:
            raise ValidationError(f"cannot resolve relative asset {asset_ref!r} without ASSETS_BASE_URL")
        return f"{self.base_url}/{asset_ref.lstrip('/')}"


def create_asset_signer(settings: Settings) -> AssetSigner:
    if settings.assets_backend == "supabase":
        url = os.getenv("SUPABASE_URL")
        key = os.getenv("SUPABASE_SERVICE_ROLE_KEY") or os.getenv("SUPABASE_KEY")
        if not url or not key:
            raise ValueError("assets.backend=supabase requires SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY")
        return SupabaseAssetSigner(create_client(url, key), settings.assets_bucket)
    return StaticAssetSigner(os.getenv("ASSETS_BASE_URL", ""))
