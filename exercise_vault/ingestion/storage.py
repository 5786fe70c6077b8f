from __future__ import annotations

import base64
import binascii
import logging
import mimetypes
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Tuple

from .errors import AssetIOError, AssetNotFound

logger = logging.getLogger(__name__)

DEFAULT_MIME = "image/png"
_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/webp": "webp",
}


def split_data_url(encoded: str) -> Tuple[str, str]:
    """
    Split ``data:<mime>;base64,<payload>`` into (mime, payload). Strings without
    a transport prefix are treated as bare base64 PNG data.
    """
    marker = "base64,"
    idx = encoded.find(marker)
    if idx == -1:
        return DEFAULT_MIME, encoded.strip()
    header = encoded[:idx]
    mime = DEFAULT_MIME
    if header.startswith("data:"):
        mime = header[len("data:"):].split(";", 1)[0] or DEFAULT_MIME
    return mime, encoded[idx + len(marker):].strip()


def to_data_url(data: bytes, mime: str = DEFAULT_MIME) -> str:
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"


def mime_for_path(path: Path) -> str:
    mime, _ = mimetypes.guess_type(str(path))
    return mime or DEFAULT_MIME


@dataclass
class StoragePaths:
    root: Path

    @property
    def images_dir(self) -> Path:
        return self.root / "images"

    def asset_path(self, ref: str) -> Path:
        return self.root / ref

    def asset_ref(self, filename: str) -> str:
        return f"images/{filename}"


class LocalAssetStore:
    """
    Manages image files under ``<root>/images``. Assets are addressed by the
    relative reference returned from :meth:`save` (``images/<uuid>.<ext>``).
    """

    def __init__(self, storage_paths: StoragePaths):
        self.paths = storage_paths

    def ensure_images_dir(self) -> Path:
        images_dir = self.paths.images_dir
        if images_dir.is_symlink() or (images_dir.exists() and not images_dir.is_dir()):
            logger.warning("Replacing non-directory at images path %s", images_dir)
            try:
                images_dir.unlink()
            except OSError as exc:
                raise AssetIOError(f"Cannot remove non-directory at {images_dir}: {exc}") from exc
        try:
            images_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise AssetIOError(f"Cannot create images directory {images_dir}: {exc}") from exc
        return images_dir

    def save(self, encoded: str) -> str:
        mime, payload = split_data_url(encoded)
        try:
            data = base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise AssetIOError(f"Asset payload is not valid base64: {exc}") from exc
        return self.save_bytes(data, _EXTENSIONS.get(mime, "png"))

    def save_bytes(self, data: bytes, extension: str = "png") -> str:
        images_dir = self.ensure_images_dir()
        filename = f"{uuid.uuid4()}.{extension.lstrip('.')}"
        target = images_dir / filename
        try:
            target.write_bytes(data)
        except OSError as exc:
            raise AssetIOError(f"Failed to write asset {target}: {exc}") from exc
        ref = self.paths.asset_ref(filename)
        logger.debug("Saved asset %s (%d bytes)", ref, len(data))
        return ref

    def resolve(self, ref: str) -> Path:
        root = self.paths.root.resolve()
        path = self.paths.asset_path(ref).resolve()
        if path != root and root not in path.parents:
            raise AssetIOError(f"Asset reference escapes storage root: {ref}")
        return path

    def exists(self, ref: str) -> bool:
        try:
            return self.resolve(ref).is_file()
        except AssetIOError:
            return False

    def read(self, ref: str) -> str:
        path = self.resolve(ref)
        if not path.is_file():
            raise AssetNotFound(ref)
        try:
            data = path.read_bytes()
        except OSError as exc:
            raise AssetIOError(f"Failed to read asset {ref}: {exc}") from exc
        return to_data_url(data, mime_for_path(path))

    def delete(self, ref: str) -> bool:
        """
        Best-effort removal. Returns True when a file was removed; a missing
        file or a filesystem error is logged and reported as False.
        """
        try:
            path = self.resolve(ref)
        except AssetIOError:
            logger.warning("Refusing to delete asset outside storage root: %s", ref)
            return False
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            logger.warning("Failed to delete asset %s: %s", ref, exc)
            return False
        logger.debug("Deleted asset %s", ref)
        return True
