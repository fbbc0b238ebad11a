from __future__ import annotations

import asyncio
import base64
import binascii
import logging
from dataclasses import dataclass
from io import BytesIO
from typing import Protocol

from PIL import Image, ImageOps, UnidentifiedImageError

from app.services.errors import CameraAccessError, PhotoUploadError
from app.services.photo_storage import PhotoStorage

logger = logging.getLogger(__name__)

DEFAULT_MAX_EDGE = 800
DEFAULT_JPEG_QUALITY = 70


class Camera(Protocol):
    async def capture_frame(self) -> bytes: ...


@dataclass(frozen=True)
class PhotoTarget:
    store_id: str
    logical_date: str
    submission_id: str


@dataclass(frozen=True)
class PhotoCommit:
    task_id: str
    reference: str
    inline: bool
    path: str
    photo_count: int
    required_count: int

    @property
    def requirement_met(self) -> bool:
        return self.photo_count >= self.required_count


@dataclass(frozen=True)
class CaptureError:
    task_id: str
    message: str
    retryable: bool


def encode_data_url(data: bytes, content_type: str = 'image/jpeg') -> str:
    return f'data:{content_type};base64,' + base64.b64encode(data).decode('ascii')


def decode_data_url(data_url: str) -> bytes:
    header, _, encoded = data_url.partition(',')
    if not header.startswith('data:') or ';base64' not in header:
        raise ValueError('Photo must be a base64 data URL')
    try:
        return base64.b64decode(encoded, validate=True)
    except binascii.Error as exc:
        raise ValueError('Photo data URL is not valid base64') from exc


def downscale_image(raw: bytes, *, max_edge: int = DEFAULT_MAX_EDGE, quality: int = DEFAULT_JPEG_QUALITY) -> bytes:
    """Shrink so the longer edge is at most ``max_edge`` and re-encode as JPEG."""
    try:
        with Image.open(BytesIO(raw)) as opened:
            image = ImageOps.exif_transpose(opened)
            if image.mode != 'RGB':
                image = image.convert('RGB')
            image.thumbnail((max_edge, max_edge), Image.Resampling.LANCZOS)
            output = BytesIO()
            image.save(output, format='JPEG', quality=quality, optimize=True)
    except UnidentifiedImageError as exc:
        raise ValueError('Captured frame is not a readable image') from exc
    return output.getvalue()


def photo_storage_path(target: PhotoTarget, task_id: str, index: int) -> str:
    return f'checklists/{target.store_id}/{target.logical_date}/{target.submission_id}/{task_id}/photo_{index}.jpg'


class PhotoCaptureUploader:
    def __init__(
        self,
        camera: Camera,
        storage: PhotoStorage,
        *,
        max_edge: int = DEFAULT_MAX_EDGE,
        quality: int = DEFAULT_JPEG_QUALITY,
    ) -> None:
        self.camera = camera
        self.storage = storage
        self.max_edge = max_edge
        self.quality = quality
        self.capture_errors: dict[str, CaptureError] = {}

    async def capture(self, task_id: str) -> str:
        try:
            frame = await self.camera.capture_frame()
        except CameraAccessError as exc:
            self.capture_errors[task_id] = CaptureError(task_id=task_id, message=str(exc), retryable=exc.retryable)
            raise
        except PermissionError as exc:
            message = 'Camera access denied. Allow camera permissions and retry.'
            self.capture_errors[task_id] = CaptureError(task_id=task_id, message=message, retryable=True)
            raise CameraAccessError(message) from exc
        self.capture_errors.pop(task_id, None)
        return encode_data_url(frame)

    async def commit(
        self,
        task_id: str,
        photo_data_url: str,
        *,
        target: PhotoTarget,
        existing_count: int,
        required_count: int,
    ) -> PhotoCommit:
        encoded = downscale_image(decode_data_url(photo_data_url), max_edge=self.max_edge, quality=self.quality)
        path = photo_storage_path(target, task_id, existing_count)
        try:
            reference = await asyncio.to_thread(self.storage.upload, encoded, path, 'image/jpeg')
            inline = False
        except PhotoUploadError as exc:
            logger.warning('Photo upload failed for %s, keeping it inline: %s', path, exc, extra={'task_id': task_id})
            reference = encode_data_url(encoded)
            inline = True
        except Exception:
            logger.exception('Photo storage raised for %s, keeping it inline', path, extra={'task_id': task_id})
            reference = encode_data_url(encoded)
            inline = True

        return PhotoCommit(
            task_id=task_id,
            reference=reference,
            inline=inline,
            path=path,
            photo_count=existing_count + 1,
            required_count=required_count,
        )
