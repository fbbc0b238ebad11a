from __future__ import annotations

import json
from http.client import HTTPException
from typing import Protocol
from urllib.error import HTTPError, URLError
from urllib.parse import quote
from urllib.request import Request, urlopen

from app.config import settings
from app.services.errors import PhotoUploadError


class PhotoStorage(Protocol):
    def upload(self, data: bytes, path: str, content_type: str = 'image/jpeg') -> str: ...


class DisabledPhotoStorage:
    """Used when no bucket is configured: every upload falls back to inline storage."""

    def upload(self, data: bytes, path: str, content_type: str = 'image/jpeg') -> str:
        raise PhotoUploadError('Photo storage is not configured')


class HttpPhotoStorage:
    def __init__(
        self,
        base_url: str | None = None,
        *,
        token: str | None = None,
        timeout_seconds: int | None = None,
    ) -> None:
        base_url = base_url or settings.photo_storage_base_url
        if not base_url:
            raise ValueError('PHOTO_STORAGE_BASE_URL is required when PHOTO_STORAGE=http')
        self.base_url = base_url.rstrip('/')
        self.timeout_seconds = timeout_seconds or settings.http_timeout_seconds
        self.token = token if token is not None else settings.photo_storage_token

    def public_url(self, path: str) -> str:
        return f'{self.base_url}/{quote(path)}'

    def upload(self, data: bytes, path: str, content_type: str = 'image/jpeg') -> str:
        headers = {'Content-Type': content_type}
        if self.token:
            headers['Authorization'] = f'Bearer {self.token}'
        req = Request(url=self.public_url(path), data=data, headers=headers, method='PUT')
        try:
            with urlopen(req, timeout=self.timeout_seconds) as response:
                body = response.read().decode('utf-8', errors='ignore')
        except HTTPError as exc:
            body = exc.read().decode('utf-8', errors='ignore') if exc.fp else ''
            raise PhotoUploadError(f'Photo storage error {exc.code} for {path}: {body}') from exc
        except (URLError, TimeoutError) as exc:
            raise PhotoUploadError(f'Photo storage unreachable for {path}: {exc}') from exc
        except (OSError, HTTPException) as exc:
            raise PhotoUploadError(f'Photo storage connection failed for {path}: {exc!r}') from exc

        if body.strip().startswith('{'):
            try:
                parsed = json.loads(body)
            except json.JSONDecodeError:
                parsed = {}
            for key in ('url', 'downloadUrl', 'mediaLink'):
                if parsed.get(key):
                    return str(parsed[key])
        return self.public_url(path)
