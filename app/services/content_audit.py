from __future__ import annotations

import json
from dataclasses import dataclass
from http.client import HTTPException
from typing import Protocol
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from app.config import settings
from app.services.errors import ContentAuditError


@dataclass(frozen=True)
class AuditVerdict:
    flagged: bool
    reason: str = ''


class ContentAuditor(Protocol):
    def audit(self, image: str, task_label: str) -> AuditVerdict: ...


class MockContentAuditor:
    """Clears every photo; used in development and when no auditor is configured."""

    def audit(self, image: str, task_label: str) -> AuditVerdict:
        return AuditVerdict(flagged=False, reason='')


class HttpContentAuditor:
    def __init__(
        self,
        url: str | None = None,
        *,
        api_key: str | None = None,
        timeout_seconds: int | None = None,
    ) -> None:
        url = url or settings.content_auditor_url
        if not url:
            raise ValueError('CONTENT_AUDITOR_URL is required when CONTENT_AUDITOR=http')
        self.url = url
        self.timeout_seconds = timeout_seconds or settings.http_timeout_seconds
        self.headers = {'Content-Type': 'application/json'}
        api_key = api_key if api_key is not None else settings.content_auditor_api_key
        if api_key:
            self.headers['Authorization'] = f'Bearer {api_key}'

    def audit(self, image: str, task_label: str) -> AuditVerdict:
        payload = json.dumps({'image': image, 'taskLabel': task_label}).encode('utf-8')
        req = Request(url=self.url, data=payload, headers=self.headers, method='POST')
        try:
            with urlopen(req, timeout=self.timeout_seconds) as response:
                parsed = json.loads(response.read().decode('utf-8'))
        except HTTPError as exc:
            body = exc.read().decode('utf-8', errors='ignore') if exc.fp else ''
            raise ContentAuditError(f'Content auditor error {exc.code}: {body}') from exc
        except (URLError, TimeoutError) as exc:
            raise ContentAuditError(f'Content auditor unreachable: {exc}') from exc
        except (OSError, HTTPException) as exc:
            raise ContentAuditError(f'Content auditor connection failed: {exc!r}') from exc
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ContentAuditError('Content auditor returned malformed JSON') from exc

        if not isinstance(parsed, dict) or not isinstance(parsed.get('flagged'), bool):
            raise ContentAuditError(f'Content auditor returned an unexpected payload: {parsed!r}')
        return AuditVerdict(flagged=parsed['flagged'], reason=str(parsed.get('reason') or ''))
