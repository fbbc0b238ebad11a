from __future__ import annotations

import asyncio
import json
from http.client import HTTPException
from urllib.error import HTTPError, URLError
from urllib.parse import quote
from urllib.request import Request, urlopen

from app.config import settings
from app.services.checklist_records import ChecklistTemplate, Submission
from app.services.errors import StoreUnavailableError


class HttpRemoteStore:
    def __init__(
        self,
        base_url: str | None = None,
        *,
        token: str | None = None,
        timeout_seconds: int | None = None,
    ) -> None:
        self.base_url = (base_url or settings.document_api_base_url).rstrip('/')
        self.timeout_seconds = timeout_seconds or settings.http_timeout_seconds
        self.headers = {'Content-Type': 'application/json', 'Accept': 'application/json'}
        token = token if token is not None else settings.document_api_token
        if token:
            self.headers['Authorization'] = f'Bearer {token}'

    def _path(self, store_id: str, *parts: str) -> str:
        segments = ['api', 'stores', quote(store_id, safe=''), *(quote(part, safe='') for part in parts)]
        return '/' + '/'.join(segments)

    def _request(self, method: str, path: str, payload: object | None = None) -> object:
        data = json.dumps(payload).encode('utf-8') if payload is not None else None
        req = Request(url=f'{self.base_url}{path}', data=data, headers=self.headers, method=method)
        try:
            with urlopen(req, timeout=self.timeout_seconds) as response:
                body = response.read().decode('utf-8')
        except HTTPError as exc:
            body = exc.read().decode('utf-8', errors='ignore') if exc.fp else ''
            raise StoreUnavailableError(f'Document API error {exc.code} on {path}: {body}') from exc
        except URLError as exc:
            raise StoreUnavailableError(f'Document API network error on {path}: {exc.reason}') from exc
        except TimeoutError as exc:
            raise StoreUnavailableError(f'Document API timed out on {path}') from exc
        except (OSError, HTTPException) as exc:
            raise StoreUnavailableError(f'Document API connection failed on {path}: {exc!r}') from exc

        if not body:
            return None
        try:
            return json.loads(body)
        except json.JSONDecodeError as exc:
            raise StoreUnavailableError(f'Document API returned malformed JSON on {path}') from exc

    async def _call(self, method: str, path: str, payload: object | None = None) -> object:
        return await asyncio.to_thread(self._request, method, path, payload)

    async def fetch_submissions(self, store_id: str) -> list[Submission]:
        parsed = await self._call('GET', self._path(store_id, 'submissions'))
        return [Submission.from_dict(raw) for raw in (parsed or {}).get('submissions', [])]

    async def put_submission(self, submission: Submission) -> None:
        await self._call('PUT', self._path(submission.store_id, 'submissions', submission.id), submission.to_dict())

    async def put_full_submissions_registry(self, store_id: str, submissions: list[Submission]) -> None:
        await self._call(
            'PUT',
            self._path(store_id, 'submissions'),
            {'submissions': [item.to_dict() for item in submissions]},
        )

    async def fetch_templates(self, store_id: str) -> list[ChecklistTemplate]:
        parsed = await self._call('GET', self._path(store_id, 'templates'))
        return [ChecklistTemplate.from_dict(raw) for raw in (parsed or {}).get('templates', [])]

    async def put_templates(self, store_id: str, templates: list[ChecklistTemplate]) -> None:
        await self._call(
            'PUT',
            self._path(store_id, 'templates'),
            {'templates': [template.to_dict() for template in templates]},
        )
