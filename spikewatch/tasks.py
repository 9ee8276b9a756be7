"""Subscriber tasks: API client plus a cached fallback tier.

The scheduler API decides which tasks are due; this module only fetches
them. When the API is unreachable the last successfully fetched list is
served from disk so reports keep flowing.
"""
from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import List, Optional, Tuple

import requests
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from requests.exceptions import RequestException

from .config import CONFIG

logger = logging.getLogger(__name__)


class TaskSourceError(Exception):
    """Raised when the primary task source cannot be read."""


class SubscriberTask(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra='ignore')

    id: str
    email: str
    category: str = ''
    symbols: List[str] = Field(default_factory=list)
    primary_symbols: List[str] = Field(default_factory=list, alias='primarySymbols')
    coinbase_name: Optional[str] = Field(None, alias='coinbaseName')

    @field_validator('symbols', 'primary_symbols', mode='before')
    @classmethod
    def _none_to_empty(cls, value):
        return [] if value is None else value


class ApiTaskSource:
    """Client for the scheduler's Task endpoints (HTTP basic auth)."""

    def __init__(self,
                 endpoint: str | None = None,
                 username: str | None = None,
                 password: str | None = None,
                 page_size: int | None = None,
                 session: requests.Session | None = None,
                 timeout: Tuple[int, int] | None = None):
        endpoint = endpoint or CONFIG['TASK_API_ENDPOINT']
        self.endpoint = endpoint if endpoint.endswith('/') else endpoint + '/'
        self.page_size = page_size or CONFIG['TASK_PAGE_SIZE']
        self.session = session or requests.Session()
        self.session.auth = (username if username is not None else CONFIG['TASK_API_USERNAME'],
                             password if password is not None else CONFIG['TASK_API_PASSWORD'])
        self.timeout = timeout or (CONFIG['API_TIMEOUT_CONNECT'], CONFIG['API_TIMEOUT_READ'])

    def fetch_due_tasks(self) -> List[SubscriberTask]:
        tasks: List[SubscriberTask] = []
        page = 0
        while True:
            try:
                resp = self.session.get(f"{self.endpoint}Task/GetTasksForRun",
                                        params={'page': page, 'pageSize': self.page_size},
                                        timeout=self.timeout)
                resp.raise_for_status()
                batch = [SubscriberTask.model_validate(t) for t in resp.json()]
            except (RequestException, ValueError, TypeError) as e:
                raise TaskSourceError(f"GetTasksForRun page {page}: {e}") from e
            tasks.extend(batch)
            if len(batch) < self.page_size:
                return tasks
            page += 1

    def mark_ran(self, task_id: str) -> None:
        try:
            resp = self.session.post(f"{self.endpoint}Task/SetLastRun", params={'id': task_id}, timeout=self.timeout)
            resp.raise_for_status()
        except RequestException as e:
            raise TaskSourceError(f"SetLastRun {task_id}: {e}") from e


class CachedTaskSource:
    """Primary source with a last-known-good copy on disk."""

    def __init__(self, primary: ApiTaskSource, cache_path: str | os.PathLike | None = None):
        self.primary = primary
        self.cache_path = Path(cache_path or CONFIG['TASKS_CACHE_FILE'])
        self.last_tier = None

    def fetch_due_tasks(self) -> List[SubscriberTask]:
        try:
            tasks = self.primary.fetch_due_tasks()
        except TaskSourceError as e:
            logger.warning(f"task source unavailable, falling back to cache: {e}")
            self.last_tier = 'cache'
            return self._read_cache()
        self.last_tier = 'primary'
        self._write_cache(tasks)
        return tasks

    def mark_ran(self, task_id: str) -> None:
        self.primary.mark_ran(task_id)

    def _write_cache(self, tasks: List[SubscriberTask]) -> None:
        try:
            self.cache_path.parent.mkdir(parents=True, exist_ok=True)
            payload = [t.model_dump(mode='json', by_alias=True) for t in tasks]
            self.cache_path.write_text(json.dumps(payload, indent=2), encoding='utf-8')
        except OSError as e:
            logger.warning(f"could not write task cache {self.cache_path}: {e}")

    def _read_cache(self) -> List[SubscriberTask]:
        if not self.cache_path.exists():
            logger.warning(f"no task cache at {self.cache_path}")
            return []
        try:
            data = json.loads(self.cache_path.read_text(encoding='utf-8'))
            return [SubscriberTask.model_validate(t) for t in data]
        except (OSError, ValueError, TypeError, ValidationError) as e:
            logger.error(f"task cache {self.cache_path} unreadable: {e}")
            return []


__all__ = ['SubscriberTask', 'ApiTaskSource', 'CachedTaskSource', 'TaskSourceError']
