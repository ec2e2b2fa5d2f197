"""
Submit-then-poll HTTP client shared by every remote task provider.

    task_id = await client.submit("task", payload)
    record  = await client.poll_until_done(task_id, interval=10, max_attempts=60)

Status responses are decoded by trying each known provider schema in order
(PiAPI envelope, then a bare task object). The first schema that
recognises the body classifies it as done / failed / still running; bodies
nobody recognises, and HTTP errors such as the "task not found" a provider
returns right after creation, count as transient.
"""

import asyncio
import random
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import httpx

from .config import Settings
from .errors import (
    MalformedResponseError,
    PersistentTransientError,
    PollTimeoutError,
    SubmissionError,
    TaskFailedError,
)

logger = logging.getLogger(__name__)

# ── Retry configuration ──────────────────────────────────────────────────────
MAX_RETRIES = 3
BASE_DELAY = 2.0       # seconds, doubles each retry: 2, 4, 8
JITTER_MAX = 1.0        # random jitter 0–1s added to each delay
RETRYABLE_STATUS_CODES = {429, 502, 503, 504}

# Status-check failures worth another try. 400/404 show up for a few seconds
# after a PiAPI task is created.
TRANSIENT_POLL_STATUS_CODES = {400, 404, 408, 429, 500, 502, 503, 504}
MAX_TRANSIENT_BACKOFF_FACTOR = 8

DONE_STATUSES = {"completed", "success", "succeed", "succeeded"}
FAILED_STATUSES = {"failed", "fail", "error", "cancelled"}
RUNNING_STATUSES = {
    "pending", "processing", "running", "staged", "queued", "queuing",
    "waiting", "generating", "in_progress", "in_queue", "submitted",
}

Sleep = Callable[[float], Awaitable[Any]]


class TaskState(str, Enum):
    DONE = "done"
    FAILED = "failed"
    RUNNING = "running"
    TRANSIENT = "transient"


@dataclass
class PollOutcome:
    state: TaskState
    record: dict = field(default_factory=dict)
    reason: str = ""
    schema: str = ""


# ── Response schemas ─────────────────────────────────────────────────────────

@dataclass(frozen=True)
class StatusSchema:
    """One known layout of a task-status response.

    `locate` returns the task record if the body has this layout, else None.
    `state` maps the record onto a TaskState (None means "unknown status").
    """
    name: str
    locate: Callable[[dict], Optional[dict]]
    state: Callable[[dict], Optional[TaskState]]


def _state_from_status(record: dict) -> Optional[TaskState]:
    status = str(record.get("status", "")).strip().lower()
    if status in DONE_STATUSES:
        return TaskState.DONE
    if status in FAILED_STATUSES:
        return TaskState.FAILED
    if status in RUNNING_STATUSES:
        return TaskState.RUNNING
    return None


def _locate_envelope(body: dict) -> Optional[dict]:
    data = body.get("data")
    if isinstance(data, dict) and isinstance(data.get("status"), str):
        return data
    return None


def _locate_flat(body: dict) -> Optional[dict]:
    if isinstance(body.get("status"), str):
        return body
    return None


STATUS_SCHEMAS: tuple = (
    StatusSchema("piapi_envelope", _locate_envelope, _state_from_status),
    StatusSchema("flat_task", _locate_flat, _state_from_status),
)


def failure_reason(record: dict) -> str:
    """Pull a human-readable failure reason out of a task record."""
    error = record.get("error")
    if isinstance(error, dict):
        message = error.get("message") or error.get("raw_message")
        if message:
            return str(message)
    elif error:
        return str(error)
    return str(record.get("msg") or record.get("message") or "Unknown error")


def classify_status(body: Any, schemas: tuple = STATUS_SCHEMAS) -> PollOutcome:
    """Classify a decoded status body using the first schema that matches."""
    if not isinstance(body, dict):
        return PollOutcome(TaskState.TRANSIENT, reason=f"unexpected status payload type {type(body).__name__}")

    for schema in schemas:
        record = schema.locate(body)
        if record is None:
            continue
        state = schema.state(record)
        if state is None:
            logger.warning(f"Unknown task status {record.get('status')!r} ({schema.name}) — treating as running")
            state = TaskState.RUNNING
        logger.debug(f"Status response matched schema {schema.name}: {state.value}")
        reason = failure_reason(record) if state is TaskState.FAILED else ""
        return PollOutcome(state, record=record, reason=reason, schema=schema.name)

    return PollOutcome(TaskState.TRANSIENT, reason="unrecognised status payload")


def extract_task_id(body: Any) -> Optional[str]:
    """Find the task identifier in a job-creation response."""
    if not isinstance(body, dict):
        return None
    data = body.get("data")
    task_id = None
    if isinstance(data, dict):
        task_id = data.get("task_id") or data.get("id")
    if not task_id:
        task_id = body.get("task_id") or body.get("id")
    return str(task_id) if task_id else None


# ── Plain requests with backoff ──────────────────────────────────────────────

async def request_with_backoff(
    http: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    sleep: Sleep = asyncio.sleep,
    max_retries: int = MAX_RETRIES,
    **kwargs,
) -> httpx.Response:
    """
    Make an HTTP request with exponential backoff on retryable errors (429, 5xx).

    Uses: base_delay * 2^attempt + random jitter, or the server's Retry-After.
    Non-retryable responses are returned as-is; the caller decides what a
    4xx means.
    """
    for attempt in range(max_retries + 1):
        try:
            response = await http.request(method, url, **kwargs)
        except httpx.TransportError as e:
            if attempt >= max_retries:
                raise
            delay = BASE_DELAY * (2 ** attempt) + random.uniform(0, JITTER_MAX)
            logger.warning(
                f"Request error on attempt {attempt + 1}/{max_retries + 1}: {e} — retrying in {delay:.1f}s"
            )
            await sleep(delay)
            continue

        if response.status_code not in RETRYABLE_STATUS_CODES or attempt >= max_retries:
            return response

        retry_after = response.headers.get("Retry-After")
        if retry_after and retry_after.isdigit():
            delay = int(retry_after)
        else:
            delay = BASE_DELAY * (2 ** attempt) + random.uniform(0, JITTER_MAX)

        logger.warning(
            f"HTTP {response.status_code} on attempt {attempt + 1}/{max_retries + 1} "
            f"— retrying in {delay:.1f}s (url={url})"
        )
        await sleep(delay)

    raise RuntimeError(f"Request to {url} failed after {max_retries + 1} attempts")


# ── Long-poll client ─────────────────────────────────────────────────────────

class LongPollClient:
    """
    Creates remote jobs and polls them to completion.

    Args:
        base_url:  Provider API root, e.g. https://api.piapi.ai/api/v1
        headers:   Auth headers sent with every request.
        http:      Optional shared AsyncClient (tests inject a MockTransport).
        sleep:     Awaitable used between polls.
        status_path: Path template of the status endpoint.
        max_consecutive_transient: Transient errors tolerated in a row.
    """

    def __init__(
        self,
        base_url: str,
        headers: dict,
        http: Optional[httpx.AsyncClient] = None,
        sleep: Sleep = asyncio.sleep,
        status_path: str = "task/{task_id}",
        schemas: tuple = STATUS_SCHEMAS,
        max_consecutive_transient: int = 10,
        timeout: float = 60.0,
    ):
        self._base_url = base_url.rstrip("/")
        self._headers = headers
        self._http = http or httpx.AsyncClient(timeout=timeout)
        self._owns_http = http is None
        self._sleep = sleep
        self._status_path = status_path
        self._schemas = schemas
        self._max_consecutive_transient = max_consecutive_transient

    async def aclose(self):
        if self._owns_http:
            await self._http.aclose()

    def _url(self, path: str) -> str:
        return f"{self._base_url}/{path.lstrip('/')}"

    async def submit(self, path: str, payload: dict) -> str:
        """POST a job-creation request and return the remote task id."""
        url = self._url(path)
        try:
            response = await self._http.post(url, json=payload, headers=self._headers)
        except httpx.HTTPError as e:
            raise SubmissionError(f"Could not reach {url}: {e}") from e

        if not response.is_success:
            raise SubmissionError(
                f"Job creation failed with HTTP {response.status_code}: {response.text[:300]}",
                status_code=response.status_code,
                body=response.text,
            )

        try:
            body = response.json()
        except ValueError as e:
            raise SubmissionError(
                f"Job creation returned non-JSON body: {response.text[:200]}",
                status_code=response.status_code,
                body=response.text,
            ) from e

        task_id = extract_task_id(body)
        if not task_id:
            raise SubmissionError(
                f"Job creation succeeded but no task id was returned: {str(body)[:300]}",
                status_code=response.status_code,
                body=response.text,
            )

        logger.info(f"Remote task created: {task_id} ({url})")
        return task_id

    async def check(self, task_id: str) -> PollOutcome:
        """One status round trip, classified. Never raises for HTTP trouble."""
        url = self._url(self._status_path.format(task_id=task_id))
        try:
            response = await self._http.get(url, headers=self._headers)
        except httpx.HTTPError as e:
            return PollOutcome(TaskState.TRANSIENT, reason=f"request error: {e}")

        if not response.is_success:
            if response.status_code in TRANSIENT_POLL_STATUS_CODES:
                return PollOutcome(TaskState.TRANSIENT, reason=f"HTTP {response.status_code}")
            raise MalformedResponseError(
                f"Status check for task {task_id} failed with HTTP {response.status_code}: {response.text[:200]}"
            )

        try:
            body = response.json()
        except ValueError:
            return PollOutcome(TaskState.TRANSIENT, reason="non-JSON status body")
        return classify_status(body, self._schemas)

    async def poll_until_done(
        self,
        task_id: str,
        interval: float,
        max_attempts: int,
        max_consecutive_transient: Optional[int] = None,
    ) -> dict:
        """
        Poll `task_id` until it completes and return its task record.

        Raises:
            TaskFailedError:          the provider reported failure.
            PersistentTransientError: too many transient errors in a row.
            PollTimeoutError:         max_attempts exhausted while running.
        """
        max_transient = (
            self._max_consecutive_transient if max_consecutive_transient is None else max_consecutive_transient
        )
        consecutive_transient = 0

        for attempt in range(1, max_attempts + 1):
            if consecutive_transient:
                factor = min(2 ** consecutive_transient, MAX_TRANSIENT_BACKOFF_FACTOR)
                await self._sleep(interval * factor)
            else:
                await self._sleep(interval)

            outcome = await self.check(task_id)

            if outcome.state is TaskState.TRANSIENT:
                consecutive_transient += 1
                logger.warning(
                    f"Task {task_id} poll #{attempt}: transient error ({outcome.reason}), "
                    f"{consecutive_transient}/{max_transient}"
                )
                if consecutive_transient >= max_transient:
                    raise PersistentTransientError(task_id, consecutive_transient, outcome.reason)
                continue

            consecutive_transient = 0
            logger.info(f"Task {task_id} poll #{attempt}/{max_attempts}: {outcome.state.value} ({outcome.schema})")

            if outcome.state is TaskState.DONE:
                return outcome.record
            if outcome.state is TaskState.FAILED:
                raise TaskFailedError(task_id, outcome.reason)

        raise PollTimeoutError(task_id, max_attempts)


def build_piapi_client(
    settings: Settings,
    http: Optional[httpx.AsyncClient] = None,
    sleep: Sleep = asyncio.sleep,
) -> Optional[LongPollClient]:
    """PiAPI v1 task client, or None when no API key is configured."""
    if not settings.piapi_api_key:
        return None
    return LongPollClient(
        settings.piapi_api_base,
        headers={"X-API-Key": settings.piapi_api_key, "Content-Type": "application/json"},
        http=http,
        sleep=sleep,
        max_consecutive_transient=settings.max_consecutive_transient,
        timeout=settings.http_timeout,
    )
