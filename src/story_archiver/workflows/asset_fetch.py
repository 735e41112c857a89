from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

import aiohttp

from .archiver_config import (
    ACCEPT_LANGUAGE,
    DEFAULT_CONCURRENCY,
    DEFAULT_RETRIES,
    DEFAULT_TIMEOUT,
    USER_AGENT,
)
from .video_utils import VideoDownloadError, VideoDownloader

logger = logging.getLogger(__name__)

POLICY_KEEP = "keep"
POLICY_OVERWRITE = "overwrite"
KIND_ASSET = "asset"
KIND_VIDEO = "video"

PARTIAL_SUFFIX = ".part"


class FetchError(RuntimeError):
    """A resource could not be fetched within its retry budget."""

    def __init__(self, url: str, cause: Optional[BaseException]) -> None:
        self.url = url
        self.cause = cause
        detail = f"{type(cause).__name__}: {cause}" if cause is not None else "unknown error"
        super().__init__(f"failed to fetch {url}: {detail}")


@dataclass
class FetchConfig:
    """Configuration parameters for asynchronous asset fetching."""

    concurrency: int = DEFAULT_CONCURRENCY
    retries: int = DEFAULT_RETRIES
    timeout: float = DEFAULT_TIMEOUT
    backoff_initial: float = 0.8
    backoff_max: float = 6.0
    user_agent: str = USER_AGENT
    accept_language: str = ACCEPT_LANGUAGE


@dataclass(frozen=True)
class FetchTask:
    """One remote resource bound to one local destination."""

    url: str
    destination: Path
    policy: str = POLICY_KEEP
    retries: int = DEFAULT_RETRIES
    kind: str = KIND_ASSET


@dataclass
class FetchResult:
    """Container for the outcome of a single task."""

    url: str
    destination: Path
    ok: bool
    attempts: int = 0
    skipped_existing: bool = False
    started: bool = True
    error: Optional[str] = None
    exception: Optional[FetchError] = field(default=None, repr=False, compare=False)


@dataclass
class RunOutcome:
    """Failure tally shared by every batch of a run.

    ``max_errors`` of 0 means failures never abort the run.
    """

    max_errors: int = 0
    failures: int = 0
    failed_urls: List[str] = field(default_factory=list)

    def record_failure(self, url: str, error: Optional[str] = None) -> None:
        self.failures += 1
        self.failed_urls.append(url)
        if self.exceeded:
            logger.error(
                "error threshold exceeded (%d > %d) after %s: %s",
                self.failures,
                self.max_errors,
                url,
                error or "failed",
            )

    @property
    def exceeded(self) -> bool:
        return self.max_errors > 0 and self.failures > self.max_errors


@dataclass
class BatchReport:
    results: List[FetchResult] = field(default_factory=list)
    runtime_seconds: float = 0.0

    @property
    def succeeded(self) -> Set[Path]:
        return {r.destination for r in self.results if r.ok}

    @property
    def localized(self) -> Dict[str, Path]:
        return {r.url: r.destination for r in self.results if r.ok}

    @property
    def failed(self) -> List[FetchResult]:
        return [r for r in self.results if r.started and not r.ok]

    @property
    def not_started(self) -> List[FetchResult]:
        return [r for r in self.results if not r.started]

    def summary(self) -> Dict[str, Any]:
        return {
            "requested": len(self.results),
            "fetched": sum(1 for r in self.results if r.ok and not r.skipped_existing),
            "kept": sum(1 for r in self.results if r.skipped_existing),
            "failed": len(self.failed),
            "not_started": len(self.not_started),
            "runtime_seconds": round(self.runtime_seconds, 3),
        }


def _partial_path(destination: Path) -> Path:
    return destination.with_name(destination.name + PARTIAL_SUFFIX)


class AssetFetcher:
    """Async asset fetcher with a global concurrency bound and per-task retries."""

    def __init__(
        self,
        config: FetchConfig,
        video_downloader: Optional[VideoDownloader] = None,
    ) -> None:
        self.config = config
        self.video_downloader = video_downloader

    async def fetch_many(
        self,
        tasks: Iterable[FetchTask],
        outcome: RunOutcome,
        progress_hook: Optional[Callable[[int, int, FetchResult], None]] = None,
    ) -> BatchReport:
        # One task per destination; later duplicates add nothing.
        unique: Dict[Path, FetchTask] = {}
        for task in tasks:
            unique.setdefault(task.destination, task)
        report = BatchReport()
        if not unique:
            return report

        semaphore = asyncio.Semaphore(max(1, self.config.concurrency))
        connector = aiohttp.TCPConnector(limit=max(1, self.config.concurrency))
        headers = {
            "User-Agent": self.config.user_agent,
            "Accept-Language": self.config.accept_language,
        }
        start_time = time.perf_counter()
        async with aiohttp.ClientSession(connector=connector, headers=headers) as session:
            pending = [
                asyncio.create_task(self._run_task(task, session, semaphore, outcome))
                for task in unique.values()
            ]
            total = len(pending)
            completed = 0
            for future in asyncio.as_completed(pending):
                result = await future
                report.results.append(result)
                completed += 1
                if progress_hook is not None:
                    progress_hook(completed, total, result)
        report.runtime_seconds = time.perf_counter() - start_time
        logger.info("batch done: %s", report.summary())
        return report

    async def _run_task(
        self,
        task: FetchTask,
        session: aiohttp.ClientSession,
        semaphore: asyncio.Semaphore,
        outcome: RunOutcome,
    ) -> FetchResult:
        async with semaphore:
            if outcome.exceeded:
                logger.debug("not starting %s: error threshold exceeded", task.url)
                return FetchResult(
                    url=task.url,
                    destination=task.destination,
                    ok=False,
                    started=False,
                    error="not started: error threshold exceeded",
                )
            result = await self.fetch(session, task)
            if not result.ok:
                outcome.record_failure(task.url, result.error)
            return result

    async def fetch(self, session: Optional[aiohttp.ClientSession], task: FetchTask) -> FetchResult:
        destination = task.destination
        if task.policy == POLICY_KEEP and destination.exists():
            logger.debug("keeping existing %s", destination)
            return FetchResult(url=task.url, destination=destination, ok=True, skipped_existing=True)
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            attempts = await self._fetch_with_retries(session, task)
        except FetchError as exc:
            logger.warning("%s", exc)
            return FetchResult(
                url=task.url,
                destination=destination,
                ok=False,
                attempts=task.retries + 1,
                error=str(exc),
                exception=exc,
            )
        except OSError as exc:
            logger.warning("failed to write %s for %s: %s", destination, task.url, exc)
            return FetchResult(
                url=task.url,
                destination=destination,
                ok=False,
                error=str(exc),
                exception=FetchError(task.url, exc),
            )
        logger.info("archived %s -> %s", task.url, destination)
        return FetchResult(url=task.url, destination=destination, ok=True, attempts=attempts)

    async def fetch_or_raise(self, session: Optional[aiohttp.ClientSession], task: FetchTask) -> Path:
        """Fetch a task and return its local path, raising FetchError on failure."""

        result = await self.fetch(session, task)
        if not result.ok:
            raise result.exception or FetchError(task.url, None)
        return result.destination

    async def _fetch_with_retries(self, session: Optional[aiohttp.ClientSession], task: FetchTask) -> int:
        delay = self.config.backoff_initial
        last_exc: Optional[BaseException] = None
        max_attempts = max(0, task.retries) + 1
        for attempt in range(1, max_attempts + 1):
            try:
                await self._fetch_to_path(session, task)
                return attempt
            except (aiohttp.ClientError, asyncio.TimeoutError, VideoDownloadError) as exc:
                last_exc = exc
                if attempt == max_attempts:
                    break
                logger.debug("attempt %d/%d for %s failed: %s", attempt, max_attempts, task.url, exc)
                if delay > 0:
                    await asyncio.sleep(delay)
                    delay = min(delay * 2, self.config.backoff_max)
        raise FetchError(task.url, last_exc)

    async def _fetch_to_path(self, session: Optional[aiohttp.ClientSession], task: FetchTask) -> None:
        partial = _partial_path(task.destination)
        try:
            if task.kind == KIND_VIDEO:
                if self.video_downloader is None:
                    raise VideoDownloadError("no video downloader configured")
                await self.video_downloader.download(task.url, partial)
            else:
                payload = await self._fetch_once(session, task.url)
                partial.write_bytes(payload)
            os.replace(partial, task.destination)
        finally:
            partial.unlink(missing_ok=True)

    async def _fetch_once(self, session: Optional[aiohttp.ClientSession], url: str) -> bytes:
        if session is None:
            raise aiohttp.ClientConnectionError("no HTTP session available")
        timeout = aiohttp.ClientTimeout(total=self.config.timeout)
        async with session.get(url, timeout=timeout, allow_redirects=True) as resp:
            resp.raise_for_status()
            return await resp.read()

