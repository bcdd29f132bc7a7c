"""
Crawl Job Orchestrator.

Owns every crawl job from submission to a terminal status:

    pending -> running -> completed | partial | failed | cancelled

Jobs run as independent asyncio tasks sharing one BrowserSessionPool. Within
a job, URLs are crawled strictly one after another in submission order. Each
URL gets its own session lease, released (or evicted on crash) before the
next URL or retry starts.

Progress is observable two ways: polling ``get_job`` (backed by the job
store, updated after every URL) or subscribing to the progress channel,
which receives a JobSnapshot after every URL and on every status change.
"""

import asyncio
import base64
import copy
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator, Optional, Union
from urllib.parse import urlparse

from pydantic import ValidationError as SettingsValidationError

from .browser_config import CrawlSettings
from .config import EngineConfig
from .exceptions import (
    InvalidJobTransition,
    JobNotFound,
    JobStoreError,
    PageCrawlError,
    PoolExhausted,
    ProxyFailure,
    SessionCrash,
    ValidationError,
    classify_error,
)
from .extraction import extract_page_data
from .infrastructure.anti_detection import AntiDetectionEngine
from .infrastructure.browser_pool import BrowserSession, BrowserSessionPool
from .infrastructure.proxy_rotation import ProxyRotationService
from .job_store import AbstractJobStore, InMemoryJobStore
from .models import CrawlJob, JobSnapshot, JobStatus, PageError, PageResult
from .utils.human_simulator import HumanBehaviorSimulator

logger = logging.getLogger(__name__)

ALLOWED_SCHEMES = ("http", "https")


@dataclass
class RetryPolicy:
    """Exponential backoff between attempts on the same URL."""
    initial_delay_ms: float = 2000
    max_delay_ms: float = 10000
    factor: float = 2.0

    def delay_ms(self, retry: int) -> float:
        """Delay before retry ``retry + 1``: min(max, initial * factor^retry)."""
        return min(self.max_delay_ms, self.initial_delay_ms * (self.factor ** retry))


def validate_urls(urls) -> list[str]:
    """
    Check a submitted target list.

    Args:
        urls: Candidate URL list

    Returns:
        The URLs, stripped of surrounding whitespace

    Raises:
        ValidationError: If the list is empty or an entry is not an absolute
            http(s) URL
    """
    if isinstance(urls, str) or not urls:
        raise ValidationError("URL list must be a non-empty list")

    cleaned = []
    invalid = []
    for url in urls:
        if not isinstance(url, str):
            invalid.append(repr(url))
            continue
        candidate = url.strip()
        parsed = urlparse(candidate)
        if parsed.scheme not in ALLOWED_SCHEMES or not parsed.netloc:
            invalid.append(url)
            continue
        cleaned.append(candidate)

    if invalid:
        raise ValidationError(
            f"Invalid URLs: {', '.join(invalid)}",
            details=[{"field": "urls", "value": value} for value in invalid],
        )
    return cleaned


def parse_settings(settings: Union[CrawlSettings, dict, None]) -> CrawlSettings:
    """Validate caller settings once, at submission."""
    if settings is None:
        return CrawlSettings()
    if isinstance(settings, CrawlSettings):
        return settings
    try:
        return CrawlSettings.model_validate(settings)
    except SettingsValidationError as e:
        raise ValidationError("Invalid crawl settings", details=e.errors()) from e


class CrawlJobOrchestrator:
    """
    Runs crawl jobs against a shared browser session pool.

    Usage:
        async with BrowserSessionPool() as pool:
            orchestrator = CrawlJobOrchestrator(pool)
            job_id = await orchestrator.submit("owner-1", ["https://example.com"])
            job = await orchestrator.wait(job_id)
    """

    def __init__(
        self,
        pool: BrowserSessionPool,
        store: Optional[AbstractJobStore] = None,
        proxy_service: Optional[ProxyRotationService] = None,
        anti_detection: Optional[AntiDetectionEngine] = None,
        simulator: Optional[HumanBehaviorSimulator] = None,
        config: Optional[EngineConfig] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            pool: Shared browser session pool
            store: Job store. Defaults to an in-memory store.
            proxy_service: Proxy rotation, used when its ``enabled`` flag is set
            anti_detection: Fingerprint engine. Built from config if not provided.
            simulator: Human behavior simulator. Built from config if not provided.
            config: Engine configuration. Defaults are used if not provided.
            retry_policy: Backoff policy. Built from config if not provided.
        """
        self.config = config or EngineConfig()
        self.pool = pool
        self.store = store or InMemoryJobStore()
        self.proxy_service = proxy_service
        self.anti_detection = anti_detection or AntiDetectionEngine(self.config.stealth_options())
        self.simulator = simulator or HumanBehaviorSimulator(self.config.behavior_config())
        self.retry_policy = retry_policy or self.config.retry_policy()

        self._jobs: dict[str, CrawlJob] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._cancel_flags: dict[str, asyncio.Event] = {}
        self._subscribers: dict[str, list[asyncio.Queue]] = {}
        self._transition_locks: dict[str, asyncio.Lock] = {}
        self._finished: deque[str] = deque()

    # --- Submission and lifecycle ---

    async def submit(
        self,
        owner: str,
        urls: list[str],
        settings: Union[CrawlSettings, dict, None] = None,
        vendor_id: Optional[str] = None,
    ) -> str:
        """
        Create a job and start it in the background.

        Args:
            owner: Owner identifier
            urls: Non-empty list of absolute http(s) URLs, crawled in order
            settings: CrawlSettings or a dict of options (camelCase or snake_case)
            vendor_id: Optional vendor/grouping identifier

        Returns:
            The new job's identifier

        Raises:
            ValidationError: If the submission is malformed. No job is created.
        """
        if not owner:
            raise ValidationError("Owner is required")

        job = CrawlJob(
            id=uuid.uuid4().hex,
            owner=owner,
            urls=validate_urls(urls),
            settings=parse_settings(settings),
            vendor_id=vendor_id,
        )

        await self.store.create(job)
        self._jobs[job.id] = job
        self._cancel_flags[job.id] = asyncio.Event()

        task = asyncio.create_task(self.execute(job), name=f"crawl-job-{job.id}")
        self._tasks[job.id] = task
        task.add_done_callback(lambda _: self._tasks.pop(job.id, None))

        logger.info(f"Submitted job {job.id} for {owner}: {job.total} URLs")
        return job.id

    async def execute(self, job: CrawlJob) -> CrawlJob:
        """
        Run a job to a terminal status.

        URLs are crawled sequentially; cancellation is checked before each
        one. The outcome of every URL is persisted before the next starts.
        Store failures and pool exhaustion end the job as ``failed``.
        """
        cancel_flag = self._cancel_flags.setdefault(job.id, asyncio.Event())

        try:
            async with self._transition_lock(job.id):
                if job.is_terminal:
                    return job
                job.status = JobStatus.RUNNING
                job.started_at = datetime.now()
                await self.store.update(job.id, {"status": job.status, "started_at": job.started_at})
                self._publish(job)
            logger.info(f"Job {job.id} running")

            last_index = job.total - 1
            for index, url in enumerate(job.urls):
                if cancel_flag.is_set() or job.is_terminal:
                    break

                outcome = await self._crawl_outcome(url, job.settings)

                if job.is_terminal:
                    logger.info(f"Job {job.id} ended while crawling {url}, discarding its outcome")
                    break

                await self._record_outcome(job, outcome)

                if index < last_index and not job.is_terminal:
                    job.progress = job.compute_progress()
                    await self.store.update(job.id, {"progress": job.progress})
                    self._publish(job)

            if not job.is_terminal:
                await self._finish(job, self._terminal_status(job))

        except PoolExhausted as e:
            logger.error(f"Job {job.id} failed: {e}")
            await self._finish(job, JobStatus.FAILED, error=str(e), tolerate_store_errors=True)
        except (JobStoreError, JobNotFound) as e:
            logger.error(f"Job {job.id} failed, store rejected an update: {e}")
            await self._finish(job, JobStatus.FAILED, error=str(e), tolerate_store_errors=True)
        except asyncio.CancelledError:
            logger.warning(f"Job {job.id} interrupted by shutdown")
            await self._finish(job, JobStatus.CANCELLED, error="Engine shut down", tolerate_store_errors=True)
            raise
        except Exception as e:
            logger.exception(f"Job {job.id} failed unexpectedly: {e}")
            await self._finish(job, JobStatus.FAILED, error=str(e), tolerate_store_errors=True)
        finally:
            self._cancel_flags.pop(job.id, None)

        return job

    async def _crawl_outcome(self, url: str, settings: CrawlSettings) -> Union[PageResult, PageError]:
        try:
            return await self.crawl_url(url, settings)
        except PageCrawlError as e:
            return PageError(
                url=url,
                error_class=e.error_class,
                message=str(e),
                retry_count=e.retry_count,
            )

    async def _record_outcome(self, job: CrawlJob, outcome: Union[PageResult, PageError]) -> None:
        if isinstance(outcome, PageResult):
            job.results.append(outcome)
            await self.store.store_result(job.id, outcome)
        else:
            job.errors.append(outcome)
            await self.store.record_error(job.id, outcome)

    @staticmethod
    def _terminal_status(job: CrawlJob) -> JobStatus:
        if not job.errors:
            return JobStatus.COMPLETED
        if job.results:
            return JobStatus.PARTIAL
        return JobStatus.FAILED

    async def _finish(
        self,
        job: CrawlJob,
        status: JobStatus,
        error: Optional[str] = None,
        tolerate_store_errors: bool = False,
    ) -> None:
        """
        Move a job into a terminal status. Terminal jobs are left untouched.

        The store is written first. When it rejects the write the in-memory
        job is only updated if ``tolerate_store_errors`` is set; otherwise
        the error propagates and the job keeps its current status.
        """
        async with self._transition_lock(job.id):
            if job.is_terminal:
                return

            completed_at = datetime.now()
            progress = job.compute_progress()
            try:
                await self.store.update(job.id, {
                    "status": status,
                    "progress": progress,
                    "completed_at": completed_at,
                    "error": error,
                })
            except (JobStoreError, JobNotFound) as e:
                if not tolerate_store_errors:
                    raise
                logger.error(f"Could not persist final status of job {job.id}: {e}")

            job.status = status
            job.completed_at = completed_at
            job.progress = progress
            job.error = error
            self._publish(job)

        logger.info(
            f"Job {job.id} {status.value}: {len(job.results)} results, "
            f"{len(job.errors)} errors, progress {job.progress}%"
        )
        self._retire(job.id)

    def _transition_lock(self, job_id: str) -> asyncio.Lock:
        return self._transition_locks.setdefault(job_id, asyncio.Lock())

    def _retire(self, job_id: str) -> None:
        """Keep only the most recently finished jobs in memory. Older ones are served by the store."""
        self._finished.append(job_id)
        while len(self._finished) > self.config.finished_jobs_cache_size:
            evicted = self._finished.popleft()
            self._jobs.pop(evicted, None)
            self._subscribers.pop(evicted, None)
            self._transition_locks.pop(evicted, None)

    async def cancel(self, job_id: str) -> JobSnapshot:
        """
        Cancel a pending or running job.

        Results collected so far are kept and the remaining URLs are skipped.
        A URL already in flight finishes, but its outcome is discarded.

        Raises:
            JobNotFound: If the job does not exist
            InvalidJobTransition: If the job is already in a terminal status
            JobStoreError: If the store rejects the cancellation. The job is
                left running.
        """
        job = self._jobs.get(job_id)

        if job is None:
            # Job from an earlier process, known only to the store
            stored = await self.store.get(job_id)
            if stored is None:
                raise JobNotFound(f"Job {job_id} not found")
            if stored.is_terminal:
                raise InvalidJobTransition(f"Job {job_id} is already {stored.status.value}")
            stored.status = JobStatus.CANCELLED
            stored.completed_at = datetime.now()
            await self.store.update(job_id, {"status": stored.status, "completed_at": stored.completed_at})
            return stored.snapshot()

        if job.is_terminal:
            raise InvalidJobTransition(f"Job {job_id} is already {job.status.value}")

        await self._finish(job, JobStatus.CANCELLED)
        if job.status != JobStatus.CANCELLED:
            raise InvalidJobTransition(f"Job {job_id} is already {job.status.value}")

        flag = self._cancel_flags.get(job_id)
        if flag is not None:
            flag.set()
        return job.snapshot()

    # --- Per-URL crawl procedure ---

    async def crawl_url(self, url: str, settings: Optional[CrawlSettings] = None) -> PageResult:
        """
        Crawl one URL, retrying failed attempts with backoff.

        Args:
            url: Absolute URL
            settings: Job settings (navigation/selector timeouts, retries, ...)

        Returns:
            PageResult of the first successful attempt

        Raises:
            PageCrawlError: Once retries are exhausted, with ``retry_count`` set
            PoolExhausted: If no session became available in time. Not retried.
        """
        settings = settings or CrawlSettings()
        started = time.monotonic()
        retry_count = 0
        reuse_proxy = None

        while True:
            try:
                result = await self._attempt(url, settings, retry_count, reuse_proxy)
            except PageCrawlError as e:
                e.retry_count = retry_count
                reuse_proxy = self._proxy_for_retry(e)
                if retry_count >= settings.max_retries:
                    logger.error(
                        f"Giving up on {url} after {retry_count} retries "
                        f"({e.error_class.value}): {e}"
                    )
                    raise
                delay_ms = self.retry_policy.delay_ms(retry_count)
                retry_count += 1
                logger.warning(
                    f"Attempt {retry_count} for {url} failed ({e.error_class.value}): {e}. "
                    f"Retrying in {delay_ms:.0f}ms"
                )
                await asyncio.sleep(delay_ms / 1000.0)
                continue

            result.retry_count = retry_count
            result.duration_ms = round((time.monotonic() - started) * 1000, 2)
            logger.info(f"Crawled {url} in {result.duration_ms:.0f}ms ({retry_count} retries)")
            return result

    async def _acquire_session(self, url: str) -> BrowserSession:
        timeout = self.config.acquire_timeout_seconds
        try:
            if timeout and timeout > 0:
                return await asyncio.wait_for(self.pool.acquire(), timeout)
            return await self.pool.acquire()
        except asyncio.TimeoutError:
            raise PoolExhausted(f"No browser session available within {timeout}s")
        except Exception as e:
            raise classify_error(e, "session", url) from e

    def _proxy_for_retry(self, error: PageCrawlError) -> Optional[str]:
        """Proxy the next attempt should keep, or None to take the next one in rotation."""
        if self.config.rotate_proxy_on_failure or isinstance(error, ProxyFailure):
            return None
        return error.proxy

    async def _attempt(
        self,
        url: str,
        settings: CrawlSettings,
        retry_count: int,
        reuse_proxy: Optional[str] = None,
    ) -> PageResult:
        session = await self._acquire_session(url)
        crashed = False
        stage = "session"

        try:
            if self.proxy_service is not None and self.proxy_service.enabled:
                self.proxy_service.apply_to(session, reuse_proxy)

            stealth = self.anti_detection.options.resolved()
            page = await session.new_page(**self.anti_detection.context_options(stealth))
            await self._block_resources(page)

            if self.config.stealth_enabled:
                if retry_count > 0 and self.config.escalate_stealth_on_retry:
                    await self.anti_detection.apply_enhanced(page, stealth, url=url)
                else:
                    await self.anti_detection.apply(page, stealth)

            stage = "navigation"
            await page.goto(url, timeout=settings.navigation_timeout_ms, wait_until="domcontentloaded")

            stage = "selector"
            await page.wait_for_selector(settings.wait_for_selector, timeout=settings.selector_timeout_ms)

            if settings.simulate_human_behavior:
                await self.simulator.simulate(page)

            stage = "extraction"
            data = await extract_page_data(page)

            screenshot = None
            if settings.screenshots.enabled:
                stage = "screenshot"
                screenshot = await self._capture_screenshot(page, url, settings)

            return PageResult(url=url, data=data, screenshot=screenshot)

        except Exception as e:
            error = classify_error(e, stage, url)
            error.proxy = session.active_proxy
            if isinstance(error, SessionCrash):
                crashed = True
            elif isinstance(error, ProxyFailure) and session.active_proxy and self.proxy_service is not None:
                self.proxy_service.mark_failed(session.active_proxy)
            raise error

        finally:
            if crashed:
                await self.pool.discard(session)
            else:
                await self.pool.release(session)

    async def _block_resources(self, page) -> None:
        blocked = frozenset(self.config.blocked_resources)
        if not blocked:
            return

        async def handle_route(route):
            if route.request.resource_type in blocked:
                await route.abort()
            else:
                await route.continue_()

        await page.route("**/*", handle_route)

    async def _capture_screenshot(self, page, url: str, settings: CrawlSettings) -> str:
        image = await page.screenshot(
            full_page=settings.screenshots.full_page,
            type="jpeg",
            quality=self.config.screenshot_quality,
        )

        if not self.config.screenshot_dir:
            return base64.b64encode(image).decode("ascii")

        host = urlparse(url).netloc.replace(":", "_") or "page"
        path = Path(self.config.screenshot_dir) / f"{host}_{uuid.uuid4().hex[:12]}.jpg"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(image)
        return str(path)

    # --- Progress channel and queries ---

    def _publish(self, job: CrawlJob) -> None:
        snapshot = job.snapshot()
        for queue in self._subscribers.get(job.id, []):
            queue.put_nowait(snapshot)

    def subscribe(self, job_id: str) -> asyncio.Queue:
        """
        Open a progress channel for a job.

        The returned queue receives a JobSnapshot after every URL and on
        every status change. A job that already ended gets its final
        snapshot immediately.
        """
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFound(f"Job {job_id} is not running in this process")

        queue: asyncio.Queue = asyncio.Queue()
        if job.is_terminal:
            queue.put_nowait(job.snapshot())
        self._subscribers.setdefault(job_id, []).append(queue)
        return queue

    def unsubscribe(self, job_id: str, queue: asyncio.Queue) -> None:
        queues = self._subscribers.get(job_id, [])
        if queue in queues:
            queues.remove(queue)
        if not queues:
            self._subscribers.pop(job_id, None)

    async def watch(self, job_id: str) -> AsyncIterator[JobSnapshot]:
        """Yield progress snapshots until the job reaches a terminal status."""
        queue = self.subscribe(job_id)
        try:
            while True:
                snapshot = await queue.get()
                yield snapshot
                if snapshot.is_terminal:
                    return
        finally:
            self.unsubscribe(job_id, queue)

    async def get_job(self, job_id: str) -> CrawlJob:
        """
        Polling accessor.

        Returns a copy of the live job when it runs in this process,
        otherwise the stored job.
        """
        job = self._jobs.get(job_id)
        if job is not None:
            return copy.deepcopy(job)

        stored = await self.store.get(job_id)
        if stored is None:
            raise JobNotFound(f"Job {job_id} not found")
        return stored

    async def wait(self, job_id: str, timeout: Optional[float] = None) -> CrawlJob:
        """Wait for a job to reach a terminal status and return it."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout)
        return await self.get_job(job_id)

    async def list_jobs(
        self,
        owner: str,
        status: Union[JobStatus, str, None] = None,
        vendor_id: Optional[str] = None,
        offset: int = 0,
        limit: int = 10,
    ) -> list[CrawlJob]:
        """Job history for an owner, newest first."""
        if isinstance(status, str):
            try:
                status = JobStatus(status)
            except ValueError:
                raise ValidationError(f"Unknown job status: {status}")
        if offset < 0 or limit < 1:
            raise ValidationError("offset must be >= 0 and limit >= 1")
        return await self.store.list_by_owner(
            owner, status=status, vendor_id=vendor_id, offset=offset, limit=limit
        )

    async def shutdown(self) -> None:
        """Stop all running jobs. The session pool is left to its owner."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"Orchestrator shut down ({len(tasks)} jobs interrupted)")
