# statement_analyzer/pipeline.py
import asyncio
import logging
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Sequence, TypeVar

from . import config
from .errors import DocumentError, NotBankStatementError, StagingError
from .extract import build_jobs, load_document, partition_pages
from .llm import TextGenerationClient, extract_chunk
from .logic import aggregate_chunks
from .retry import FailureKind, call_with_retry, classify_failure
from .schema import (
    Document,
    ErrorEvent,
    ExtractionJob,
    ProgressEvent,
    RawChunkResult,
    ResultEvent,
    StatementReport,
    StreamEvent,
)
from .storage import BlobStore

logger = logging.getLogger("statement-analyzer.pipeline")

T = TypeVar("T")
ProgressCallback = Callable[[int, int], None]

NO_CREDITS_MESSAGE = (
    "I couldn't find any credit transactions in the document provided. "
    "Please confirm that it is a bank statement and try again."
)
GENERIC_MESSAGE = "Something went wrong while processing your document. Please try again."
FRIENDLY_MESSAGES = {
    FailureKind.RATE_LIMITED: "The AI service is currently reaching its limit. Please wait about 30 seconds and try again.",
    FailureKind.OVERLOADED: "The AI service is currently busy processing many requests. Please try again in about 10 seconds.",
    FailureKind.TIMEOUT: "The request took too long to complete. Please try again or upload a shorter statement.",
}


def user_message(exc: BaseException) -> str:
    """The only text about a failure that reaches the end user."""
    if isinstance(exc, (NotBankStatementError, DocumentError, StagingError)):
        return str(exc)
    return FRIENDLY_MESSAGES.get(classify_failure(exc), GENERIC_MESSAGE)


# -------- Progress --------

class ProgressTracker:
    """Cumulative pages completed; reported values never go backwards or past total."""

    def __init__(self, total: int, callback: Optional[ProgressCallback] = None):
        self.total = total
        self.completed = 0
        self._callback = callback

    def _emit(self) -> None:
        if self._callback:
            self._callback(self.completed, self.total)

    def start(self) -> None:
        self._emit()
        self._log()

    def pages_done(self, pages: int) -> None:
        for _ in range(pages):
            if self.completed >= self.total:
                break
            self.completed += 1
            self._emit()
        self._log()

    def _log(self) -> None:
        total = self.total or 1
        pct = int(self.completed * 100 / total)
        bar_len = 30
        filled = int(bar_len * pct / 100)
        bar = "█" * filled + " " * (bar_len - filled)
        logger.info(f"[{pct:3d}%] |{bar}| pages {self.completed}/{self.total}")


# -------- Scheduling --------

async def run_jobs(
    jobs: Sequence[ExtractionJob],
    worker: Callable[[ExtractionJob], Awaitable[T]],
    *,
    concurrency: int = 2,
    on_complete: Optional[Callable[[ExtractionJob], None]] = None,
) -> List[Optional[T]]:
    """
    Run jobs through at most `concurrency` lanes pulling from one queue.
    Results land at each job's chunk index. After the first failure no lane
    takes a new job; once every lane has settled that failure is raised.
    """
    queue: asyncio.Queue = asyncio.Queue()
    for job in jobs:
        queue.put_nowait(job)
    results: List[Optional[T]] = [None] * len(jobs)
    failed = asyncio.Event()
    # failures in the order they happened
    errors: List[BaseException] = []

    async def lane() -> None:
        while not failed.is_set():
            try:
                job = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            try:
                results[job.range.index] = await worker(job)
            except Exception as e:
                errors.append(e)
                failed.set()
                return
            if on_complete:
                on_complete(job)

    lanes = [asyncio.create_task(lane()) for _ in range(min(concurrency, len(jobs)))]
    await asyncio.gather(*lanes)
    if errors:
        raise errors[0]
    return results


# -------- Pipeline --------

async def analyze_statement(
    document: Document,
    client: TextGenerationClient,
    on_progress: Optional[ProgressCallback] = None,
    *,
    chunk_size: int = config.CHUNK_SIZE,
    concurrency: int = config.CONCURRENCY_LIMIT,
    max_retries: int = config.MAX_RETRIES,
    backoff_step: float = config.RETRY_BACKOFF_SECONDS,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> StatementReport:
    """
    Extract and aggregate credit transactions from a loaded document. The
    copy staged with the text-generation service is released on every path.
    """
    jobs = build_jobs(partition_pages(document.page_count, chunk_size))
    progress = ProgressTracker(document.page_count, on_progress)
    progress.start()
    logger.info("Prepared %d chunk(s) for %d page(s) of %s", len(jobs), document.page_count, document.filename)

    staged = await client.stage_document(document)
    try:
        async def worker(job: ExtractionJob) -> RawChunkResult:
            return await call_with_retry(
                lambda: extract_chunk(client, job, staged),
                label=job.range.label,
                max_retries=max_retries,
                backoff_step=backoff_step,
                sleep=sleep,
            )

        results = await run_jobs(
            jobs,
            worker,
            concurrency=concurrency,
            on_complete=lambda job: progress.pages_done(job.range.pages),
        )
    finally:
        try:
            await client.release(staged)
        except Exception:
            logger.exception("Failed to release staged document %s", staged.remote_name)

    report = aggregate_chunks(results)
    logger.info(
        "Extracted %d credit transaction(s) totalling %.2f from %s",
        len(report.transactions), report.total_credits, document.filename,
    )
    return report


async def analyze_staged_statement(
    url: str,
    store: BlobStore,
    client: TextGenerationClient,
    on_progress: Optional[ProgressCallback] = None,
    **options,
) -> StatementReport:
    """Fetch a staged upload, analyse it, and always delete it from the store."""
    try:
        content, filename = await store.fetch(url)
        document = await asyncio.to_thread(load_document, content, filename)
        return await analyze_statement(document, client, on_progress, **options)
    finally:
        try:
            await store.delete(url)
        except Exception:
            logger.exception("Failed to delete staged blob %s", url)


async def stream_statement_events(
    url: str,
    store: BlobStore,
    client: TextGenerationClient,
    **options,
) -> AsyncIterator[StreamEvent]:
    """
    Progress events as they happen, then exactly one result or error event.
    """
    events: asyncio.Queue = asyncio.Queue()
    done = object()

    def on_progress(current: int, total: int) -> None:
        events.put_nowait(ProgressEvent(current=current, total=total))

    async def run() -> StatementReport:
        try:
            return await analyze_staged_statement(url, store, client, on_progress, **options)
        finally:
            events.put_nowait(done)

    task = asyncio.create_task(run())
    try:
        while True:
            item = await events.get()
            if item is done:
                break
            yield item

        try:
            report = task.result()
        except Exception as e:
            logger.exception("Statement analysis failed for %s", url)
            yield ErrorEvent(error=user_message(e))
            return
        if not report.transactions:
            yield ErrorEvent(error=NO_CREDITS_MESSAGE)
        else:
            yield ResultEvent(data=report)
    finally:
        if not task.done():
            # consumer went away; cleanup still runs inside the task
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
