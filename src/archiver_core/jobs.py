"""Store jobs: bind a stream subject to a bucket/prefix and keep it archived.

Each configured :class:`StoreJob` gets one :class:`StoreJobRunner` running in
its own thread. A runner moves through::

    starting -> reconciling -> running <-> retrying -> stopped_fatal | stopped_shutdown

Per job the order is strict: fetch -> frame chunk -> upload or skip ->
save checkpoint -> ack. The checkpoint never advances past a chunk whose
upload has not been confirmed, so a crash at any point is recovered by
re-reading from the last checkpoint; duplicate deliveries are absorbed by
content keys.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Set, TypeVar

from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from .checkpoint import Checkpoint, CheckpointStore
from .chunk import Chunk, Codec, DecodingError, EncodingError, content_keys, key
from .metrics import (
    ARCHIVER_CHUNKS_SKIPPED_TOTAL,
    ARCHIVER_JOB_FAILURES_TOTAL,
    ARCHIVER_JOB_RETRIES_TOTAL,
    ARCHIVER_JOB_STATE,
)
from .object_store import ObjectStoreClient, StorageError, normalize_prefix
from .source import Message, MessageSource, SourceUnavailable

logger = logging.getLogger(__name__)

_T = TypeVar("_T")

DEFAULT_POLL_TIMEOUT_SECONDS = 1.0
DEFAULT_SHUTDOWN_TIMEOUT_SECONDS = 30.0


class JobState(str, Enum):
    STARTING = "starting"
    RECONCILING = "reconciling"
    RUNNING = "running"
    RETRYING = "retrying"
    STOPPED_FATAL = "stopped_fatal"
    STOPPED_SHUTDOWN = "stopped_shutdown"

    @property
    def is_terminal(self) -> bool:
        return self in {JobState.STOPPED_FATAL, JobState.STOPPED_SHUTDOWN}


class JobFatalError(Exception):
    """A store job stopped because of a non-retryable or exhausted failure."""

    def __init__(self, job: str, cause: BaseException) -> None:
        super().__init__(f"Store job {job!r} failed: {cause}")
        self.job = job
        self.cause = cause


class _ShutdownRequested(Exception):
    pass


@dataclass(frozen=True)
class StoreJob:
    """Configured binding of a stream subject to a destination bucket/prefix and codec."""

    name: str
    subject: str
    bucket: str
    prefix: str = ""
    codec: Codec = Codec.RAW
    batch: int = 1
    reconcile: bool = True

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "StoreJob":
        try:
            subject = str(raw["subject"])
            bucket = str(raw["bucket"])
        except KeyError as exc:
            raise ValueError(f"Store job is missing required key {exc.args[0]!r}") from exc
        name = str(raw.get("name") or subject)
        codec = Codec.parse(raw.get("codec", Codec.RAW.value))
        batch = int(raw.get("batch", 1))
        reconcile = parse_bool(raw.get("reconcile", True))

        if not name:
            raise ValueError("Store job name must be a non-empty string")
        if not subject or not bucket:
            raise ValueError(f"Store job {name!r} needs a non-empty subject and bucket")
        if batch <= 0:
            raise ValueError(f"Store job {name!r}: batch must be positive")

        return cls(
            name=name,
            subject=subject,
            bucket=bucket,
            prefix=str(raw.get("prefix", "")),
            codec=codec,
            batch=batch,
            reconcile=reconcile,
        )


@dataclass(frozen=True)
class RetrySettings:
    """Exponential backoff for transient failures: ``initial * 2**n`` capped at ``maximum``."""

    attempts: int = 8
    initial: float = 0.5
    maximum: float = 30.0

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "RetrySettings":
        attempts = int(raw.get("attempts", 8))
        initial = float(raw.get("initial", 0.5))
        maximum = float(raw.get("maximum", 30.0))
        if attempts < 1:
            raise ValueError("retry attempts must be at least 1")
        if initial < 0 or maximum < 0:
            raise ValueError("retry delays must be non-negative")
        return cls(attempts=attempts, initial=initial, maximum=maximum)


@dataclass
class JobStats:
    uploaded: int = 0
    skipped: int = 0
    acked: int = 0
    redelivered: int = 0
    retries: int = 0
    last_paths: List[str] = field(default_factory=list)


def parse_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, StorageError):
        return exc.transient
    return isinstance(exc, (SourceUnavailable, TimeoutError))


class StoreJobRunner:
    """Synchronization loop for a single store job."""

    def __init__(
        self,
        job: StoreJob,
        source: MessageSource,
        client: ObjectStoreClient,
        checkpoints: CheckpointStore,
        *,
        retry: RetrySettings | None = None,
        poll_timeout: float = DEFAULT_POLL_TIMEOUT_SECONDS,
        stop_event: threading.Event | None = None,
    ) -> None:
        self.job = job
        self._source = source
        self._client = client
        self._checkpoints = checkpoints
        self._retry = retry or RetrySettings()
        self._poll_timeout = poll_timeout
        self._stop = stop_event or threading.Event()
        self._prefix = normalize_prefix(job.prefix)
        self._known: Set[str] = set()
        self._checkpoint = Checkpoint(job=job.name)
        self._started = False
        self.state = JobState.STARTING
        self.error: JobFatalError | None = None
        self.stats = JobStats()
        ARCHIVER_JOB_STATE.labels(job=job.name, state=self.state.value).set(1)

    @property
    def checkpoint(self) -> Checkpoint:
        return self._checkpoint

    @property
    def known_keys(self) -> Set[str]:
        return set(self._known)

    def run(self, stop_event: threading.Event | None = None) -> JobState:
        """Run until shutdown or a fatal error; never raises."""

        if stop_event is not None:
            self._stop = stop_event
        try:
            self.start()
            while not self._stop.is_set():
                self.run_once()
            self._set_state(JobState.STOPPED_SHUTDOWN)
        except _ShutdownRequested:
            self._set_state(JobState.STOPPED_SHUTDOWN)
        except Exception as exc:
            self._fail(exc)
        if self.state is JobState.STOPPED_SHUTDOWN:
            logger.info("Store job stopped job=%s checkpoint=%d", self.job.name, self._checkpoint.sequence)
        return self.state

    def start(self) -> None:
        """Ensure the destination bucket, seed known keys and load the checkpoint."""

        if self._started:
            return
        logger.info(
            "Starting store job job=%s subject=%s bucket=%s prefix=%s codec=%s batch=%d",
            self.job.name,
            self.job.subject,
            self.job.bucket,
            self._prefix,
            self.job.codec.value,
            self.job.batch,
        )
        self._call_with_retry(lambda: self._client.ensure_bucket(self.job.bucket, True))

        if self.job.reconcile:
            self._set_state(JobState.RECONCILING)
            paths = self._call_with_retry(lambda: self._client.list_paths(self.job.bucket, self._prefix))
            self._known.update(content_keys(paths))
            logger.info(
                "Reconciled store job job=%s listed=%d known_chunks=%d",
                self.job.name,
                len(paths),
                len(self._known),
            )

        self._checkpoint = self._call_with_retry(lambda: self._checkpoints.load(self.job.name))
        self._started = True
        self._set_state(JobState.RUNNING)

    def run_once(self) -> int:
        """Fetch one batch from the source and archive it; return the number of new messages."""

        self.start()
        messages = self._call_with_retry(
            lambda: self._source.fetch(self.job.subject, self.job.batch, self._poll_timeout)
        )
        if not messages:
            return 0

        fresh = sorted(
            (m for m in messages if not self._checkpoint.covers(m.sequence)),
            key=lambda m: m.sequence,
        )
        stale = [m for m in messages if self._checkpoint.covers(m.sequence)]
        if stale:
            # Already archived before the last checkpoint; only the ack was lost.
            self._call_with_retry(lambda: self._source.ack(stale))
            self.stats.redelivered += len(stale)
            logger.debug("Acked redelivered messages job=%s count=%d", self.job.name, len(stale))

        for start in range(0, len(fresh), self.job.batch):
            if self._stop.is_set():
                raise _ShutdownRequested()
            self._archive(fresh[start : start + self.job.batch])
        return len(fresh)

    def _archive(self, group: Sequence[Message]) -> None:
        chunk = Chunk.from_messages(self.job.subject, [(m.sequence, m.data) for m in group])
        content_key = key(chunk, self.job.codec)

        if content_key in self._known:
            self.stats.skipped += 1
            ARCHIVER_CHUNKS_SKIPPED_TOTAL.labels(job=self.job.name).inc()
            logger.debug("Chunk already stored job=%s key=%s", self.job.name, content_key)
        else:
            path = self._call_with_retry(
                lambda: self._client.upload_chunk(chunk, self.job.bucket, self._prefix, self.job.codec)
            )
            self._known.add(content_key)
            self.stats.uploaded += 1
            self.stats.last_paths.append(path)

        advanced = Checkpoint(job=self.job.name, sequence=max(chunk.last_sequence, self._checkpoint.sequence))
        self._call_with_retry(lambda: self._checkpoints.save(advanced))
        self._checkpoint = advanced
        self._call_with_retry(lambda: self._source.ack(group))
        self.stats.acked += len(group)

    def _call_with_retry(self, func: Callable[[], _T]) -> _T:
        retrying = Retrying(
            retry=retry_if_exception(is_transient),
            wait=wait_exponential(multiplier=self._retry.initial, max=self._retry.maximum),
            stop=stop_after_attempt(self._retry.attempts),
            sleep=self._sleep,
            before_sleep=self._before_sleep,
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                result = func()
            if not attempt.retry_state.outcome.failed and self.state is JobState.RETRYING:
                self._set_state(JobState.RUNNING)
        return result

    def _sleep(self, seconds: float) -> None:
        if self._stop.wait(seconds):
            raise _ShutdownRequested()

    def _before_sleep(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        self.stats.retries += 1
        ARCHIVER_JOB_RETRIES_TOTAL.labels(job=self.job.name).inc()
        if self.state is not JobState.RETRYING and self._started:
            self._set_state(JobState.RETRYING)
        logger.warning(
            "Transient failure, retrying job=%s attempt=%d delay=%.2fs error=%s",
            self.job.name,
            retry_state.attempt_number,
            retry_state.next_action.sleep if retry_state.next_action else 0.0,
            exc,
        )

    def _set_state(self, state: JobState) -> None:
        if state is self.state:
            return
        ARCHIVER_JOB_STATE.labels(job=self.job.name, state=self.state.value).set(0)
        ARCHIVER_JOB_STATE.labels(job=self.job.name, state=state.value).set(1)
        logger.debug("Store job state job=%s from=%s to=%s", self.job.name, self.state.value, state.value)
        self.state = state

    def _fail(self, exc: Exception) -> None:
        self.error = JobFatalError(self.job.name, exc)
        reason = _failure_reason(exc)
        ARCHIVER_JOB_FAILURES_TOTAL.labels(job=self.job.name, reason=reason).inc()
        self._set_state(JobState.STOPPED_FATAL)
        logger.error(
            "Store job stopped on fatal error job=%s reason=%s checkpoint=%d error=%s",
            self.job.name,
            reason,
            self._checkpoint.sequence,
            exc,
            exc_info=exc,
        )


def _failure_reason(exc: BaseException) -> str:
    if isinstance(exc, StorageError):
        return "storage_exhausted" if exc.transient else "storage"
    if isinstance(exc, (EncodingError, DecodingError)):
        return "codec"
    if isinstance(exc, SourceUnavailable):
        return "source"
    return "unexpected"


SourceFactory = Callable[[StoreJob], MessageSource]
CheckpointFactory = Callable[[StoreJob], CheckpointStore]


class JobSupervisor:
    """Runs one thread per store job; a failing job never stops its siblings."""

    def __init__(
        self,
        jobs: Sequence[StoreJob],
        client: ObjectStoreClient,
        source_factory: SourceFactory,
        checkpoint_factory: CheckpointFactory,
        *,
        retry: RetrySettings | None = None,
        poll_timeout: float = DEFAULT_POLL_TIMEOUT_SECONDS,
    ) -> None:
        self._stop = threading.Event()
        self._runners: List[StoreJobRunner] = [
            StoreJobRunner(
                job,
                source_factory(job),
                client,
                checkpoint_factory(job),
                retry=retry,
                poll_timeout=poll_timeout,
                stop_event=self._stop,
            )
            for job in jobs
        ]
        self._threads: List[threading.Thread] = []

    @property
    def runners(self) -> List[StoreJobRunner]:
        return list(self._runners)

    def start(self) -> None:
        if self._threads:
            return
        for runner in self._runners:
            thread = threading.Thread(
                target=runner.run,
                args=(self._stop,),
                name=f"store-job-{runner.job.name}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)
        logger.info("Started store jobs count=%d", len(self._threads))

    def stop(self, timeout: float = DEFAULT_SHUTDOWN_TIMEOUT_SECONDS) -> Dict[str, JobState]:
        """Signal every job to stop after its in-flight chunk and wait up to ``timeout``."""

        self._stop.set()
        return self.wait(timeout)

    def wait(self, timeout: Optional[float] = None) -> Dict[str, JobState]:
        for thread in self._threads:
            thread.join(timeout)
            if thread.is_alive():
                logger.warning("Store job did not stop in time thread=%s", thread.name)
        return {runner.job.name: runner.state for runner in self._runners}

    def failures(self) -> List[JobFatalError]:
        return [runner.error for runner in self._runners if runner.error is not None]
