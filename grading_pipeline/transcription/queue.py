"""
In-memory transcription queue.

A FIFO of audio-to-text jobs consumed by a single asyncio worker task.
Failed jobs move to the tail and are retried until their attempt budget
is spent; then the answer is flagged for human review.

The queue is not durable: jobs live in process memory only and are lost
on restart.
"""

import asyncio
import logging
import time
from collections import OrderedDict
from typing import Callable, NamedTuple, Protocol

from grading_pipeline.config import RetryBackoffMode, Settings, get_settings
from grading_pipeline.models import (
    JobSnapshot,
    JobStatus,
    QueueStatus,
    TranscriptionJob,
)
from grading_pipeline.storage.repository import AnswerRepository
from grading_pipeline.transcription.speech_client import (
    PermanentTranscriptionError,
    SpeechToText,
    TranscriptionError,
)

logger = logging.getLogger(__name__)

# Finished outcomes kept for wait_for() after the job has left the queue
RECENT_OUTCOMES = 1000


class TranscriptionOutcome(NamedTuple):
    """Final result of a transcription job."""

    job_id: str
    answer_id: int
    attempts: int
    text: str | None = None
    error: PermanentTranscriptionError | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


class TranscriptionListener(Protocol):
    """
    Receives job completions from the worker.

    Callbacks run on the worker and must not block; anything slow is
    expected to be scheduled as a separate task.
    """

    def transcription_succeeded(self, job: TranscriptionJob, text: str) -> None: ...

    def transcription_failed(
        self, job: TranscriptionJob, error: PermanentTranscriptionError
    ) -> None: ...


class TranscriptionQueue:
    """
    Serializes audio-to-text conversion behind a single worker.

    At most one worker task runs per queue; the is_processing flag guards
    against starting a second one. All state is mutated on the event loop,
    so no locking is needed.
    """

    def __init__(
        self,
        speech: SpeechToText,
        repository: AnswerRepository,
        settings: Settings | None = None,
        listener: TranscriptionListener | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the queue.

        Args:
            speech: Speech-to-text service.
            repository: Persistence for transcription outcomes.
            settings: Configuration settings. Uses global settings if not provided.
            listener: Receiver of job completions, usually the lifecycle coordinator.
            clock: Monotonic time source used for deferred retries.
        """
        self._settings = settings or get_settings()
        self._speech = speech
        self._repository = repository
        self._listener = listener
        self._clock = clock

        self._jobs: list[TranscriptionJob] = []
        self._is_processing = False
        self._worker: asyncio.Task[None] | None = None
        self._wakeup: asyncio.Event | None = None
        self._waiters: dict[str, asyncio.Future[TranscriptionOutcome]] = {}
        self._outcomes: OrderedDict[str, TranscriptionOutcome] = OrderedDict()

    def set_listener(self, listener: TranscriptionListener | None) -> None:
        """Register the receiver of job completions."""
        self._listener = listener

    @property
    def is_processing(self) -> bool:
        return self._is_processing

    def __len__(self) -> int:
        return len(self._jobs)

    # ==========================================================================
    # Public API
    # ==========================================================================

    def enqueue(self, answer_id: int, audio_path: str, language: str | None = None) -> str:
        """
        Add a job to the tail of the queue and start the worker if idle.

        Never blocks; must be called from within a running event loop.

        Args:
            answer_id: Answer the audio belongs to.
            audio_path: Path of the recording.
            language: Spoken language; defaults to the configured language.

        Returns:
            The new job's id.
        """
        loop = asyncio.get_running_loop()
        job = TranscriptionJob(
            answer_id=answer_id,
            audio_path=audio_path,
            language=language or self._settings.transcription_language,
            max_attempts=self._settings.transcription_max_attempts,
        )
        self._jobs.append(job)
        self._waiters[job.id] = loop.create_future()
        logger.info("Queued transcription job %s for answer %s", job.id, answer_id)

        if not self._is_processing:
            self._start_worker(loop)
        elif self._wakeup is not None:
            self._wakeup.set()

        return job.id

    def get_queue_status(self) -> QueueStatus:
        """Return a read-only snapshot of the queue."""
        return QueueStatus(
            length=len(self._jobs),
            is_processing=self._is_processing,
            jobs=tuple(
                JobSnapshot(
                    id=j.id,
                    answer_id=j.answer_id,
                    attempts=j.attempts,
                    created_at=j.created_at,
                )
                for j in self._jobs
            ),
        )

    def clear_queue(self) -> list[TranscriptionJob]:
        """
        Drop every pending job and stop the worker.

        For administrative reset only. Callers waiting on dropped jobs see
        their wait cancelled.

        Returns:
            The dropped jobs, oldest first.
        """
        dropped = list(self._jobs)
        for job in dropped:
            waiter = self._waiters.pop(job.id, None)
            if waiter is not None and not waiter.done():
                waiter.cancel()
        self._jobs.clear()

        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
        self._worker = None
        self._is_processing = False

        logger.warning("Transcription queue cleared, %d job(s) dropped", len(dropped))
        return dropped

    async def wait_for(self, job_id: str) -> TranscriptionOutcome:
        """
        Wait until a job succeeds or fails permanently.

        Raises:
            KeyError: If the job is unknown or its outcome is no longer kept.
            asyncio.CancelledError: If the queue was cleared before the job finished.
        """
        if job_id in self._outcomes:
            return self._outcomes[job_id]
        waiter = self._waiters.get(job_id)
        if waiter is None:
            raise KeyError(f"Unknown transcription job: {job_id}")
        return await waiter

    async def join(self) -> None:
        """Wait until the queue is empty and the worker has stopped."""
        while self._worker is not None and not self._worker.done():
            await asyncio.wait({self._worker})

    # ==========================================================================
    # Worker
    # ==========================================================================

    def _start_worker(self, loop: asyncio.AbstractEventLoop) -> None:
        self._is_processing = True
        self._wakeup = asyncio.Event()
        self._worker = loop.create_task(self._process_queue())

    async def _process_queue(self) -> None:
        """Consume jobs until the queue is empty."""
        try:
            while self._jobs:
                job = self._next_due_job()
                if job is None:
                    await self._wait_until_due()
                    continue
                await self._process_job(job)
        finally:
            # A cancelled worker must not reset the flag of its replacement
            if self._worker is asyncio.current_task():
                self._is_processing = False

    def _next_due_job(self) -> TranscriptionJob | None:
        """Return the job to run next, or None if every job is waiting out a retry."""
        if self._settings.retry_backoff_mode == RetryBackoffMode.SLEEP:
            return self._jobs[0]

        now = self._clock()
        for job in self._jobs:
            if job.not_before <= now:
                return job
        return None

    async def _wait_until_due(self) -> None:
        """Sleep until the earliest retry is due or a new job arrives."""
        assert self._wakeup is not None
        delay = min(j.not_before for j in self._jobs) - self._clock()
        self._wakeup.clear()
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=max(delay, 0.0))
        except asyncio.TimeoutError:
            pass

    async def _process_job(self, job: TranscriptionJob) -> None:
        """Run one attempt of a job."""
        timeout = self._settings.transcription_timeout
        try:
            try:
                text = await asyncio.wait_for(
                    self._speech.transcribe(job.audio_path, job.language),
                    timeout=timeout,
                )
            except asyncio.TimeoutError as e:
                raise TranscriptionError(f"timed out after {timeout}s", job.audio_path, e) from e
            await self._repository.save_transcription(job.answer_id, text)
        except Exception as e:
            # Every failure counts against the job's budget
            await self._handle_failure(job, e)
            return

        self._jobs.remove(job)
        logger.info(
            "Transcribed answer %s (job %s, attempt %d)", job.answer_id, job.id, job.attempts + 1
        )
        self._finish(
            TranscriptionOutcome(
                job_id=job.id, answer_id=job.answer_id, attempts=job.attempts + 1, text=text
            )
        )
        if self._listener is not None:
            try:
                self._listener.transcription_succeeded(job, text)
            except Exception:
                logger.exception("Listener failed for transcribed answer %s", job.answer_id)

    async def _handle_failure(self, job: TranscriptionJob, error: Exception) -> None:
        """Count a failed attempt and either requeue the job or give up on it."""
        job.attempts += 1
        job.last_error = str(error)

        if job.exhausted:
            await self._give_up(job, error)
            return

        job.status = JobStatus.FAILED_RETRYABLE
        delay = self._settings.transcription_retry_delay
        logger.warning(
            "Transcription of answer %s failed (attempt %d/%d), retrying in %ss: %s",
            job.answer_id,
            job.attempts,
            job.max_attempts,
            delay,
            error,
        )

        self._jobs.remove(job)
        self._jobs.append(job)

        if self._settings.retry_backoff_mode == RetryBackoffMode.SLEEP:
            await asyncio.sleep(delay)
        else:
            job.not_before = self._clock() + delay

    async def _give_up(self, job: TranscriptionJob, error: Exception) -> None:
        """Remove an exhausted job and flag its answer for review."""
        job.status = JobStatus.FAILED_PERMANENT
        self._jobs.remove(job)
        permanent = PermanentTranscriptionError(job.audio_path, job.attempts, cause=error)
        logger.error(
            "Transcription of answer %s failed permanently after %d attempts: %s",
            job.answer_id,
            job.attempts,
            error,
        )

        diagnostic = (
            f"Speech could not be converted to text after {job.attempts} attempts. "
            f"Manual grading required. Last error: {error}"
        )
        try:
            await self._repository.mark_transcription_failed(job.answer_id, diagnostic)
        except Exception:
            logger.exception("Could not flag answer %s for review", job.answer_id)

        self._finish(
            TranscriptionOutcome(
                job_id=job.id, answer_id=job.answer_id, attempts=job.attempts, error=permanent
            )
        )
        if self._listener is not None:
            try:
                self._listener.transcription_failed(job, permanent)
            except Exception:
                logger.exception("Listener failed for answer %s", job.answer_id)

    def _finish(self, outcome: TranscriptionOutcome) -> None:
        """Record a job's outcome and release anyone waiting on it."""
        self._outcomes[outcome.job_id] = outcome
        while len(self._outcomes) > RECENT_OUTCOMES:
            self._outcomes.popitem(last=False)

        waiter = self._waiters.pop(outcome.job_id, None)
        if waiter is not None and not waiter.done():
            waiter.set_result(outcome)
