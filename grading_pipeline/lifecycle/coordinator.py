"""
Answer lifecycle coordinator.

Glues transcription completion to scoring, drives each answer through
its state machine and records the outcome of every pipeline stage.
"""

import asyncio
import logging
from collections import OrderedDict

from grading_pipeline.config import Settings, get_settings
from grading_pipeline.grading.engine import ScoringOrchestrator
from grading_pipeline.lifecycle.states import (
    AnswerState,
    InvalidTransitionError,
    can_transition,
    derive_state,
)
from grading_pipeline.models import (
    AnswerType,
    QuestionSkill,
    QueueStatus,
    RequeueItem,
    RequeueOutcome,
    RequeueSummary,
    ScoringResult,
    TranscriptionJob,
)
from grading_pipeline.storage.repository import AnswerRepository
from grading_pipeline.transcription.queue import TranscriptionQueue
from grading_pipeline.transcription.speech_client import PermanentTranscriptionError

logger = logging.getLogger(__name__)

# Settled answers and finished tasks kept in memory; older ones are derived from storage
RECENT_ANSWERS = 1000
SETTLED_STATES = frozenset({AnswerState.SCORED, AnswerState.NEEDS_REVIEW})


class AnswerLifecycleCoordinator:
    """
    Per-answer state machine over the transcription queue and the orchestrator.

    Automatic scoring runs as its own task, never awaited by whatever
    triggered it, so a scoring failure cannot undo a stored transcription.
    Each submission or transcription completion triggers at most one
    automatic scoring attempt; requeue_pending is the only way to get more.
    """

    def __init__(
        self,
        repository: AnswerRepository,
        orchestrator: ScoringOrchestrator,
        queue: TranscriptionQueue,
        settings: Settings | None = None,
    ):
        """
        Initialize the coordinator and register it as the queue's listener.

        Args:
            repository: Persistence for answers.
            orchestrator: Scoring orchestrator.
            queue: Transcription queue, shared for the process lifetime.
            settings: Configuration settings. Uses global settings if not provided.
        """
        self._settings = settings or get_settings()
        self._repository = repository
        self._orchestrator = orchestrator
        self._queue = queue
        self._states: OrderedDict[int, AnswerState] = OrderedDict()
        self._scoring_tasks: OrderedDict[int, asyncio.Task[ScoringResult | None]] = OrderedDict()

        queue.set_listener(self)

    # ==========================================================================
    # State
    # ==========================================================================

    def state_of(self, answer_id: int) -> AnswerState | None:
        """Return the in-process state of an answer, if it has one."""
        return self._states.get(answer_id)

    async def current_state(self, answer_id: int) -> AnswerState:
        """Return the answer's state, deriving it from storage when unseen."""
        state = self._states.get(answer_id)
        if state is None:
            state = derive_state(await self._repository.get_answer(answer_id))
            self._states[answer_id] = state
        return state

    def _transition(self, answer_id: int, target: AnswerState) -> None:
        current = self._states.get(answer_id, AnswerState.ANSWERED)
        if not can_transition(current, target):
            raise InvalidTransitionError(answer_id, current, target)
        self._states[answer_id] = target
        self._states.move_to_end(answer_id)
        logger.debug("Answer %s: %s -> %s", answer_id, current.value, target.value)
        if target in SETTLED_STATES:
            self._forget_settled()

    def _forget_settled(self) -> None:
        """Drop the oldest finished tasks and settled states past RECENT_ANSWERS."""
        excess = len(self._scoring_tasks) - RECENT_ANSWERS
        if excess > 0:
            finished = [aid for aid, task in self._scoring_tasks.items() if task.done()]
            for answer_id in finished[:excess]:
                del self._scoring_tasks[answer_id]

        excess = len(self._states) - RECENT_ANSWERS
        if excess > 0:
            settled = [aid for aid, state in self._states.items() if state in SETTLED_STATES]
            for answer_id in settled[:excess]:
                del self._states[answer_id]

    # ==========================================================================
    # Submission
    # ==========================================================================

    async def submit(self, answer_id: int) -> AnswerState:
        """
        Start automated grading of a freshly submitted answer.

        Audio answers are queued for transcription, or scheduled for
        scoring when already transcribed; text answers are scheduled for
        scoring. Option and JSON answers are left to the auto-grader.

        Returns:
            The answer's state after submission.

        Raises:
            InvalidTransitionError: If the answer has already entered the pipeline.
        """
        answer = await self._repository.get_answer(answer_id)
        state = await self.current_state(answer_id)

        if state == AnswerState.UNANSWERED:
            logger.info("Answer %s has no content, nothing to grade", answer_id)
            return state

        if answer.answer_type == AnswerType.AUDIO:
            if state == AnswerState.TRANSCRIBED:
                self._schedule_scoring(answer_id, QuestionSkill.SPEAKING)
            elif answer.audio_url:
                self.enqueue_transcription(answer_id, answer.audio_url)
        elif answer.answer_type == AnswerType.TEXT:
            self._schedule_scoring(answer_id, QuestionSkill.WRITING)
        else:
            logger.debug("Answer %s (%s) is not AI graded", answer_id, answer.answer_type.value)

        return self._states[answer_id]

    def enqueue_transcription(
        self, answer_id: int, audio_path: str, language: str | None = None
    ) -> str:
        """
        Queue an answer's audio for transcription.

        Returns:
            The transcription job id.
        """
        self._transition(answer_id, AnswerState.QUEUED)
        return self._queue.enqueue(answer_id, audio_path, language)

    def get_queue_status(self) -> QueueStatus:
        """Return a read-only snapshot of the transcription queue."""
        return self._queue.get_queue_status()

    async def clear_queue(self) -> int:
        """
        Drop every pending transcription job and release the dropped answers.

        Each dropped answer leaves QUEUED and gets the state its stored
        record implies, so it can be resubmitted or re-queued.

        Returns:
            Number of jobs dropped.
        """
        dropped = self._queue.clear_queue()
        for job in dropped:
            if self._states.get(job.answer_id) == AnswerState.QUEUED:
                del self._states[job.answer_id]
                state = await self.current_state(job.answer_id)
                logger.info("Answer %s released from the queue as %s", job.answer_id, state.value)
        return len(dropped)

    def _transcription_pending(self, answer_id: int) -> bool:
        return any(j.answer_id == answer_id for j in self._queue.get_queue_status().jobs)

    # ==========================================================================
    # Transcription listener
    # ==========================================================================

    def transcription_succeeded(self, job: TranscriptionJob, text: str) -> None:
        """Move the answer to TRANSCRIBED and schedule speaking scoring."""
        self._states.setdefault(job.answer_id, AnswerState.QUEUED)
        self._transition(job.answer_id, AnswerState.TRANSCRIBED)
        self._schedule_scoring(job.answer_id, QuestionSkill.SPEAKING)

    def transcription_failed(
        self, job: TranscriptionJob, error: PermanentTranscriptionError
    ) -> None:
        """Move the answer to NEEDS_REVIEW; the queue already stored the sentinel."""
        self._states.setdefault(job.answer_id, AnswerState.QUEUED)
        self._transition(job.answer_id, AnswerState.NEEDS_REVIEW)
        logger.warning("Answer %s needs review: %s", job.answer_id, error)

    # ==========================================================================
    # Scoring
    # ==========================================================================

    def _schedule_scoring(
        self, answer_id: int, skill: QuestionSkill
    ) -> asyncio.Task[ScoringResult | None]:
        """Start a background scoring task unless one is already running."""
        existing = self._scoring_tasks.get(answer_id)
        if existing is not None and not existing.done():
            logger.warning("Scoring already in progress for answer %s", answer_id)
            return existing

        self._transition(answer_id, AnswerState.SCORING)
        task = asyncio.get_running_loop().create_task(self._run_scoring(answer_id, skill))
        self._scoring_tasks[answer_id] = task
        self._scoring_tasks.move_to_end(answer_id)
        return task

    async def _run_scoring(self, answer_id: int, skill: QuestionSkill) -> ScoringResult | None:
        """Background scoring; failures end in NEEDS_REVIEW instead of raising."""
        try:
            result = await self._score(answer_id, skill)
        except Exception:
            logger.exception("Automatic scoring failed for answer %s", answer_id)
            return None
        return result

    async def _score(self, answer_id: int, skill: QuestionSkill) -> ScoringResult:
        """Score an answer already in SCORING; flag it for review on failure."""
        try:
            if skill == QuestionSkill.SPEAKING:
                result = await self._orchestrator.score_speaking(answer_id)
            else:
                result = await self._orchestrator.score_writing(answer_id)
        except Exception as e:
            await self._flag_for_review(answer_id, e)
            raise

        self._transition(answer_id, AnswerState.SCORED)
        return result

    async def _flag_for_review(self, answer_id: int, error: Exception) -> None:
        """Mark an answer for human grading, leaving its score null."""
        reason = f"AI scoring failed: {error}. Manual grading required."
        try:
            await self._repository.mark_needs_review(answer_id, reason)
        except Exception:
            logger.exception("Could not flag answer %s for review", answer_id)
        self._transition(answer_id, AnswerState.NEEDS_REVIEW)

    async def score_writing(self, answer_id: int) -> ScoringResult:
        """
        Score a written answer now and wait for the result.

        Raises:
            Whatever the orchestrator raised; the answer is flagged for review first.
        """
        return await self._score_now(answer_id, QuestionSkill.WRITING)

    async def score_speaking(self, answer_id: int) -> ScoringResult:
        """
        Score a spoken answer now, transcribing first if needed.

        Raises:
            Whatever the orchestrator raised; the answer is flagged for review first.
        """
        return await self._score_now(answer_id, QuestionSkill.SPEAKING)

    async def _score_now(self, answer_id: int, skill: QuestionSkill) -> ScoringResult:
        existing = self._scoring_tasks.get(answer_id)
        if existing is not None and not existing.done():
            result = await existing
            if result is None:
                raise RuntimeError(f"Scoring of answer {answer_id} failed")
            return result

        await self.current_state(answer_id)
        self._transition(answer_id, AnswerState.SCORING)
        return await self._score(answer_id, skill)

    async def wait_for_scoring(self, answer_id: int) -> ScoringResult | None:
        """
        Wait for the background scoring task of an answer.

        Returns:
            The result, or None if scoring failed.

        Raises:
            KeyError: If no scoring task was started for the answer.
        """
        task = self._scoring_tasks.get(answer_id)
        if task is None:
            raise KeyError(f"No scoring started for answer {answer_id}")
        return await task

    async def join(self) -> None:
        """Wait until the queue is drained and every scoring task has finished."""
        await self._queue.join()
        pending = [t for t in self._scoring_tasks.values() if not t.done()]
        if pending:
            await asyncio.wait(pending)

    # ==========================================================================
    # Administration
    # ==========================================================================

    async def requeue_pending(self, limit: int | None = None) -> RequeueSummary:
        """
        Re-run scoring for answers with no score and no AI grading time.

        Speaking answers whose transcription is still pending, or that have
        neither a transcription nor audio, are skipped. Everything else is
        scored sequentially; failures are flagged for review and tallied.

        Args:
            limit: Maximum number of answers; defaults to the configured limit.

        Returns:
            RequeueSummary with scored, failed and skipped tallies.
        """
        answers = await self._repository.find_pending(limit or self._settings.requeue_limit)
        logger.info("Re-queueing %d pending answer(s)", len(answers))

        items: list[RequeueItem] = []
        for answer in answers:
            skill = (
                QuestionSkill.SPEAKING
                if answer.answer_type == AnswerType.AUDIO
                else QuestionSkill.WRITING
            )

            if skill == QuestionSkill.SPEAKING and not answer.has_usable_transcription:
                if self._transcription_pending(answer.id):
                    items.append(self._skipped(answer.id, skill, "Transcription still in progress"))
                    continue
                if not answer.audio_url:
                    items.append(self._skipped(answer.id, skill, "No transcription or audio"))
                    continue

            try:
                result = await self._score_now(answer.id, skill)
            except Exception as e:
                logger.warning("Re-queued scoring failed for answer %s: %s", answer.id, e)
                items.append(
                    RequeueItem(
                        answer_id=answer.id,
                        outcome=RequeueOutcome.FAILED,
                        skill=skill,
                        reason=str(e),
                    )
                )
                continue

            items.append(
                RequeueItem(
                    answer_id=answer.id,
                    outcome=RequeueOutcome.SCORED,
                    skill=skill,
                    score=result.total_score,
                    max_score=result.total_max_score,
                )
            )

        summary = RequeueSummary(total_found=len(answers), items=tuple(items))
        logger.info(
            "Re-queue finished: %d scored, %d failed, %d skipped",
            summary.scored,
            summary.failed,
            summary.skipped,
        )
        return summary

    @staticmethod
    def _skipped(answer_id: int, skill: QuestionSkill, reason: str) -> RequeueItem:
        return RequeueItem(
            answer_id=answer_id, outcome=RequeueOutcome.SKIPPED, skill=skill, reason=reason
        )
