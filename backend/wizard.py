"""
Expert Evaluator - Assessment Wizard
Step routing and the per-question rules of the assessment flow.

  UPLOAD → PERMISSIONS → QUESTIONS → COMPLETE → RESULT

guard() decides which step may actually be shown; QuestionPhase owns the
selection / countdown / advance rules of the QUESTIONS step. Both are
UI-agnostic: the Streamlit dashboard drives them.
"""

import asyncio
import logging
from enum import Enum
from typing import Callable, Optional

from backend.assessment_store import QUESTION_TIME_LIMIT, AssessmentStore, StoredQuestion
from backend.proctoring import VerificationStatus

logger = logging.getLogger(__name__)


class Step(str, Enum):
    AUTH        = "auth"
    UPLOAD      = "upload"
    PERMISSIONS = "permissions"
    QUESTIONS   = "questions"
    COMPLETE    = "complete"
    RESULT      = "result"


class SelectionBlocked(RuntimeError):
    """An option was picked while proctoring blocks answering."""


class NoOptionSelected(ValueError):
    """Manual advance with nothing selected."""


def guard(step: Step, store: AssessmentStore, authenticated: bool,
          assessment_id: Optional[str] = None) -> Step:
    """
    Return the step that should be rendered when `step` is requested.
    A missing precondition redirects to the earliest step that supplies it.
    """
    if not authenticated:
        return Step.AUTH

    if step in (Step.PERMISSIONS, Step.QUESTIONS) and not store.uploaded_files:
        return Step.UPLOAD

    if step is Step.QUESTIONS:
        if not store.permissions.get("camera") or not store.face_embedding:
            return Step.PERMISSIONS

    if step is Step.COMPLETE and not store.current_assessment_id:
        return Step.UPLOAD

    if step is Step.RESULT and not (assessment_id or store.current_assessment_id):
        return Step.UPLOAD

    return step


# ─────────────────────────────────────────────────────────
# Question screen
# ─────────────────────────────────────────────────────────

class QuestionPhase:
    """
    submit_answer(question, answer) persists one answer; if it raises, the
    phase does not advance.
    """

    def __init__(
        self,
        store: AssessmentStore,
        submit_answer: Callable[[StoredQuestion, str], None],
        time_limit: int = QUESTION_TIME_LIMIT,
        reset_timer: bool = True,
    ):
        self.store = store
        self.submit_answer = submit_answer
        self.time_limit = time_limit
        self.selected: Optional[str] = None
        self.paused = False
        self.monitoring_valid = False
        if reset_timer:
            self.store.set_time_remaining(time_limit)

    @property
    def question(self) -> Optional[StoredQuestion]:
        return self.store.current_question

    @property
    def complete(self) -> bool:
        return self.store.is_assessment_complete

    @property
    def blocked(self) -> bool:
        return self.paused or not self.monitoring_valid

    # ── proctoring feedback ──────────────────────────────

    def apply_proctoring(self, status, paused: bool) -> None:
        self.monitoring_valid = VerificationStatus(status) is VerificationStatus.VERIFIED
        self.paused = bool(paused)

    def resume(self) -> None:
        self.paused = False
        self.monitoring_valid = True

    # ── user actions ─────────────────────────────────────

    def select(self, option: str) -> None:
        if self.blocked:
            raise SelectionBlocked("Cannot select answer - monitoring violation detected")
        question = self.question
        if question is None:
            raise ValueError("No active question")
        if option not in question.options:
            raise ValueError(f"Unknown option: {option!r}")
        self.selected = option

    def advance(self, auto: bool = False) -> None:
        question = self.question
        if question is None or self.complete:
            return
        if self.selected is None and not auto:
            raise NoOptionSelected("Select an answer before continuing")

        index = self.store.current_question_index
        if self.selected is not None:
            self.submit_answer(question, self.selected)
            self.store.set_user_answer(index, self.selected)

        self.selected = None
        if index < len(self.store.questions) - 1:
            self.store.set_current_question_index(index + 1)
            self.store.set_time_remaining(self.time_limit)
        else:
            self.store.set_assessment_complete(True)
            logger.info("Assessment %s: last question answered", self.store.current_assessment_id)

    def tick(self) -> None:
        if self.complete or self.question is None:
            return
        remaining = self.store.time_remaining - 1
        if remaining > 0:
            self.store.set_time_remaining(remaining)
            return
        self.store.set_time_remaining(0)
        logger.info("Question %d timed out", self.store.current_question_index + 1)
        self.advance(auto=True)


# ─────────────────────────────────────────────────────────
# Timers
# ─────────────────────────────────────────────────────────

class CountdownTimer:
    """Calls phase.tick() every `interval` seconds until stopped or complete."""

    def __init__(self, phase: QuestionPhase, interval: float = 1.0):
        self.phase = phase
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if not self.running:
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def wait(self) -> None:
        if self._task is not None:
            await self._task

    async def _run(self) -> None:
        while not self.phase.complete:
            await asyncio.sleep(self.interval)
            self.phase.tick()


async def run_session(phase: QuestionPhase, proctoring_loop) -> None:
    """
    Run the countdown and the proctoring loop together until the phase
    completes. Both are stopped on the way out, whatever the exit path.
    """
    timer = CountdownTimer(phase)
    await proctoring_loop.start()
    try:
        await timer.start()
        await timer.wait()
    finally:
        await timer.stop()
        await proctoring_loop.stop()
