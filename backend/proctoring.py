"""
Expert Evaluator - Proctoring
Face-verification state machine, violation audit sink and polling loop.

Per tick:
  ┌──────────────────┬────────────────┬───────────────────────────────┐
  │ Detector output  │ Status         │ Violation                     │
  ├──────────────────┼────────────────┼───────────────────────────────┤
  │ 0 faces          │ no_face        │ no_face        (warning)      │
  │ > 1 faces        │ multiple_faces │ multiple_faces (critical)     │
  │ 1 face, d <  thr │ verified       │ none (streak reset)           │
  │ 1 face, d >= thr │ mismatch       │ face_mismatch  (critical)     │
  └──────────────────┴────────────────┴───────────────────────────────┘

A violation raised within the cool-down window of the previously
dispatched one (any type) is suppressed: not logged, not dispatched,
not counted.  A dispatched critical violation pauses the assessment until
resume() is called; a later verified tick does not lift the pause.
"""

import asyncio
import functools
import inspect
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence

from backend.database import ProctoringLog
from backend.face_verifier import FACE_MATCH_THRESHOLD, euclidean_distance

logger = logging.getLogger(__name__)

VIOLATION_COOLDOWN_SEC = float(os.getenv("VIOLATION_COOLDOWN_SEC", "5"))
PROCTOR_INTERVAL_SEC   = float(os.getenv("PROCTOR_INTERVAL_SEC", "2"))
MONITOR_IDLE_TTL_SEC   = float(os.getenv("MONITOR_IDLE_TTL_SEC", "3600"))


class VerificationStatus(str, Enum):
    VERIFYING      = "verifying"
    VERIFIED       = "verified"
    NO_FACE        = "no_face"
    MULTIPLE_FACES = "multiple_faces"
    MISMATCH       = "mismatch"


class Severity(str, Enum):
    WARNING  = "warning"
    CRITICAL = "critical"


EVENT_NO_FACE        = "no_face"
EVENT_MULTIPLE_FACES = "multiple_faces"
EVENT_FACE_MISMATCH  = "face_mismatch"

STATUS_MESSAGES = {
    VerificationStatus.VERIFYING:      "Verifying identity...",
    VerificationStatus.VERIFIED:       "Identity verified",
    VerificationStatus.NO_FACE:        "No face detected",
    VerificationStatus.MULTIPLE_FACES: "Multiple faces detected!",
    VerificationStatus.MISMATCH:       "Face mismatch detected!",
}


@dataclass
class Violation:
    event_type: str
    severity: Severity
    details: dict = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.utcnow)


@dataclass
class TickResult:
    status: VerificationStatus
    face_count: Optional[int] = None
    distance: Optional[float] = None
    violation: Optional[Violation] = None     # dispatched this tick
    suppressed: Optional[Violation] = None    # raised but inside cool-down
    paused: bool = False
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "message": STATUS_MESSAGES[self.status],
            "face_count": self.face_count,
            "distance": self.distance,
            "violation": (
                {"event_type": self.violation.event_type, "severity": self.violation.severity.value}
                if self.violation else None
            ),
            "suppressed": self.suppressed is not None,
            "paused": self.paused,
            "error": self.error,
        }


def _descriptor_of(detection):
    return getattr(detection, "descriptor", detection)


# ─────────────────────────────────────────────────────────
# State machine
# ─────────────────────────────────────────────────────────

class ProctoringMonitor:
    """
    Pure state machine; performs no I/O of its own.

    reference_descriptor : registered face descriptor
    comparator           : (a, b) -> distance
    clock                : monotonic seconds, injectable for tests
    sink                 : called with each dispatched Violation
    """

    def __init__(
        self,
        reference_descriptor: Sequence[float],
        comparator: Callable = euclidean_distance,
        threshold: float = FACE_MATCH_THRESHOLD,
        cooldown_sec: float = VIOLATION_COOLDOWN_SEC,
        clock: Callable[[], float] = time.monotonic,
        sink: Optional[Callable[[Violation], None]] = None,
    ):
        self.reference = list(reference_descriptor)
        self.comparator = comparator
        self.threshold = threshold
        self.cooldown_sec = cooldown_sec
        self._clock = clock
        self._sink = sink
        self._lock = threading.Lock()

        self.status = VerificationStatus.VERIFYING
        self.paused = False
        self.violation_count = 0        # streak since last verified tick
        self.total_violations = 0
        self._last_violation_at: Optional[float] = None

    # ── transitions ──────────────────────────────────────

    def process(self, detections: Sequence) -> TickResult:
        with self._lock:
            count = len(detections)

            if count == 0:
                self.status = VerificationStatus.NO_FACE
                return self._violate(EVENT_NO_FACE, Severity.WARNING,
                                     {"message": "No face detected"}, face_count=0)

            if count > 1:
                self.status = VerificationStatus.MULTIPLE_FACES
                return self._violate(EVENT_MULTIPLE_FACES, Severity.CRITICAL,
                                     {"count": count}, face_count=count)

            distance = float(self.comparator(self.reference, _descriptor_of(detections[0])))
            if distance < self.threshold:
                self.status = VerificationStatus.VERIFIED
                self.violation_count = 0
                return TickResult(status=self.status, face_count=1, distance=distance, paused=self.paused)

            self.status = VerificationStatus.MISMATCH
            return self._violate(EVENT_FACE_MISMATCH, Severity.CRITICAL,
                                 {"distance": distance}, face_count=1, distance=distance)

    def _violate(self, event_type, severity, details, face_count=None, distance=None) -> TickResult:
        violation = Violation(event_type=event_type, severity=severity, details=details)
        now = self._clock()

        if self._last_violation_at is not None and now - self._last_violation_at < self.cooldown_sec:
            return TickResult(status=self.status, face_count=face_count, distance=distance,
                              suppressed=violation, paused=self.paused)

        self._last_violation_at = now
        self.violation_count += 1
        self.total_violations += 1
        if severity is Severity.CRITICAL:
            self.paused = True

        if self._sink is not None:
            self._sink(violation)

        logger.info("Proctoring violation dispatched: %s (%s)", event_type, severity.value)
        return TickResult(status=self.status, face_count=face_count, distance=distance,
                          violation=violation, paused=self.paused)

    def tick(self, frame, detector: Callable) -> TickResult:
        """Run the detector on one frame and apply the result."""
        try:
            detections = detector(frame)
        except Exception as e:
            logger.error("Verification error: %s", e, exc_info=True)
            return TickResult(status=self.status, paused=self.paused, error=str(e))
        return self.process(detections)

    def resume(self) -> None:
        """User acknowledged the pause prompt."""
        with self._lock:
            self.paused = False

    def snapshot(self) -> dict:
        return {
            "status": self.status.value,
            "message": STATUS_MESSAGES[self.status],
            "paused": self.paused,
            "violation_count": self.violation_count,
            "total_violations": self.total_violations,
        }


# ─────────────────────────────────────────────────────────
# Audit sink
# ─────────────────────────────────────────────────────────

class ProctorEventSink:
    """
    Appends each dispatched violation to proctoring_logs.
    Fire-and-forget: a failed write is logged, never raised.
    """

    def __init__(self, session_factory):
        self._session_factory = session_factory

    def bind(self, assessment_id: str, user_id: str) -> Callable[[Violation], bool]:
        """Callable suitable as ProctoringMonitor(sink=...)."""
        return functools.partial(self.record, assessment_id, user_id)

    def record(self, assessment_id: str, user_id: str, violation: Violation) -> bool:
        db = None
        try:
            db = self._session_factory()
            db.add(ProctoringLog(
                assessment_id=assessment_id,
                user_id=user_id,
                event_type=violation.event_type,
                severity=violation.severity.value,
                details=violation.details,
                timestamp=violation.timestamp,
            ))
            db.commit()
            return True
        except Exception as e:
            logger.error("Error logging proctor event %s: %s", violation.event_type, e, exc_info=True)
            if db is not None:
                db.rollback()
            return False
        finally:
            if db is not None:
                db.close()


# ─────────────────────────────────────────────────────────
# Polling loop
# ─────────────────────────────────────────────────────────

class ProctoringLoop:
    """
    Samples a frame every `interval` seconds and feeds the monitor.

    frame_source : () -> frame | None  (sync or async)
    detector     : second argument of monitor.tick(frame, detector); the
                   tick runs in the default executor
    load_models  : optional; called once by start(). If it raises
                   FaceModelUnavailable the loop never starts.
    """

    def __init__(
        self,
        monitor: ProctoringMonitor,
        frame_source: Callable,
        detector: Callable,
        interval: float = PROCTOR_INTERVAL_SEC,
        load_models: Optional[Callable] = None,
        on_tick: Optional[Callable[[TickResult], None]] = None,
    ):
        self.monitor = monitor
        self.frame_source = frame_source
        self.detector = detector
        self.interval = interval
        self._load_models = load_models
        self._on_tick = on_tick
        self._task: Optional[asyncio.Task] = None
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        if self._load_models is not None:
            self._load_models()
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

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    async def _read_frame(self):
        frame = self.frame_source()
        if inspect.isawaitable(frame):
            frame = await frame
        return frame

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            await asyncio.sleep(self.interval)
            frame = await self._read_frame()
            if frame is None:
                continue
            result = await loop.run_in_executor(None, self.monitor.tick, frame, self.detector)
            self.ticks += 1
            if self._on_tick is not None:
                self._on_tick(result)


# ─────────────────────────────────────────────────────────
# Registry (one monitor per assessment, in-process)
# ─────────────────────────────────────────────────────────

class MonitorRegistry:
    """
    One monitor per in-progress assessment. Monitors untouched for
    `idle_ttl_sec` are dropped on the next access, unless paused: a paused
    monitor is kept until resumed or discarded so the pause cannot be
    shed by waiting.
    """

    def __init__(self, idle_ttl_sec: float = MONITOR_IDLE_TTL_SEC,
                 clock: Callable[[], float] = time.monotonic):
        self.idle_ttl_sec = idle_ttl_sec
        self._clock = clock
        self._monitors: Dict[str, ProctoringMonitor] = {}
        self._touched: Dict[str, float] = {}
        self._lock = threading.Lock()

    def _prune_locked(self, now: float) -> None:
        expired = [
            aid for aid, at in self._touched.items()
            if now - at > self.idle_ttl_sec and not self._monitors[aid].paused
        ]
        for aid in expired:
            del self._monitors[aid]
            del self._touched[aid]
        if expired:
            logger.info("Dropped %d idle proctoring monitor(s)", len(expired))

    def _store_locked(self, assessment_id: str, monitor: ProctoringMonitor, now: float) -> None:
        self._monitors[assessment_id] = monitor
        self._touched[assessment_id] = now

    def get(self, assessment_id: str) -> Optional[ProctoringMonitor]:
        with self._lock:
            now = self._clock()
            self._prune_locked(now)
            monitor = self._monitors.get(assessment_id)
            if monitor is not None:
                self._touched[assessment_id] = now
            return monitor

    def get_or_create(self, assessment_id: str, factory: Callable[[], ProctoringMonitor]) -> ProctoringMonitor:
        with self._lock:
            now = self._clock()
            self._prune_locked(now)
            monitor = self._monitors.get(assessment_id)
            if monitor is None:
                monitor = factory()
            self._store_locked(assessment_id, monitor, now)
            return monitor

    def replace(self, assessment_id: str, monitor: ProctoringMonitor) -> None:
        with self._lock:
            now = self._clock()
            self._prune_locked(now)
            self._store_locked(assessment_id, monitor, now)

    def discard(self, assessment_id: str) -> None:
        with self._lock:
            self._monitors.pop(assessment_id, None)
            self._touched.pop(assessment_id, None)

    def is_paused(self, assessment_id: str) -> bool:
        monitor = self.get(assessment_id)
        return bool(monitor and monitor.paused)

    def active_ids(self) -> List[str]:
        with self._lock:
            self._prune_locked(self._clock())
            return list(self._monitors)
