"""
Expert Evaluator - Live Proctoring Client
Keeps the question screen's face check running on a timer.

  webcam (streamlit-webrtc) → FrameBuffer → ProctoringLoop → RemoteMonitor
      → POST /assessments/{id}/proctoring/frame  every PROCTOR_INTERVAL_SEC

Streamlit reruns the page script from scratch, so the loop lives on its
own daemon thread with a private asyncio event loop. The page reads
RemoteMonitor.snapshot() on every rerun.
"""

import asyncio
import io
import logging
import threading
import time
from typing import Callable, Optional

import numpy as np
import requests
from PIL import Image

from backend.proctoring import PROCTOR_INTERVAL_SEC, ProctoringLoop, VerificationStatus

logger = logging.getLogger(__name__)

JPEG_QUALITY = 80


def encode_jpeg(frame: np.ndarray) -> bytes:
    """RGB ndarray → JPEG bytes."""
    buf = io.BytesIO()
    Image.fromarray(np.asarray(frame, dtype=np.uint8)).save(buf, format="JPEG", quality=JPEG_QUALITY)
    return buf.getvalue()


class FrameBuffer:
    """Latest webcam frame; written by the WebRTC worker, read by the loop."""

    def __init__(self):
        self._frame: Optional[np.ndarray] = None
        self._lock = threading.Lock()

    def put(self, frame: np.ndarray) -> None:
        with self._lock:
            self._frame = frame

    def take(self) -> Optional[np.ndarray]:
        """Latest frame, at most once; None until a newer one arrives."""
        with self._lock:
            frame, self._frame = self._frame, None
            return frame

    def clear(self) -> None:
        with self._lock:
            self._frame = None


class RemoteMonitor:
    """
    Client-side mirror of the server's ProctoringMonitor.

    post_frame : jpeg bytes -> response dict of /proctoring/frame
    Each tick forwards one frame; the server owns the state machine and
    this object only remembers the last answer.
    """

    def __init__(self, post_frame: Callable[[bytes], dict],
                 clock: Callable[[], float] = time.monotonic):
        self._post_frame = post_frame
        self._clock = clock
        self._lock = threading.Lock()
        self.status = VerificationStatus.VERIFYING.value
        self.paused = False
        self.error: Optional[str] = None
        self.ticks = 0
        self._last_tick_at: Optional[float] = None

    def tick(self, frame, encoder: Callable = encode_jpeg) -> dict:
        try:
            result = self._post_frame(encoder(frame))
        except requests.RequestException as e:
            logger.error("Proctoring frame upload failed: %s", e, exc_info=True)
            with self._lock:
                self.error = str(e)
                self.ticks += 1
                self._last_tick_at = self._clock()
            return {"status": self.status, "paused": self.paused, "error": str(e)}

        with self._lock:
            self.status = result.get("status", self.status)
            self.paused = bool(result.get("paused", self.paused))
            self.error = result.get("error")
            self.ticks += 1
            self._last_tick_at = self._clock()
        return result

    def resume(self) -> None:
        with self._lock:
            self.paused = False

    def is_live(self, max_age: float) -> bool:
        """Last tick succeeded, said verified, and is no older than max_age."""
        with self._lock:
            if self._last_tick_at is None or self.error:
                return False
            fresh = self._clock() - self._last_tick_at <= max_age
            return fresh and self.status == VerificationStatus.VERIFIED.value

    def snapshot(self) -> dict:
        with self._lock:
            return {"status": self.status, "paused": self.paused,
                    "error": self.error, "ticks": self.ticks}


class LiveProctor:
    """Runs a ProctoringLoop over a RemoteMonitor on a background thread."""

    def __init__(self, post_frame: Callable[[bytes], dict], frames: FrameBuffer,
                 interval: float = PROCTOR_INTERVAL_SEC,
                 clock: Callable[[], float] = time.monotonic,
                 assessment_id: Optional[str] = None):
        self.assessment_id = assessment_id
        self.frames = frames
        self.interval = interval
        self.monitor = RemoteMonitor(post_frame, clock=clock)
        self._thread: Optional[threading.Thread] = None
        self._event_loop: Optional[asyncio.AbstractEventLoop] = None
        self._stopping: Optional[asyncio.Event] = None
        self._ready = threading.Event()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._ready.clear()
        self._thread = threading.Thread(target=self._run, name="live-proctor", daemon=True)
        self._thread.start()
        self._ready.wait(timeout=5)

    def stop(self, timeout: float = 5.0) -> None:
        thread, self._thread = self._thread, None
        if thread is None:
            return
        if self._event_loop is not None and self._stopping is not None:
            self._event_loop.call_soon_threadsafe(self._stopping.set)
        thread.join(timeout)

    def is_live(self) -> bool:
        # three missed polls and the check counts as lost
        return self.running and self.monitor.is_live(max_age=3 * self.interval)

    def _run(self) -> None:
        try:
            asyncio.run(self._main())
        finally:
            self._event_loop = None

    async def _main(self) -> None:
        self._event_loop = asyncio.get_running_loop()
        self._stopping = asyncio.Event()
        loop = ProctoringLoop(self.monitor, self.frames.take, encode_jpeg, interval=self.interval)
        async with loop:
            self._ready.set()
            await self._stopping.wait()
        logger.info("Live proctoring stopped after %d ticks", loop.ticks)
