"""Recording session state machine -- one capture request at a time.

The session sits between whatever triggers listening (a button, a wake-word
engine, an ExpectSpeech directive) and the audio controller that records and
streams the request. It guarantees that two capture requests never overlap:

==============  ==========  ==========  =====================================
From            Trigger     To          Side effect
==============  ==========  ==========  =====================================
IDLE            activate    CAPTURING   ``begin_capture`` with fresh callbacks
CAPTURING       activate    FINALIZING  ``stop_capture``; request completes
CAPTURING       complete    IDLE        ``stop_capture`` then processing finished
FINALIZING      complete    IDLE        processing finished
CAPTURING       error       IDLE        ``stop_capture``, surface error, finished
FINALIZING      error       IDLE        surface error, processing finished
FINALIZING      activate    --          rejected
==============  ==========  ==========  =====================================

A completion that arrives while still CAPTURING means the service answered
before the user stopped talking. The session then does what a second
activation would have done (stop the capture) and finishes in the same step,
so the machine never waits for a stop that will not come.

Transitions are decided under a lock; controller calls happen outside it so
a controller that reports completion synchronously cannot deadlock the
session. ``begin_capture`` and the ``stop_capture`` of an activation are
ordered by a second, reentrant lock, so a stop never overtakes the start
it belongs to. Callbacks belonging to an earlier request are ignored.
"""

from __future__ import annotations

import enum
import logging
import threading
from typing import Callable, Optional, Protocol

from voiceprov.exceptions import CaptureRequestError
from voiceprov.models import RecordingState

logger = logging.getLogger(__name__)


class CaptureListener(Protocol):
    """Callbacks the audio controller invokes when a capture request ends."""

    def on_request_success(self) -> None:
        ...

    def on_request_error(self, error: BaseException) -> None:
        ...


class CaptureController(Protocol):
    """The audio/controller collaborator driven by :class:`RecordingSession`."""

    def begin_capture(
        self, rms_callback: Callable[[int], None], listener: CaptureListener
    ) -> None:
        ...

    def stop_capture(self) -> None:
        ...

    def is_speaking(self) -> bool:
        ...

    def processing_finished(self) -> None:
        ...

    def on_user_activity(self) -> None:
        ...


class _Trigger(str, enum.Enum):
    ACTIVATE = "activate"
    COMPLETE = "complete"
    ERROR = "error"


_TRANSITIONS: dict[tuple[RecordingState, _Trigger], RecordingState] = {
    (RecordingState.IDLE, _Trigger.ACTIVATE): RecordingState.CAPTURING,
    (RecordingState.CAPTURING, _Trigger.ACTIVATE): RecordingState.FINALIZING,
    (RecordingState.CAPTURING, _Trigger.COMPLETE): RecordingState.IDLE,
    (RecordingState.FINALIZING, _Trigger.COMPLETE): RecordingState.IDLE,
    (RecordingState.CAPTURING, _Trigger.ERROR): RecordingState.IDLE,
    (RecordingState.FINALIZING, _Trigger.ERROR): RecordingState.IDLE,
}


class _RequestCallbacks:
    """Binds controller callbacks to one capture request."""

    def __init__(self, session: "RecordingSession", request_id: int) -> None:
        self._session = session
        self._request_id = request_id

    def on_request_success(self) -> None:
        self._session._complete(self._request_id)

    def on_request_error(self, error: BaseException) -> None:
        self._session._fail(self._request_id, error)


class RecordingSession:
    """Serializes user-initiated capture requests against an audio controller.

    Args:
        controller: The audio collaborator.
        on_error: Receives a :class:`~voiceprov.exceptions.CaptureRequestError`
            whenever a request fails; the session has already reset to IDLE.
        on_processing_finished: Called each time a request finishes, after
            ``controller.processing_finished()``.
        on_level: Receives microphone RMS levels while capturing.
    """

    def __init__(
        self,
        controller: CaptureController,
        on_error: Optional[Callable[[CaptureRequestError], None]] = None,
        on_processing_finished: Optional[Callable[[], None]] = None,
        on_level: Optional[Callable[[int], None]] = None,
    ) -> None:
        self._controller = controller
        self._on_error = on_error
        self._on_processing_finished = on_processing_finished
        self._on_level = on_level
        self._lock = threading.Lock()
        self._capture_lock = threading.RLock()
        self._state = RecordingState.IDLE
        self._request_id = 0

    @property
    def state(self) -> RecordingState:
        with self._lock:
            return self._state

    def activate(self) -> bool:
        """Start capturing when idle, or stop the current capture.

        Returns:
            ``True`` if the trigger caused a transition, ``False`` if it was
            rejected (activation while FINALIZING).
        """
        self._controller.on_user_activity()
        with self._lock:
            current = self._state
            target = _TRANSITIONS.get((current, _Trigger.ACTIVATE))
            if target is None:
                logger.debug("Activation ignored while %s", current.value)
                return False
            self._state = target
            if target == RecordingState.CAPTURING:
                self._request_id += 1
            request_id = self._request_id

        # A stop issued while begin_capture is still running waits for it.
        with self._capture_lock:
            if target == RecordingState.CAPTURING:
                logger.debug("Starting capture request %d", request_id)
                try:
                    self._controller.begin_capture(
                        self.rms_changed, _RequestCallbacks(self, request_id)
                    )
                except Exception as exc:
                    self._fail(request_id, exc)
                    return False
                return True

            with self._lock:
                still_finalizing = (
                    request_id == self._request_id
                    and self._state == RecordingState.FINALIZING
                )
            if still_finalizing:
                logger.debug("Stopping capture so the request can complete")
                self._controller.stop_capture()
        return True

    def on_wake_word_detected(self) -> bool:
        logger.info("Wake word was detected")
        return self.activate()

    def expect_speech(self, poll_interval: float = 0.5) -> threading.Thread:
        """Open the microphone once the device has finished speaking.

        Waits on a background thread until ``controller.is_speaking()`` turns
        false, then activates.
        """

        def _wait_then_listen() -> None:
            while self._controller.is_speaking():
                threading.Event().wait(poll_interval)
            self.activate()

        thread = threading.Thread(
            target=_wait_then_listen, name="voiceprov-expect-speech", daemon=True
        )
        thread.start()
        return thread

    def rms_changed(self, rms: int) -> None:
        if self._on_level is not None:
            self._on_level(rms)

    # ------------------------------------------------------------------
    # Controller callbacks
    # ------------------------------------------------------------------

    def _transition(self, request_id: int, trigger: _Trigger) -> Optional[RecordingState]:
        """Apply *trigger* for *request_id*; return the previous state, or None if stale."""
        with self._lock:
            if request_id != self._request_id:
                logger.debug("Ignoring %s for stale request %d", trigger.value, request_id)
                return None
            previous = self._state
            target = _TRANSITIONS.get((previous, trigger))
            if target is None:
                logger.debug("Ignoring %s while %s", trigger.value, previous.value)
                return None
            self._state = target
            return previous

    def _complete(self, request_id: int) -> None:
        previous = self._transition(request_id, _Trigger.COMPLETE)
        if previous is None:
            return
        if previous == RecordingState.CAPTURING:
            # The response beat the stop trigger.
            logger.debug("Response received before capture was stopped")
            self._controller.stop_capture()
        self._finish()

    def _fail(self, request_id: int, cause: BaseException) -> None:
        previous = self._transition(request_id, _Trigger.ERROR)
        if previous is None:
            return
        if previous == RecordingState.CAPTURING:
            try:
                self._controller.stop_capture()
            except Exception:
                logger.exception("Failed to stop capture after request error")
        error = CaptureRequestError(f"An error occurred creating speech request: {cause}", cause)
        logger.error("%s", error)
        if self._on_error is not None:
            self._on_error(error)
        self._finish()

    def _finish(self) -> None:
        self._controller.processing_finished()
        if self._on_processing_finished is not None:
            self._on_processing_finished()
