"""Recording session state machine (IDLE -> CAPTURING -> FINALIZING -> IDLE)."""

from voiceprov.recording.session import CaptureController, CaptureListener, RecordingSession

__all__ = ["CaptureController", "CaptureListener", "RecordingSession"]
