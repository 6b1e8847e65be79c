from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional

from src.voicedoc.config import settings
from src.voicedoc.domain.errors import (
    CaptureFailure,
    InvalidTransition,
    PermissionDenied,
    SessionEngineError,
)
from src.voicedoc.domain.models.audio_artifact import AudioArtifact, RecordingState
from src.voicedoc.services.capture.devices import CaptureDevice, CaptureDeviceProvider

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class AudioCaptureController:
    """Recording state machine for a single session.

    ``idle -> requesting-permission -> recording <-> paused -> finalizing -> idle``

    The controller exclusively owns the acquired capture device and the
    elapsed-time ticker. Both are released or cancelled on every exit path:
    finish, reset, permission denial and device failure.
    """

    def __init__(
        self,
        provider: CaptureDeviceProvider,
        *,
        max_duration_seconds: Optional[int] = None,
        tick_seconds: Optional[float] = None,
        sleep: Optional[Sleep] = None,
        on_artifact: Optional[Callable[[AudioArtifact], None]] = None,
        on_failure: Optional[Callable[[SessionEngineError], None]] = None,
    ) -> None:
        self._provider = provider
        self._max_duration = max_duration_seconds if max_duration_seconds is not None else settings.max_recording_seconds
        if self._max_duration <= 0:
            raise ValueError("max_duration_seconds must be positive")
        self._tick_seconds = tick_seconds if tick_seconds is not None else settings.recording_tick_seconds
        self._sleep: Sleep = sleep or asyncio.sleep
        self.on_artifact = on_artifact
        self.on_failure = on_failure

        self._state = RecordingState.IDLE
        self._device: Optional[CaptureDevice] = None
        self._chunks: List[bytes] = []
        self._elapsed = 0
        self._ticker: Optional[asyncio.Task] = None
        # Bumped by every reset/abort so suspended operations can tell they
        # belong to an attempt that no longer exists.
        self._attempt = 0

    @property
    def state(self) -> RecordingState:
        return self._state

    @property
    def elapsed_seconds(self) -> int:
        return self._elapsed

    @property
    def max_duration_seconds(self) -> int:
        return self._max_duration

    @property
    def buffered_bytes(self) -> int:
        return sum(len(chunk) for chunk in self._chunks)

    async def begin(self) -> None:
        if self._state != RecordingState.IDLE:
            raise InvalidTransition("begin recording", self._state.value)

        self._attempt += 1
        attempt = self._attempt
        self._state = RecordingState.REQUESTING_PERMISSION
        try:
            device = await self._provider.acquire()
        except PermissionDenied:
            if attempt == self._attempt:
                self._state = RecordingState.IDLE
            logger.info("Capture permission denied")
            raise
        except Exception as exc:
            if attempt == self._attempt:
                self._state = RecordingState.IDLE
            raise CaptureFailure(f"Could not open capture device: {exc}") from exc

        if attempt != self._attempt:
            # Reset while the permission prompt was open.
            self._provider.release(device)
            return

        self._device = device
        self._chunks = []
        self._elapsed = 0
        self._state = RecordingState.RECORDING
        try:
            device.start(self._handle_chunk, self._handle_device_error)
        except Exception as exc:
            self._abort()
            raise CaptureFailure(f"Could not start capture: {exc}") from exc

        self._start_ticker()
        logger.info("Recording started (max %ss)", self._max_duration)

    def pause(self) -> None:
        if self._state != RecordingState.RECORDING:
            raise InvalidTransition("pause recording", self._state.value)
        self._require_device("pause recording").pause()
        self._cancel_ticker()
        self._state = RecordingState.PAUSED

    def resume(self) -> None:
        if self._state != RecordingState.PAUSED:
            raise InvalidTransition("resume recording", self._state.value)
        self._require_device("resume recording").resume()
        self._state = RecordingState.RECORDING
        self._start_ticker()

    async def finish(self) -> Optional[AudioArtifact]:
        """Finalize the recording and emit its artifact.

        Returns None when the attempt was reset while finalizing.
        """

        if self._state not in {RecordingState.RECORDING, RecordingState.PAUSED}:
            raise InvalidTransition("finish recording", self._state.value)

        attempt = self._attempt
        device = self._require_device("finish recording")
        self._state = RecordingState.FINALIZING
        self._cancel_ticker()
        duration = self._elapsed

        try:
            await device.stop()
            if attempt != self._attempt:
                logger.info("Recording reset during finalization; audio discarded")
                return None
            artifact = AudioArtifact(
                payload=b"".join(self._chunks),
                content_type=device.content_type,
                duration_seconds=duration,
                created_at=datetime.now(timezone.utc),
            )
        except Exception as exc:
            if attempt != self._attempt:
                return None
            raise CaptureFailure(f"Failed to finalize recording: {exc}") from exc
        finally:
            if attempt == self._attempt:
                self._release_device()
                self._chunks = []
                self._state = RecordingState.IDLE

        logger.info("Recording finished: %ss, %s bytes", artifact.duration_seconds, artifact.size_bytes)
        if self.on_artifact is not None:
            self.on_artifact(artifact)
        return artifact

    def reset(self) -> None:
        if self._state == RecordingState.IDLE and self._device is None:
            self._chunks = []
            self._elapsed = 0
            return
        logger.info("Recording reset from %s", self._state.value)
        self._abort()

    # Internals

    def _require_device(self, action: str) -> CaptureDevice:
        if self._device is None:
            raise InvalidTransition(action, "no capture device is held")
        return self._device

    def _handle_chunk(self, chunk: bytes) -> None:
        if self._state in {RecordingState.RECORDING, RecordingState.FINALIZING}:
            self._chunks.append(chunk)

    def _handle_device_error(self, exc: BaseException) -> None:
        if self._state not in {RecordingState.RECORDING, RecordingState.PAUSED, RecordingState.FINALIZING}:
            return
        failure = exc if isinstance(exc, CaptureFailure) else CaptureFailure(f"Capture device error: {exc}")
        logger.warning("Recording aborted: %s", failure)
        self._abort()
        if self.on_failure is not None:
            self.on_failure(failure)

    def _abort(self) -> None:
        self._attempt += 1
        self._cancel_ticker()
        device = self._device
        if device is not None:
            try:
                device.abort()
            except Exception:
                logger.exception("Capture device abort failed")
        self._release_device()
        self._chunks = []
        self._elapsed = 0
        self._state = RecordingState.IDLE

    def _release_device(self) -> None:
        device, self._device = self._device, None
        if device is None:
            return
        try:
            self._provider.release(device)
        except Exception:
            logger.exception("Capture device release failed")

    def _start_ticker(self) -> None:
        self._cancel_ticker()
        self._ticker = asyncio.create_task(self._run_ticker())

    def _cancel_ticker(self) -> None:
        ticker, self._ticker = self._ticker, None
        # The ticker itself calls finish() at the cap; it must not cancel
        # itself mid-finalization.
        if ticker is not None and ticker is not asyncio.current_task():
            ticker.cancel()

    async def _run_ticker(self) -> None:
        try:
            while True:
                await self._sleep(self._tick_seconds)
                if self._state != RecordingState.RECORDING:
                    return
                self._elapsed = min(self._elapsed + 1, self._max_duration)
                if self._elapsed >= self._max_duration:
                    logger.info("Maximum recording duration reached; finishing")
                    await self.finish()
                    return
        except SessionEngineError as exc:
            logger.warning("Automatic finish failed: %s", exc)
            if self.on_failure is not None:
                self.on_failure(exc)
