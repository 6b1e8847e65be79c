from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional, Protocol

from src.voicedoc.config import settings
from src.voicedoc.domain.errors import CaptureFailure, PermissionDenied

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[bytes], None]
ErrorCallback = Callable[[BaseException], None]


class CaptureDevice(Protocol):
    """An acquired capture device.

    While started and not paused, the device hands audio chunks to
    ``on_chunk``. Mid-recording device errors are reported through
    ``on_error``.
    """

    content_type: str

    def start(self, on_chunk: ChunkCallback, on_error: ErrorCallback) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def pause(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def resume(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def stop(self) -> None:  # pragma: no cover - interface
        """Stop capture, flushing any buffered audio through ``on_chunk``."""
        raise NotImplementedError

    def abort(self) -> None:  # pragma: no cover - interface
        """Stop capture immediately, discarding anything not yet delivered."""
        raise NotImplementedError


class CaptureDeviceProvider(Protocol):
    async def acquire(self) -> CaptureDevice:  # pragma: no cover - interface
        """Request capture permission and return a device, or raise PermissionDenied."""
        raise NotImplementedError

    def release(self, device: CaptureDevice) -> None:  # pragma: no cover - interface
        raise NotImplementedError


class StreamedCaptureDevice:
    """Capture device fed by a remote client.

    Browser and mobile clients own the actual microphone and push encoded
    chunks to the API; this device only forwards them to the controller while
    it is actively recording.
    """

    def __init__(self, content_type: str | None = None) -> None:
        self.content_type = content_type or settings.audio_content_type
        self._on_chunk: Optional[ChunkCallback] = None
        self._on_error: Optional[ErrorCallback] = None
        self._paused = False
        self._closed = False

    @property
    def active(self) -> bool:
        return self._on_chunk is not None and not self._closed

    def start(self, on_chunk: ChunkCallback, on_error: ErrorCallback) -> None:
        self._on_chunk = on_chunk
        self._on_error = on_error
        self._paused = False

    def pause(self) -> None:
        self._paused = True

    def resume(self) -> None:
        self._paused = False

    async def stop(self) -> None:
        self._on_chunk = None

    def abort(self) -> None:
        self._on_chunk = None

    def close(self) -> None:
        self._closed = True
        self._on_chunk = None
        self._on_error = None

    def feed(self, chunk: bytes) -> bool:
        """Forward one chunk; returns False when the chunk was dropped."""

        if not chunk or not self.active or self._paused:
            return False
        assert self._on_chunk is not None
        self._on_chunk(chunk)
        return True

    def fail(self, message: str) -> None:
        """Report a client-side device error (e.g. the browser lost the mic)."""

        if self._on_error is not None:
            self._on_error(CaptureFailure(message))


class StreamedCaptureDeviceProvider:
    """Provider for client-streamed audio.

    Permission is decided on the client; ``permission_granted`` lets the
    client report a refusal so the engine follows the same denial path as a
    local microphone.
    """

    def __init__(self, *, content_type: str | None = None) -> None:
        self._content_type = content_type
        self.permission_granted = True
        self.device: Optional[StreamedCaptureDevice] = None
        self.release_count = 0

    async def acquire(self) -> StreamedCaptureDevice:
        if not self.permission_granted:
            raise PermissionDenied()
        self.device = StreamedCaptureDevice(self._content_type)
        return self.device

    def release(self, device: CaptureDevice) -> None:
        if isinstance(device, StreamedCaptureDevice):
            device.close()
        if self.device is device:
            self.device = None
        self.release_count += 1


class SoundDeviceCaptureDevice:
    """Local microphone capture via the `sounddevice` library (raw 16-bit PCM)."""

    def __init__(self, sd, *, sample_rate: int, channels: int) -> None:  # pragma: no cover - hardware
        self.content_type = f"audio/L16;rate={sample_rate};channels={channels}"
        self._sd = sd
        self._sample_rate = sample_rate
        self._channels = channels
        self._stream = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def start(self, on_chunk: ChunkCallback, on_error: ErrorCallback) -> None:  # pragma: no cover - hardware
        self._loop = asyncio.get_running_loop()
        loop = self._loop

        def _callback(indata, frames, time_info, status) -> None:
            if status:
                loop.call_soon_threadsafe(on_error, CaptureFailure(f"sounddevice status: {status}"))
                return
            loop.call_soon_threadsafe(on_chunk, bytes(indata))

        self._stream = self._sd.RawInputStream(
            samplerate=self._sample_rate,
            channels=self._channels,
            dtype="int16",
            callback=_callback,
        )
        self._stream.start()

    def pause(self) -> None:  # pragma: no cover - hardware
        if self._stream is not None:
            self._stream.stop()

    def resume(self) -> None:  # pragma: no cover - hardware
        if self._stream is not None:
            self._stream.start()

    async def stop(self) -> None:  # pragma: no cover - hardware
        if self._stream is not None:
            self._stream.stop()
        # Let callbacks already scheduled on the loop deliver their chunks.
        await asyncio.sleep(0)

    def abort(self) -> None:  # pragma: no cover - hardware
        if self._stream is not None:
            self._stream.abort()

    def close(self) -> None:  # pragma: no cover - hardware
        if self._stream is not None:
            self._stream.close()
            self._stream = None


class SoundDeviceCaptureProvider:
    """Provider backed by the host microphone.

    Requires the `sounddevice` package (``pip install sounddevice``). A host
    without an input device is treated as a permission denial.
    """

    def __init__(self, *, sample_rate: int = 16000, channels: int = 1) -> None:  # pragma: no cover - hardware
        self._sample_rate = sample_rate
        self._channels = channels

    async def acquire(self) -> SoundDeviceCaptureDevice:  # pragma: no cover - hardware
        try:
            import sounddevice as sd  # type: ignore
        except ImportError as exc:
            raise RuntimeError(
                "SoundDeviceCaptureProvider requires the 'sounddevice' package. "
                "Install it with 'pip install sounddevice'"
            ) from exc
        try:
            sd.query_devices(kind="input")
        except Exception as exc:
            raise PermissionDenied("No usable input device", {"cause": str(exc)}) from exc
        return SoundDeviceCaptureDevice(sd, sample_rate=self._sample_rate, channels=self._channels)

    def release(self, device: CaptureDevice) -> None:  # pragma: no cover - hardware
        if isinstance(device, SoundDeviceCaptureDevice):
            device.close()
