"""Microphone capture: fixed-size 16 kHz PCM frames for the realtime transport."""
from __future__ import annotations

import asyncio
import base64
import logging
import threading
from typing import Any, Callable, Optional

import numpy as np

logger = logging.getLogger(__name__)

CAPTURE_SAMPLE_RATE = 16_000
CAPTURE_FRAME_SIZE = 4096
CAPTURE_MIME_TYPE = f"audio/pcm;rate={CAPTURE_SAMPLE_RATE}"

FrameCallback = Callable[[str], None]
StreamFactory = Callable[..., Any]


class CaptureFailedError(RuntimeError):
    """The input device could not be acquired (no device, permission denied)."""


def float_to_pcm16(samples: np.ndarray) -> bytes:
    """Convert float samples in [-1, 1] to 16-bit signed little-endian PCM.

    Samples are scaled by 32767, rounded to nearest and clamped, so 1.0 maps to
    32767 and -1.0 to -32767.
    """
    scaled = np.rint(np.asarray(samples, dtype=np.float64) * 32767.0)
    clipped = np.clip(scaled, -32768, 32767)
    return clipped.astype("<i2").tobytes()


def encode_frame(samples: np.ndarray) -> str:
    """PCM-encode a frame and wrap it in base64 for the transport."""
    return base64.b64encode(float_to_pcm16(samples)).decode("ascii")


class FrameAccumulator:
    """Partition a continuous sample stream into frames of exactly ``frame_size``."""

    def __init__(self, frame_size: int = CAPTURE_FRAME_SIZE) -> None:
        if frame_size <= 0:
            raise ValueError("frame_size must be positive")
        self.frame_size = frame_size
        self._pending = np.zeros(0, dtype=np.float32)

    @property
    def pending(self) -> int:
        return int(self._pending.size)

    def push(self, samples: np.ndarray) -> list[np.ndarray]:
        chunk = np.asarray(samples, dtype=np.float32).reshape(-1)
        buffered = np.concatenate((self._pending, chunk)) if self._pending.size else chunk
        complete = buffered.size // self.frame_size
        frames = [
            buffered[i * self.frame_size:(i + 1) * self.frame_size].copy()
            for i in range(complete)
        ]
        self._pending = buffered[complete * self.frame_size:].copy()
        return frames

    def reset(self) -> None:
        self._pending = np.zeros(0, dtype=np.float32)


def _default_stream_factory(**kwargs: Any) -> Any:
    import sounddevice as sd

    return sd.InputStream(**kwargs)


class AudioCapturePipeline:
    """Turn a live microphone stream into base64 PCM frames.

    PortAudio invokes the stream callback on its own thread; frames are encoded
    there and handed to the event loop with ``call_soon_threadsafe`` so
    ``on_frame`` always runs on the loop thread, in arrival order.
    """

    def __init__(
        self,
        on_frame: FrameCallback,
        *,
        sample_rate: int = CAPTURE_SAMPLE_RATE,
        frame_size: int = CAPTURE_FRAME_SIZE,
        device: Optional[int | str] = None,
        stream_factory: Optional[StreamFactory] = None,
    ) -> None:
        self._on_frame = on_frame
        self.sample_rate = sample_rate
        self.frame_size = frame_size
        self.device = device
        self._stream_factory = stream_factory or _default_stream_factory
        self._accumulator = FrameAccumulator(frame_size)
        self._lock = threading.Lock()
        self._stream: Any = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._running = False
        self.frames_emitted = 0

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Acquire the microphone and start emitting frames.

        Either the stream is open and running when this returns, or
        ``CaptureFailedError`` is raised and nothing was emitted.
        """
        if self._running:
            return
        self._loop = asyncio.get_running_loop()
        self._accumulator.reset()
        try:
            stream = await self._loop.run_in_executor(None, self._open_stream)
        except Exception as exc:
            logger.error("Microphone unavailable: %s", exc)
            raise CaptureFailedError(str(exc) or exc.__class__.__name__) from exc
        with self._lock:
            self._stream = stream
            self._running = True
        logger.info(
            "Capture started (rate=%d, frame=%d, device=%s)",
            self.sample_rate,
            self.frame_size,
            self.device,
        )

    def _open_stream(self) -> Any:
        stream = self._stream_factory(
            samplerate=self.sample_rate,
            channels=1,
            dtype="float32",
            blocksize=self.frame_size,
            device=self.device,
            callback=self._callback,
        )
        try:
            stream.start()
        except Exception:
            stream.close()
            raise
        return stream

    def _callback(self, indata: np.ndarray, frames: int, time_info: Any, status: Any) -> None:
        if status:
            logger.debug("Input stream status: %s", status)
        with self._lock:
            if not self._running or self._loop is None:
                return
            mono = indata[:, 0] if indata.ndim > 1 else indata
            if self._loop.is_closed():
                return
            for frame in self._accumulator.push(mono):
                self._loop.call_soon_threadsafe(self._emit, encode_frame(frame))

    def _emit(self, payload: str) -> None:
        if not self._running:
            return
        self.frames_emitted += 1
        self._on_frame(payload)

    def stop(self) -> None:
        """Stop and release the input stream. Safe to call more than once."""
        with self._lock:
            stream = self._stream
            self._stream = None
            was_running = self._running
            self._running = False
            self._accumulator.reset()
        if stream is None:
            return
        try:
            stream.stop()
        finally:
            stream.close()
        if was_running:
            logger.info("Capture stopped after %d frames", self.frames_emitted)
