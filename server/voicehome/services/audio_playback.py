"""Decoding and gapless scheduling of the assistant's 24 kHz speech."""
from __future__ import annotations

import base64
import binascii
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

import numpy as np

logger = logging.getLogger(__name__)

PLAYBACK_SAMPLE_RATE = 24_000


class DecodeError(ValueError):
    """Inbound audio payload could not be turned into PCM."""


class PlaybackUnavailableError(RuntimeError):
    """The output device could not be opened."""


@dataclass(frozen=True)
class AudioBuffer:
    samples: np.ndarray
    sample_rate: int = PLAYBACK_SAMPLE_RATE

    @property
    def duration(self) -> float:
        return self.samples.size / float(self.sample_rate)


def decode_audio_payload(data: str, sample_rate: int = PLAYBACK_SAMPLE_RATE) -> AudioBuffer:
    """Decode a base64 16-bit little-endian PCM payload into a playable buffer."""
    try:
        raw = base64.b64decode(data, validate=True)
    except (binascii.Error, TypeError, ValueError) as exc:
        raise DecodeError(f"invalid base64 audio payload: {exc}") from exc
    if len(raw) % 2:
        raise DecodeError(f"PCM16 payload has odd length {len(raw)}")
    pcm = np.frombuffer(raw, dtype="<i2")
    return AudioBuffer(samples=pcm.astype(np.float32) / 32768.0, sample_rate=sample_rate)


class OutputClock(Protocol):
    """Output device exposing its playback clock in seconds."""

    @property
    def current_time(self) -> float: ...

    def start_node(self, samples: np.ndarray, start_at: float) -> None: ...

    def close(self) -> None: ...


class PlaybackScheduler:
    """Schedule decoded buffers back to back on a shared output clock.

    ``next_start`` only moves forward while a session is active: each buffer
    starts at ``max(now, next_start)`` so it never lands in the past and never
    leaves a gap behind a buffer that is still pending.
    """

    def __init__(self, clock: OutputClock) -> None:
        self._clock = clock
        self.next_start = 0.0

    def schedule(self, buffer: AudioBuffer) -> float:
        start_at = max(self._clock.current_time, self.next_start)
        self._clock.start_node(buffer.samples, start_at)
        self.next_start = start_at + buffer.duration
        return start_at

    def reset(self) -> None:
        self.next_start = 0.0


class _PlaybackNode:
    __slots__ = ("start_frame", "samples")

    def __init__(self, start_frame: int, samples: np.ndarray) -> None:
        self.start_frame = start_frame
        self.samples = samples

    @property
    def end_frame(self) -> int:
        return self.start_frame + self.samples.size


def _default_output_stream(**kwargs: Any) -> Any:
    import sounddevice as sd

    return sd.OutputStream(**kwargs)


class SoundDeviceOutputClock:
    """Sample-accurate output clock backed by a sounddevice callback stream.

    Clock time is the number of frames rendered so far divided by the sample
    rate. Every scheduled buffer gets its own node; the callback mixes the nodes
    overlapping the current block and drops the ones that have finished.
    """

    def __init__(
        self,
        *,
        sample_rate: int = PLAYBACK_SAMPLE_RATE,
        device: Optional[int | str] = None,
        blocksize: int = 1024,
        stream_factory: Optional[Callable[..., Any]] = None,
    ) -> None:
        self.sample_rate = sample_rate
        self._lock = threading.Lock()
        self._nodes: list[_PlaybackNode] = []
        self._frames_rendered = 0
        self._closed = False
        factory = stream_factory or _default_output_stream
        try:
            self._stream = factory(
                samplerate=sample_rate,
                channels=1,
                dtype="float32",
                blocksize=blocksize,
                device=device,
                callback=self._callback,
            )
            self._stream.start()
        except Exception as exc:
            logger.error("Audio output unavailable: %s", exc)
            raise PlaybackUnavailableError(str(exc) or exc.__class__.__name__) from exc

    @property
    def current_time(self) -> float:
        with self._lock:
            return self._frames_rendered / float(self.sample_rate)

    @property
    def pending_nodes(self) -> int:
        with self._lock:
            return len(self._nodes)

    def start_node(self, samples: np.ndarray, start_at: float) -> None:
        node = _PlaybackNode(int(round(start_at * self.sample_rate)), np.asarray(samples, dtype=np.float32))
        with self._lock:
            if self._closed:
                return
            self._nodes.append(node)

    def _callback(self, outdata: np.ndarray, frames: int, time_info: Any, status: Any) -> None:
        if status:
            logger.debug("Output stream status: %s", status)
        outdata.fill(0)
        with self._lock:
            block_start = self._frames_rendered
            block_end = block_start + frames
            for node in self._nodes:
                lo = max(block_start, node.start_frame)
                hi = min(block_end, node.end_frame)
                if lo < hi:
                    outdata[lo - block_start:hi - block_start, 0] += node.samples[lo - node.start_frame:hi - node.start_frame]
            self._nodes = [node for node in self._nodes if node.end_frame > block_end]
            self._frames_rendered = block_end

    def close(self) -> None:
        """Stop the stream and discard every node that has not finished playing."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            dropped = len(self._nodes)
            self._nodes.clear()
        try:
            self._stream.abort()
        finally:
            self._stream.close()
        logger.info("Output clock closed (%d pending buffers discarded)", dropped)
