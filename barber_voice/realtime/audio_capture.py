"""
Audio Capture Module

Microphone capture with a frequency-domain analyser tap.

- Opens the input device through sounddevice (PortAudio) at the STT rate,
  falling back to the device's native rate with linear resampling
- Delivers mono PCM16 frames to an asyncio queue from the PortAudio thread
- Keeps a live energy level (mean byte-scaled FFT magnitude / 128) that the
  turn controller polls for barge-in
- ``stop()`` releases the device and is safe to call repeatedly
"""

import asyncio
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Optional

import numpy as np

from barber_voice.config import Settings, settings as default_settings
from barber_voice.logger import get_logger

logger = get_logger(__name__)

MIN_DECIBELS = -100.0
MAX_DECIBELS = -30.0
SMOOTHING = 0.8


class MicrophoneUnavailable(Exception):
    """No input device, or access to it was refused."""


@dataclass
class AudioCaptureConfig:
    """Capture configuration."""
    sample_rate: int = 16000
    channels: int = 1
    block_size: int = 512
    fft_size: int = 256
    device: Optional[Any] = None
    max_queued_frames: int = 200

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "AudioCaptureConfig":
        audio = (config or default_settings).audio
        return cls(
            sample_rate=audio.input_sample_rate,
            channels=audio.channels,
            block_size=audio.block_size,
            fft_size=audio.fft_size,
            device=audio.input_device,
        )


# ============================================================================
# Sample helpers
# ============================================================================

def float32_to_int16(samples: np.ndarray) -> np.ndarray:
    """Clip float samples to [-1, 1] and scale to PCM16."""
    clipped = np.clip(samples, -1.0, 1.0)
    return (clipped * 32767).astype(np.int16)


def resample_linear(samples: np.ndarray, from_rate: int, to_rate: int) -> np.ndarray:
    """Linear-interpolation resampling of a mono float signal."""
    if from_rate == to_rate or len(samples) == 0:
        return samples
    duration = len(samples) / from_rate
    target_length = max(1, int(round(duration * to_rate)))
    source_positions = np.linspace(0, len(samples) - 1, num=target_length)
    return np.interp(source_positions, np.arange(len(samples)), samples).astype(np.float32)


# ============================================================================
# Analyser
# ============================================================================

class FrequencyAnalyser:
    """
    Energy meter modelled on a browser AnalyserNode.

    Magnitudes of a Blackman-windowed FFT are smoothed over time, converted
    to decibels and scaled to 0..255 between MIN_DECIBELS and MAX_DECIBELS.
    ``level`` is the mean of those bytes divided by 128, so speech close to
    the microphone lands well above 0.3 and room noise below it.
    """

    def __init__(self, fft_size: int = 256):
        if fft_size < 32 or fft_size & (fft_size - 1):
            raise ValueError("fft_size must be a power of two >= 32")
        self._fft_size = fft_size
        self._window = np.blackman(fft_size)
        self._smoothed = np.zeros(fft_size // 2)
        self._bytes = np.zeros(fft_size // 2)
        self._level = 0.0

    @property
    def fft_size(self) -> int:
        return self._fft_size

    @property
    def level(self) -> float:
        return self._level

    def byte_frequency_data(self) -> np.ndarray:
        return self._bytes.copy()

    def update(self, samples: np.ndarray) -> float:
        """Feed float samples in [-1, 1]; uses the most recent fft_size of them."""
        if len(samples) < self._fft_size:
            samples = np.pad(samples, (self._fft_size - len(samples), 0))
        frame = samples[-self._fft_size:] * self._window
        magnitudes = np.abs(np.fft.rfft(frame))[: self._fft_size // 2] / self._fft_size
        self._smoothed = SMOOTHING * self._smoothed + (1 - SMOOTHING) * magnitudes
        decibels = 20 * np.log10(np.maximum(self._smoothed, 1e-12))
        scaled = 255 * (decibels - MIN_DECIBELS) / (MAX_DECIBELS - MIN_DECIBELS)
        self._bytes = np.clip(scaled, 0, 255)
        self._level = float(np.mean(self._bytes) / 128)
        return self._level

    def reset(self) -> None:
        self._smoothed[:] = 0
        self._bytes[:] = 0
        self._level = 0.0


# ============================================================================
# Capture
# ============================================================================

class AudioCapture:
    """
    Microphone capture.

    Usage:
        capture = AudioCapture()
        await capture.start()
        async for frame in capture.frames():
            await stt.send_audio(frame)
        capture.stop()
    """

    def __init__(
        self,
        config: Optional[AudioCaptureConfig] = None,
        stream_factory: Optional[Callable[..., Any]] = None,
    ):
        """
        Args:
            config: Capture configuration, defaults to settings
            stream_factory: Replaces ``sounddevice.InputStream``; the device
                is then assumed to accept the configured rate
        """
        self._config = config or AudioCaptureConfig.from_settings()
        self._stream_factory = stream_factory
        self._analyser = FrequencyAnalyser(self._config.fft_size)
        self._stream: Optional[Any] = None
        self._queue: Optional[asyncio.Queue] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._device_rate = self._config.sample_rate
        self._dropped_frames = 0

    @property
    def is_active(self) -> bool:
        return self._stream is not None

    @property
    def analyser(self) -> FrequencyAnalyser:
        return self._analyser

    @property
    def level(self) -> float:
        """Latest analyser level; polled for barge-in."""
        return self._analyser.level

    @property
    def sample_rate(self) -> int:
        return self._config.sample_rate

    def _open_device_stream(self) -> Any:
        """Open a sounddevice input stream, resampling when the rate is unsupported."""
        import sounddevice as sd  # PortAudio is loaded on first use

        try:
            sd.check_input_settings(
                device=self._config.device,
                samplerate=self._config.sample_rate,
                channels=self._config.channels,
                dtype="float32",
            )
            self._device_rate = self._config.sample_rate
        except (sd.PortAudioError, ValueError) as e:
            info = sd.query_devices(self._config.device, kind="input")
            self._device_rate = int(info["default_samplerate"])
            logger.info(f"Input device rejects {self._config.sample_rate} Hz ({e}), capturing at {self._device_rate} Hz")

        return sd.InputStream(
            device=self._config.device,
            samplerate=self._device_rate,
            channels=self._config.channels,
            dtype="float32",
            blocksize=int(self._config.block_size * self._device_rate / self._config.sample_rate),
            callback=self._on_audio,
        )

    async def start(self) -> "AudioCapture":
        """
        Open the microphone and begin delivering frames.

        Raises:
            MicrophoneUnavailable: no input device, or it cannot be opened
        """
        if self._stream is not None:
            return self

        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue(maxsize=self._config.max_queued_frames)
        self._analyser.reset()

        try:
            if self._stream_factory is not None:
                self._device_rate = self._config.sample_rate
                stream = self._stream_factory(
                    samplerate=self._config.sample_rate,
                    channels=self._config.channels,
                    dtype="float32",
                    blocksize=self._config.block_size,
                    callback=self._on_audio,
                )
            else:
                stream = self._open_device_stream()
            stream.start()
        except Exception as e:
            self._queue = None
            raise MicrophoneUnavailable(f"Cannot open microphone: {e}") from e

        self._stream = stream
        logger.info(
            f"Audio capture started: {self._config.sample_rate} Hz "
            f"(device {self._device_rate} Hz), block {self._config.block_size}"
        )
        return self

    def _on_audio(self, indata: np.ndarray, frames: int, time_info: Any, status: Any) -> None:
        """PortAudio callback; runs on the audio thread."""
        if status:
            logger.debug(f"Input status: {status}")
        mono = indata[:, 0] if indata.ndim > 1 else indata
        samples = resample_linear(mono.astype(np.float32), self._device_rate, self._config.sample_rate)
        self._analyser.update(samples)
        pcm = float32_to_int16(samples).tobytes()
        if self._loop is not None and self._queue is not None:
            self._loop.call_soon_threadsafe(self._enqueue, pcm)

    def _enqueue(self, pcm: bytes) -> None:
        if self._queue is None:
            return
        if self._queue.full():
            self._queue.get_nowait()
            self._dropped_frames += 1
        self._queue.put_nowait(pcm)

    async def read(self) -> bytes:
        """Wait for the next PCM16 frame."""
        if self._queue is None:
            raise RuntimeError("Audio capture is not started")
        return await self._queue.get()

    async def frames(self) -> AsyncIterator[bytes]:
        """Yield PCM16 frames until the capture is stopped."""
        while self._stream is not None:
            yield await self.read()

    def stop(self) -> None:
        """Release the device; no-op when already stopped."""
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop()
        finally:
            stream.close()
        self._queue = None
        self._analyser.reset()
        if self._dropped_frames:
            logger.debug(f"Audio capture dropped {self._dropped_frames} frames")
        self._dropped_frames = 0
        logger.info("Audio capture stopped")
