"""
medvoice/voice/backends/audio_io.py

MedVoice - PyAudio helpers shared by the cloud backends
-------------------------------------------------------
• Microphone probe used as the desktop equivalent of a permission prompt
• Pausable, stoppable WAV playback
• PCM frames to in-memory WAV encoding for upload

License: Apache 2.0
"""

import io
import threading
import wave
from typing import Callable, Iterable, Optional

try:
    import pyaudio
    HAS_PYAUDIO = True
except ImportError:
    HAS_PYAUDIO = False

from medvoice.core.errors import BackendUnavailable
from medvoice.utils.logger import get_logger

logger = get_logger(__name__)

SAMPLE_WIDTH = 2  # 16-bit PCM
CHANNELS = 1


def default_audio_factory():
    if not HAS_PYAUDIO:
        raise BackendUnavailable("PyAudio is not installed")
    return pyaudio.PyAudio()


def probe_microphone(audio_factory: Callable, sample_rate: int, chunk_size: int) -> bool:
    """True when an input stream can be opened."""
    audio = audio_factory()
    try:
        stream = audio.open(format=audio.get_format_from_width(SAMPLE_WIDTH), channels=CHANNELS,
                            rate=sample_rate, input=True, frames_per_buffer=chunk_size)
        stream.close()
        return True
    except OSError as e:
        logger.warning(f"Microphone unavailable: {e}")
        return False
    finally:
        audio.terminate()


def encode_wav(frames: Iterable[bytes], sample_rate: int) -> bytes:
    buffer = io.BytesIO()
    with wave.open(buffer, 'wb') as wf:
        wf.setnchannels(CHANNELS)
        wf.setsampwidth(SAMPLE_WIDTH)
        wf.setframerate(sample_rate)
        wf.writeframes(b''.join(frames))
    return buffer.getvalue()


class WavPlayer:
    """Plays WAV bytes once; ``stop`` and ``pause`` are safe from other threads."""

    def __init__(self, audio_factory: Callable = default_audio_factory, chunk_frames: int = 1024):
        self._audio_factory = audio_factory
        self.chunk_frames = chunk_frames
        self._stop = threading.Event()
        self._running = threading.Event()
        self._running.set()

    def play(self, data: bytes, on_start: Optional[Callable[[], None]] = None) -> bool:
        """Blocks until done. Returns False when stopped early, including before playback began."""
        if self._stop.is_set():
            return False
        audio = self._audio_factory()
        stream = None
        try:
            with wave.open(io.BytesIO(data), 'rb') as wf:
                stream = audio.open(format=audio.get_format_from_width(wf.getsampwidth()),
                                    channels=wf.getnchannels(), rate=wf.getframerate(), output=True)
                if on_start is not None:
                    on_start()
                chunk = wf.readframes(self.chunk_frames)
                while chunk:
                    self._running.wait()
                    if self._stop.is_set():
                        return False
                    stream.write(chunk)
                    chunk = wf.readframes(self.chunk_frames)
            return not self._stop.is_set()
        finally:
            if stream is not None:
                stream.stop_stream()
                stream.close()
            audio.terminate()

    def stop(self):
        self._stop.set()
        self._running.set()

    def pause(self):
        self._running.clear()

    def resume(self):
        self._running.set()
