"""
medvoice/voice/backends/cloud_asr.py

MedVoice - Cloud Speech Recognition (PyAudio + OpenAI Whisper)
--------------------------------------------------------------
• Records the microphone into memory until finish() or the session's cap
• Uploads the recording as WAV to the OpenAI transcription endpoint
• stop() discards the recording without a transcript

License: Apache 2.0
"""

import asyncio
import threading
from typing import Callable, List, Optional

from openai import OpenAI, OpenAIError

from medvoice.core.errors import BackendUnavailable, RecognitionError
from medvoice.utils.language import primary_subtag
from medvoice.utils.logger import get_logger
from medvoice.voice.backends.audio_io import (
    CHANNELS,
    SAMPLE_WIDTH,
    default_audio_factory,
    encode_wav,
    probe_microphone,
)
from medvoice.voice.capture import CaptureBackend, CaptureEvents

logger = get_logger(__name__)


class _Recording:
    def __init__(self, locale: str, events: CaptureEvents):
        self.locale = locale
        self.events = events
        self.frames: List[bytes] = []
        self.stop_requested = threading.Event()
        self.finish_requested = threading.Event()


class CloudCaptureBackend(CaptureBackend):
    """Record, then transcribe with Whisper."""

    name = "openai-whisper"
    is_local = False

    def __init__(
        self,
        client: Optional[OpenAI] = None,
        model: str = "whisper-1",
        temperature: float = 0.1,
        sample_rate: int = 16000,
        chunk_size: int = 1024,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
        audio_factory: Callable = default_audio_factory,
    ):
        if client is None:
            try:
                client = OpenAI(api_key=api_key, base_url=base_url, timeout=timeout)
            except OpenAIError as e:
                raise BackendUnavailable(f"OpenAI client unavailable: {e}", cause=e) from e
        self._client = client
        self.model = model
        self.temperature = temperature
        self.sample_rate = sample_rate
        self.chunk_size = chunk_size
        self._audio_factory = audio_factory
        self._recording: Optional[_Recording] = None
        self._lock = threading.Lock()

    async def request_permission(self) -> bool:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None, probe_microphone, self._audio_factory, self.sample_rate, self.chunk_size)

    def start(self, locale: str, events: CaptureEvents) -> None:
        recording = _Recording(locale, events)
        with self._lock:
            self._recording = recording
        threading.Thread(target=self._record, args=(recording,),
                         name="medvoice-recorder", daemon=True).start()

    def _record(self, recording: _Recording):
        try:
            audio = self._audio_factory()
        except Exception as e:
            recording.events.on_error(e)
            return
        stream = None
        try:
            stream = audio.open(format=audio.get_format_from_width(SAMPLE_WIDTH), channels=CHANNELS,
                                rate=self.sample_rate, input=True, frames_per_buffer=self.chunk_size)
            while not (recording.stop_requested.is_set() or recording.finish_requested.is_set()):
                recording.frames.append(stream.read(self.chunk_size, exception_on_overflow=False))
        except Exception as e:
            logger.error(f"Recording failed: {e}")
            recording.events.on_error(e)
            return
        finally:
            if stream is not None:
                stream.stop_stream()
                stream.close()
            audio.terminate()

        if recording.finish_requested.is_set() and not recording.stop_requested.is_set():
            self._transcribe(recording)

    def _transcribe(self, recording: _Recording):
        if not recording.frames:
            recording.events.on_no_speech()
            return
        wav = encode_wav(recording.frames, self.sample_rate)
        logger.debug(f"Uploading {len(wav)} bytes for transcription")
        try:
            result = self._client.audio.transcriptions.create(
                model=self.model,
                file=("speech.wav", wav, "audio/wav"),
                language=primary_subtag(recording.locale),
                temperature=self.temperature,
            )
        except OpenAIError as e:
            recording.events.on_error(RecognitionError(f"Transcription failed: {e}", cause=e))
            return

        text = (getattr(result, 'text', '') or '').strip()
        if text:
            recording.events.on_final(text)
        else:
            recording.events.on_no_speech()

    def finish(self) -> None:
        with self._lock:
            recording = self._recording
        if recording is not None:
            recording.finish_requested.set()

    def stop(self) -> None:
        with self._lock:
            recording, self._recording = self._recording, None
        if recording is not None:
            recording.stop_requested.set()
