"""
medvoice/voice/backends/local_asr.py

MedVoice - On-device Speech Recognition (SpeechRecognition + Vosk)
------------------------------------------------------------------
• Microphone capture via SpeechRecognition's background listener, fully offline
• Vosk/Kaldi decoding with partial hypotheses while a phrase is decoded
• One Vosk model per language family, loaded lazily and cached

License: Apache 2.0
"""

import asyncio
import json
import threading
from pathlib import Path
from typing import Callable, Dict, Optional

try:
    import speech_recognition as sr
    HAS_SPEECH_RECOGNITION = True
except ImportError:
    HAS_SPEECH_RECOGNITION = False

try:
    from vosk import Model as VoskModel, KaldiRecognizer, SetLogLevel
    SetLogLevel(-1)
    HAS_VOSK = True
except ImportError:
    HAS_VOSK = False

from medvoice.core.errors import BackendUnavailable
from medvoice.utils.language import primary_subtag
from medvoice.utils.logger import get_logger
from medvoice.voice.capture import CaptureBackend, CaptureEvents

logger = get_logger(__name__)

DEFAULT_SAMPLE_RATE = 16000
DECODE_CHUNK_BYTES = 8000


class LocalCaptureBackend(CaptureBackend):
    """Offline recognition: microphone phrases decoded by Vosk."""

    name = "vosk"
    is_local = True

    def __init__(
        self,
        model_paths: Dict[str, str],
        sample_rate: int = DEFAULT_SAMPLE_RATE,
        phrase_time_limit: Optional[float] = None,
        recognizer=None,
        microphone_factory: Optional[Callable] = None,
        model_loader: Optional[Callable[[str], object]] = None,
        recognizer_factory: Optional[Callable] = None,
    ):
        if recognizer is None or microphone_factory is None:
            if not HAS_SPEECH_RECOGNITION:
                raise BackendUnavailable("SpeechRecognition is not installed")
        if model_loader is None or recognizer_factory is None:
            if not HAS_VOSK:
                raise BackendUnavailable("vosk is not installed")

        self.model_paths = {primary_subtag(k): v for k, v in model_paths.items()}
        self.sample_rate = sample_rate
        self.phrase_time_limit = phrase_time_limit
        self._recognizer = recognizer if recognizer is not None else sr.Recognizer()
        self._microphone_factory = microphone_factory or (lambda: sr.Microphone(sample_rate=sample_rate))
        self._model_loader = model_loader or VoskModel
        self._recognizer_factory = recognizer_factory or KaldiRecognizer
        self._models: Dict[str, object] = {}
        self._stopper: Optional[Callable] = None
        self._events: Optional[CaptureEvents] = None
        self._lock = threading.Lock()

    # ---- permission -------------------------------------------------

    async def request_permission(self) -> bool:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._probe_microphone)

    def _probe_microphone(self) -> bool:
        try:
            microphone = self._microphone_factory()
            with microphone:
                pass
            return True
        except AttributeError as e:
            # SpeechRecognition raises this when PyAudio is missing
            raise BackendUnavailable(f"Microphone support unavailable: {e}", cause=e) from e
        except OSError as e:
            logger.warning(f"Microphone unavailable: {e}")
            return False

    # ---- models -------------------------------------------------------

    def load_model(self, locale: str):
        family = primary_subtag(locale)
        if family in self._models:
            return self._models[family]

        path = self.model_paths.get(family)
        if not path or not Path(path).exists():
            raise BackendUnavailable(f"No offline speech model for {locale}")
        try:
            model = self._model_loader(path)
        except Exception as e:
            raise BackendUnavailable(f"Failed to load speech model {path}: {e}", cause=e) from e
        self._models[family] = model
        logger.info(f"Loaded Vosk model for {family} from {path}")
        return model

    # ---- capture -------------------------------------------------------

    def start(self, locale: str, events: CaptureEvents) -> None:
        model = self.load_model(locale)
        microphone = self._microphone_factory()

        def on_phrase(recognizer, audio):
            self._decode(model, audio, events)

        with self._lock:
            self._events = events
            self._stopper = self._recognizer.listen_in_background(
                microphone, on_phrase, phrase_time_limit=self.phrase_time_limit)
        logger.debug(f"Background listener started for {locale}")

    def _decode(self, model, audio, events: CaptureEvents):
        try:
            rec = self._recognizer_factory(model, self.sample_rate)
            raw = audio.get_raw_data(convert_rate=self.sample_rate, convert_width=2)
            pieces = []
            for offset in range(0, len(raw), DECODE_CHUNK_BYTES):
                if rec.AcceptWaveform(raw[offset:offset + DECODE_CHUNK_BYTES]):
                    text = json.loads(rec.Result()).get('text', '')
                    if text:
                        pieces.append(text)
                        events.on_partial(' '.join(pieces))
                else:
                    partial = json.loads(rec.PartialResult()).get('partial', '')
                    if partial:
                        events.on_partial(' '.join(pieces + [partial]))
            tail = json.loads(rec.FinalResult()).get('text', '')
            if tail:
                pieces.append(tail)
        except Exception as e:
            logger.error(f"Vosk decoding failed: {e}")
            events.on_error(e)
            return

        transcript = ' '.join(pieces).strip()
        if transcript:
            events.on_final(transcript)
        else:
            events.on_no_speech()

    def finish(self) -> None:
        with self._lock:
            events = self._events
        self.stop()
        if events is not None:
            # nothing is buffered outside the listener; end without a final
            events.on_end()

    def stop(self) -> None:
        with self._lock:
            stopper, self._stopper = self._stopper, None
            self._events = None
        if stopper is not None:
            stopper(wait_for_stop=False)
