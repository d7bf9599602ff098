"""
medvoice/voice/backends/local_tts.py

MedVoice - On-device Speech Synthesis (pyttsx3, OS voices)
----------------------------------------------------------
• SAPI5 / NSSS / eSpeak voices through pyttsx3, fully offline
• All engine calls run on one dedicated worker thread; events are posted back to the session
• Rate multipliers map onto words-per-minute; pyttsx3 drivers expose no pitch control

License: Apache 2.0
"""

import asyncio
import re
import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional

try:
    import pyttsx3
    HAS_PYTTSX3 = True
except ImportError:
    HAS_PYTTSX3 = False

from medvoice.core.errors import BackendUnavailable
from medvoice.utils.logger import get_logger
from medvoice.voice.profiles import VoiceCandidate
from medvoice.voice.synthesis import SynthesisBackend, SynthesisEvents, SynthesisRequest

logger = get_logger(__name__)

DEFAULT_RATE_WPM = 170

# Voice-id fragments naming a locale, e.g. "TTS_MS_EN-US_ZIRA", "gmw/en-US", "hi_IN".
# Hyphenated forms first: "TTS_MS" would otherwise pass for a locale.
_LOCALE_IN_ID = (
    re.compile(r"(?<![a-z])([a-z]{2,3})-([a-z]{2})(?![a-z])", re.IGNORECASE),
    re.compile(r"(?<![a-z])([a-z]{2})_([a-z]{2})(?![a-z])", re.IGNORECASE),
)


def _platform_driver() -> str:
    if sys.platform.startswith("win"):
        return "SAPI5"
    if sys.platform == "darwin":
        return "NSSS"
    return "eSpeak"


def get_engine_type(voice_id: str) -> str:
    """Underlying TTS engine for a pyttsx3 voice id."""
    voice_id_lower = voice_id.lower()
    if 'sapi5' in voice_id_lower or 'microsoft' in voice_id_lower:
        return 'SAPI5'
    if 'nsss' in voice_id_lower or 'com.apple' in voice_id_lower:
        return 'NSSS'
    if 'espeak' in voice_id_lower:
        return 'eSpeak'
    return _platform_driver()


def detect_voice_locale(voice) -> str:
    """Best-effort locale from pyttsx3 voice metadata."""
    for lang in getattr(voice, 'languages', None) or []:
        if isinstance(lang, bytes):
            lang = lang.decode('utf-8', errors='ignore')
        # eSpeak prefixes the language with a priority byte
        lang = re.sub(r'[^\w\-]', '', str(lang))
        if lang:
            return lang.replace('_', '-')

    label = f"{voice.id} {getattr(voice, 'name', '')}"
    for pattern in _LOCALE_IN_ID:
        match = pattern.search(label)
        if match:
            return f"{match.group(1).lower()}-{match.group(2).upper()}"
    return ""


class LocalSynthesisBackend(SynthesisBackend):
    """pyttsx3 speech output on a single worker thread."""

    name = "pyttsx3"
    is_local = True

    def __init__(self, base_rate_wpm: int = DEFAULT_RATE_WPM,
                 engine_factory: Optional[Callable[[], object]] = None):
        if engine_factory is None:
            if not HAS_PYTTSX3:
                raise BackendUnavailable("pyttsx3 is not installed")
            engine_factory = pyttsx3.init
        self.base_rate_wpm = base_rate_wpm
        self._engine_factory = engine_factory
        self._engine = None
        self._generation = 0
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="medvoice-tts")

    def _get_engine(self):
        if self._engine is None:
            try:
                self._engine = self._engine_factory()
            except Exception as e:
                raise BackendUnavailable(f"Failed to initialize TTS engine: {e}", cause=e) from e
            logger.info("pyttsx3 engine initialized")
        return self._engine

    async def list_voices(self) -> List[VoiceCandidate]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, self._list_voices_sync)

    def _list_voices_sync(self) -> List[VoiceCandidate]:
        engine = self._get_engine()
        candidates = []
        for voice in engine.getProperty('voices') or []:
            candidates.append(VoiceCandidate(
                voice_id=voice.id,
                name=getattr(voice, 'name', None) or voice.id,
                locale=detect_voice_locale(voice),
                is_local=True,
                engine_hint=get_engine_type(voice.id),
            ))
        logger.debug(f"Discovered {len(candidates)} pyttsx3 voices")
        return candidates

    def submit(self, request: SynthesisRequest, events: SynthesisEvents) -> None:
        with self._lock:
            generation = self._generation
        self._executor.submit(self._speak_sync, request, events, generation)

    def _is_stale(self, generation: int) -> bool:
        with self._lock:
            return generation != self._generation

    def _speak_sync(self, request: SynthesisRequest, events: SynthesisEvents, generation: int):
        if self._is_stale(generation):
            return
        tokens = []
        try:
            engine = self._get_engine()
            if request.voice is not None:
                engine.setProperty('voice', request.voice.voice_id)
            engine.setProperty('rate', int(self.base_rate_wpm * request.profile.rate))
            engine.setProperty('volume', request.profile.volume)

            tokens.append(engine.connect('started-utterance', lambda name: events.on_start()))
            engine.say(request.text, str(request.utterance_id))
            engine.runAndWait()
        except Exception as e:
            logger.error(f"pyttsx3 playback failed: {e}")
            events.on_error(e)
            return
        finally:
            for token in tokens:
                self._engine.disconnect(token)

        if not self._is_stale(generation):
            events.on_end()

    def stop(self) -> None:
        with self._lock:
            self._generation += 1
        if self._engine is not None:
            self._engine.stop()

    def close(self) -> None:
        self.stop()
        self._executor.shutdown(wait=False)
