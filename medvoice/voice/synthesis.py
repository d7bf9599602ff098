"""
medvoice/voice/synthesis.py

MedVoice - Speech Synthesis Session
-----------------------------------
• Owns at most one active utterance; a new speak() hard-cancels the one in flight
• Start guard bounds the wait for an unresponsive backend to begin playback
• Every utterance resolves exactly once (completed, error, start timeout or cancelled) and never raises
• Backend events may arrive on worker threads and are marshalled onto the session's event loop

License: Apache 2.0
"""

import asyncio
import itertools
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Optional

from medvoice.core.errors import NoVoiceMatch, StartTimeout
from medvoice.utils.language import DEFAULT_LANGUAGE, normalize_language
from medvoice.utils.logger import get_logger
from medvoice.voice.profiles import (
    LanguageTag,
    VoiceCandidate,
    VoiceProfile,
    VoiceProfileResolver,
    get_voice_profile_resolver,
)

logger = get_logger(__name__)

# -------------------------------
# Constants
# -------------------------------

DEFAULT_START_GUARD_FLOOR = 5.0  # seconds
DEFAULT_START_GUARD_PER_CHAR = 0.1  # seconds per character

# -------------------------------
# Enums and Data Structures
# -------------------------------

class SpeechOutcome(Enum):
    COMPLETED = "completed"
    ERROR = "error"
    START_TIMEOUT = "start_timeout"
    CANCELLED = "cancelled"


@dataclass
class SpeechOverrides:
    """Per-call adjustments merged over the language profile."""
    locale: Optional[str] = None
    rate: Optional[float] = None
    pitch: Optional[float] = None
    volume: Optional[float] = None

    def apply(self, profile: VoiceProfile) -> VoiceProfile:
        return profile.with_overrides(locale=self.locale, rate=self.rate,
                                      pitch=self.pitch, volume=self.volume)


@dataclass(frozen=True)
class SynthesisRequest:
    """What a backend receives for one utterance."""
    utterance_id: int
    text: str
    profile: VoiceProfile
    voice: Optional[VoiceCandidate] = None


class Utterance:
    """One speak() call. Resolution is first-writer-wins."""

    def __init__(self, utterance_id: int, text: str, profile: VoiceProfile,
                 loop: asyncio.AbstractEventLoop, guard_timeout: float = 0.0):
        self.utterance_id = utterance_id
        self.text = text
        self.profile = profile
        self.voice: Optional[VoiceCandidate] = None
        self.submitted = False
        self.started = False
        self.error: Optional[BaseException] = None
        self.future: asyncio.Future = loop.create_future()
        # the start guard runs from the speak() call, voice lookup included
        self.deadline = loop.time() + guard_timeout
        self._guard: Optional[asyncio.TimerHandle] = None

    @property
    def done(self) -> bool:
        return self.future.done()

    def arm_guard(self, handle: asyncio.TimerHandle):
        self._guard = handle

    def disarm_guard(self):
        if self._guard is not None:
            self._guard.cancel()
            self._guard = None

    def resolve(self, outcome: SpeechOutcome, error: Optional[BaseException] = None) -> bool:
        """Set the outcome unless one is already set. Returns True for the first writer."""
        self.disarm_guard()
        if self.future.done():
            return False
        self.error = error
        self.future.set_result(outcome)
        return True

# -------------------------------
# Backend Contract
# -------------------------------

class SynthesisEvents:
    """Callbacks handed to a backend for one request; safe to call from any thread."""

    def __init__(self, session: "SynthesisSession", utterance_id: int,
                 loop: asyncio.AbstractEventLoop):
        self._session = session
        self._utterance_id = utterance_id
        self._loop = loop

    def on_start(self):
        self._post(self._session._handle_start)

    def on_end(self):
        self._post(self._session._handle_end)

    def on_error(self, error: BaseException):
        self._post(self._session._handle_error, error)

    def _post(self, callback, *args: Any):
        if self._loop.is_closed():
            logger.debug(f"Dropping synthesis event for utterance {self._utterance_id}: loop closed")
            return
        self._loop.call_soon_threadsafe(callback, self._utterance_id, *args)


class SynthesisBackend(ABC):
    """Platform speech output. ``submit`` must not block; report progress through ``events``."""

    name = "synthesis"
    is_local = True

    @abstractmethod
    async def list_voices(self) -> List[VoiceCandidate]:
        ...

    @abstractmethod
    def submit(self, request: SynthesisRequest, events: SynthesisEvents) -> None:
        ...

    @abstractmethod
    def stop(self) -> None:
        ...

    def pause(self) -> None:
        logger.debug(f"{self.name}: pause not supported")

    def resume(self) -> None:
        logger.debug(f"{self.name}: resume not supported")

    def close(self) -> None:
        pass

# -------------------------------
# Synthesis Session
# -------------------------------

class SynthesisSession:
    """Serializes speech output to a single utterance at a time."""

    def __init__(
        self,
        backend: SynthesisBackend,
        resolver: Optional[VoiceProfileResolver] = None,
        language: LanguageTag = DEFAULT_LANGUAGE,
        start_guard_floor: float = DEFAULT_START_GUARD_FLOOR,
        start_guard_per_char: float = DEFAULT_START_GUARD_PER_CHAR,
    ):
        self._backend = backend
        self._resolver = resolver or get_voice_profile_resolver()
        self._language = normalize_language(language) or DEFAULT_LANGUAGE
        self.start_guard_floor = start_guard_floor
        self.start_guard_per_char = start_guard_per_char

        self._ids = itertools.count(1)
        self._current: Optional[Utterance] = None
        self._voices: List[VoiceCandidate] = []
        self.last_error: Optional[BaseException] = None
        self.stats = {
            "utterances": 0,
            "completed": 0,
            "errors": 0,
            "start_timeouts": 0,
            "cancelled": 0,
        }

    # ---- properties -------------------------------------------------

    @property
    def language(self) -> LanguageTag:
        return self._language

    @property
    def backend(self) -> SynthesisBackend:
        return self._backend

    @property
    def voices(self) -> List[VoiceCandidate]:
        return list(self._voices)

    def set_language(self, language: LanguageTag):
        """Applies to the next utterance; one already in flight keeps its profile."""
        self._language = normalize_language(language) or DEFAULT_LANGUAGE

    def is_speaking(self) -> bool:
        current = self._current
        return current is not None and current.submitted and not current.done

    def start_guard_timeout(self, text: str) -> float:
        return max(self.start_guard_floor, self.start_guard_per_char * len(text))

    # ---- voices -------------------------------------------------------

    async def refresh_voices(self) -> List[VoiceCandidate]:
        try:
            voices = await self._backend.list_voices()
        except Exception as e:
            logger.warning(f"Voice list unavailable from {self._backend.name}: {e}")
            voices = []
        self._voices = list(voices or [])
        logger.debug(f"{len(self._voices)} voices available from {self._backend.name}")
        return self.voices

    async def _voice_for(self, locale: str) -> Optional[VoiceCandidate]:
        if not self._voices:
            await self.refresh_voices()
        voice = self._resolver.select(locale, self._voices)
        if voice is None:
            logger.info(f"{NoVoiceMatch.__doc__} ({locale}); using backend default voice")
        return voice

    # ---- speaking -------------------------------------------------------

    async def speak(self, text: str, overrides: Optional[SpeechOverrides] = None,
                    profile: Optional[VoiceProfile] = None) -> SpeechOutcome:
        """
        Speak ``text`` and wait until it finishes, fails, times out or is superseded.

        Any utterance already in progress is cancelled first. Never raises for
        backend failures; inspect the returned outcome or ``last_error``.
        """
        loop = asyncio.get_running_loop()
        self._cancel_current()

        text = (text or "").strip()
        if not text:
            return SpeechOutcome.COMPLETED

        profile = profile or self._resolver.profile_for(self._language)
        if overrides is not None:
            profile = overrides.apply(profile)

        guard_timeout = self.start_guard_timeout(text)
        utterance = Utterance(next(self._ids), text, profile, loop, guard_timeout)
        self._current = utterance
        self.stats["utterances"] += 1

        try:
            try:
                voice = await asyncio.wait_for(self._voice_for(profile.locale), guard_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Voice lookup on {self._backend.name} exceeded the start guard")
                self._handle_start_timeout(utterance.utterance_id)
                voice = None

            if self._current is utterance and not utterance.done:
                utterance.voice = voice
                self._submit(utterance, loop)
            else:
                # superseded or timed out while resolving the voice; never reaches the backend
                utterance.resolve(SpeechOutcome.CANCELLED)
            outcome = await asyncio.shield(utterance.future)
        except asyncio.CancelledError:
            self._cancel_utterance(utterance)
            raise

        self._record(outcome)
        return outcome

    async def speak_medical_term(self, text: str) -> SpeechOutcome:
        """Slower delivery for drug names and clinical terms."""
        return await self.speak(text, profile=self._resolver.profile_for(self._language).medical())

    async def speak_emergency(self, text: str) -> SpeechOutcome:
        """Faster, louder delivery for urgent instructions."""
        return await self.speak(text, profile=self._resolver.profile_for(self._language).emergency())

    def _submit(self, utterance: Utterance, loop: asyncio.AbstractEventLoop):
        request = SynthesisRequest(
            utterance_id=utterance.utterance_id,
            text=utterance.text,
            profile=utterance.profile,
            voice=utterance.voice,
        )
        utterance.submitted = True
        try:
            self._backend.submit(request, SynthesisEvents(self, utterance.utterance_id, loop))
        except Exception as e:
            logger.error(f"{self._backend.name} rejected utterance {utterance.utterance_id}: {e}")
            self._finish(utterance, SpeechOutcome.ERROR, e)
            return

        timeout = max(0.0, utterance.deadline - loop.time())
        utterance.arm_guard(loop.call_later(timeout, self._handle_start_timeout, utterance.utterance_id))
        logger.debug(f"Utterance {utterance.utterance_id} submitted ({len(utterance.text)} chars, "
                     f"guard {timeout:.1f}s, voice={utterance.voice.name if utterance.voice else 'default'})")

    # ---- control -------------------------------------------------------

    def stop(self):
        """Cancel the active utterance, if any."""
        self._cancel_current()

    def pause(self):
        if self.is_speaking():
            self._backend.pause()

    def resume(self):
        if self.is_speaking():
            self._backend.resume()

    def close(self):
        self._cancel_current()
        self._backend.close()

    def _cancel_current(self):
        if self._current is not None:
            self._cancel_utterance(self._current)

    def _cancel_utterance(self, utterance: Utterance):
        if self._current is utterance:
            self._current = None
        if utterance.done:
            return
        if utterance.submitted:
            self._stop_backend()
        utterance.resolve(SpeechOutcome.CANCELLED)
        logger.debug(f"Utterance {utterance.utterance_id} cancelled")

    def _stop_backend(self):
        try:
            self._backend.stop()
        except Exception as e:
            logger.warning(f"{self._backend.name} stop failed: {e}")

    # ---- backend events (event loop thread) -----------------------------

    def _live(self, utterance_id: int) -> Optional[Utterance]:
        current = self._current
        if current is None or current.utterance_id != utterance_id or current.done:
            return None
        return current

    def _handle_start(self, utterance_id: int):
        utterance = self._live(utterance_id)
        if utterance is not None:
            utterance.started = True
            utterance.disarm_guard()

    def _handle_end(self, utterance_id: int):
        utterance = self._live(utterance_id)
        if utterance is not None:
            self._finish(utterance, SpeechOutcome.COMPLETED)

    def _handle_error(self, utterance_id: int, error: BaseException):
        utterance = self._live(utterance_id)
        if utterance is not None:
            logger.warning(f"Synthesis error on utterance {utterance_id}: {error}")
            self._finish(utterance, SpeechOutcome.ERROR, error)

    def _handle_start_timeout(self, utterance_id: int):
        utterance = self._live(utterance_id)
        if utterance is None or utterance.started:
            return
        logger.warning(f"Utterance {utterance_id} did not start within "
                       f"{self.start_guard_timeout(utterance.text):.1f}s; stopping backend")
        self._stop_backend()
        self._finish(utterance, SpeechOutcome.START_TIMEOUT, StartTimeout())

    def _finish(self, utterance: Utterance, outcome: SpeechOutcome,
                error: Optional[BaseException] = None):
        if self._current is utterance:
            self._current = None
        if utterance.resolve(outcome, error) and error is not None:
            self.last_error = error

    def _record(self, outcome: SpeechOutcome):
        key = {
            SpeechOutcome.COMPLETED: "completed",
            SpeechOutcome.ERROR: "errors",
            SpeechOutcome.START_TIMEOUT: "start_timeouts",
            SpeechOutcome.CANCELLED: "cancelled",
        }[outcome]
        self.stats[key] += 1
