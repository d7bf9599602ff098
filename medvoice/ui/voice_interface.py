"""
medvoice/ui/voice_interface.py

MedVoice - Voice Interaction Controller
---------------------------------------
• Drives one conversational turn: listen -> interpret -> navigate, raise an emergency or ask the assistant -> speak
• Time-of-day greeting on first activation, localized confirmations and error phrases
• Capture failures are surfaced to the host and leave the controller idle; speech failures never block a turn
• cancel() is idempotent and stops listening, speaking and any pending assistant request

License: Apache 2.0
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional

from medvoice.core.errors import PermissionDenied, VoiceEngineError
from medvoice.utils.language import DEFAULT_LANGUAGE, PhraseCatalog, normalize_language
from medvoice.utils.logger import get_logger, log_traceback
from medvoice.voice.answering import QueryAnswerer
from medvoice.voice.capture import CaptureHandlers, CaptureSession
from medvoice.voice.commands import Command, CommandInterpreter, Emergency, Navigate, Query
from medvoice.voice.synthesis import SpeechOutcome, SynthesisSession

logger = get_logger(__name__)

# -------------------------------
# Enums and Data Structures
# -------------------------------

class ControllerState(Enum):
    IDLE = "idle"
    LISTENING = "listening"
    PROCESSING = "processing"
    SPEAKING = "speaking"
    ERROR = "error"


@dataclass(frozen=True)
class VoiceEvent:
    """Sent to the host for navigation and emergency commands."""
    kind: str
    target: str


@dataclass
class TurnResult:
    transcript: Optional[str] = None
    command: Optional[Command] = None
    response: Optional[str] = None
    error: Optional[VoiceEngineError] = None
    answer_failed: bool = False
    cancelled: bool = False
    speech_outcome: Optional[SpeechOutcome] = None
    started_at: float = field(default_factory=time.time)

# -------------------------------
# Controller
# -------------------------------

class VoiceInteractionController:
    """
    Single-turn voice assistant on top of a capture session and a synthesis session.

    Args:
        synthesis: owned speech output session
        capture: owned speech input session
        interpreter: transcript classifier
        answerer: collaborator for free-form queries; None speaks the unavailable phrase
        event_sink: receives VoiceEvent for navigation and emergencies
        on_error: receives capture errors
        on_transcript: receives partial transcripts while listening
    """

    def __init__(
        self,
        synthesis: SynthesisSession,
        capture: CaptureSession,
        interpreter: Optional[CommandInterpreter] = None,
        answerer: Optional[QueryAnswerer] = None,
        event_sink: Optional[Callable[[VoiceEvent], Any]] = None,
        phrases: Optional[PhraseCatalog] = None,
        language: str = DEFAULT_LANGUAGE,
        on_error: Optional[Callable[[VoiceEngineError], Any]] = None,
        on_transcript: Optional[Callable[[str], Any]] = None,
        clock: Callable[[], datetime] = datetime.now,
        capture_timeout: Optional[float] = None,
        greet_on_activate: bool = True,
    ):
        self.synthesis = synthesis
        self.capture = capture
        self.interpreter = interpreter or CommandInterpreter()
        self.answerer = answerer
        self.phrases = phrases or PhraseCatalog()
        self._event_sink = event_sink
        self._on_error = on_error
        self._on_transcript = on_transcript
        self._clock = clock
        self.capture_timeout = capture_timeout
        self.greet_on_activate = greet_on_activate

        self._language = normalize_language(language) or DEFAULT_LANGUAGE
        self.synthesis.set_language(self._language)
        self._state = ControllerState.IDLE
        self._turn_active = False
        self._cancel_requested = False
        self._greeted = False
        self._greeting_task: Optional[asyncio.Task] = None
        self._answer_task: Optional[asyncio.Task] = None
        self.last_error: Optional[VoiceEngineError] = None

        self.metrics = {
            "turns": 0,
            "navigations": 0,
            "emergencies": 0,
            "queries": 0,
            "capture_errors": 0,
            "answer_failures": 0,
            "cancellations": 0,
        }

    # ---- properties -------------------------------------------------

    @property
    def state(self) -> ControllerState:
        return self._state

    @property
    def language(self) -> str:
        return self._language

    def is_busy(self) -> bool:
        return self._turn_active

    def set_language(self, language: str):
        """Takes effect for the next capture and the next utterance."""
        self._language = normalize_language(language) or DEFAULT_LANGUAGE
        self.synthesis.set_language(self._language)
        logger.info(f"Language switched to {self._language}")

    # ---- greeting -------------------------------------------------------

    def activate(self) -> Optional[asyncio.Task]:
        """Speak the greeting on first activation. Returns the background task, if any."""
        if self._greeted or not self.greet_on_activate:
            return None
        self._greeted = True
        text = self.phrases.greeting(self._language, self._clock().hour)
        self._greeting_task = asyncio.get_running_loop().create_task(self.synthesis.speak(text))
        return self._greeting_task

    # ---- turn -------------------------------------------------------

    async def handle_turn(self, max_duration: Optional[float] = None) -> Optional[TurnResult]:
        """
        Run one listen -> interpret -> respond -> speak cycle.

        Returns None when a turn is already in progress. Never raises for
        capture, assistant or speech failures; see the returned TurnResult.
        """
        if self._turn_active:
            logger.debug("Turn already in progress; ignoring handle_turn")
            return None

        self._turn_active = True
        self._cancel_requested = False
        self.metrics["turns"] += 1
        result = TurnResult()
        try:
            # new turn interrupts the greeting or a previous answer
            self.synthesis.stop()
            result.transcript = await self._listen(result, max_duration)

            if self._cancel_requested:
                result.cancelled = True
            elif result.error is not None:
                key = "permission_denied" if isinstance(result.error, PermissionDenied) else "retry"
                result.speech_outcome = await self._speak(self.phrases.get(key, self._language))
            elif result.transcript:
                await self._respond(result)
            result.cancelled = result.cancelled or self._cancel_requested
            return result
        finally:
            self._turn_active = False
            self._answer_task = None
            self._state = ControllerState.IDLE

    def finish_listening(self):
        """Ask the capture backend to stop recording and deliver its transcript."""
        self.capture.finish()

    async def _listen(self, result: TurnResult, max_duration: Optional[float]) -> Optional[str]:
        loop = asyncio.get_running_loop()
        ended: asyncio.Future = loop.create_future()
        transcript: Dict[str, str] = {}

        def on_final(text: str):
            transcript["final"] = text

        def on_error(error: VoiceEngineError):
            result.error = error
            self._report_error(error)

        def on_end():
            if not ended.done():
                ended.set_result(transcript.get("final"))

        handlers = CaptureHandlers(
            on_partial=self._on_transcript,
            on_final=on_final,
            on_error=on_error,
            on_end=on_end,
        )

        self._state = ControllerState.LISTENING
        cap = max_duration if max_duration is not None else self.capture_timeout
        try:
            await self.capture.start(self._language, handlers, max_duration=cap)
            return await ended
        except asyncio.CancelledError:
            self.capture.stop()
            raise
        finally:
            self._state = ControllerState.PROCESSING

    async def _respond(self, result: TurnResult):
        command = self.interpreter.interpret(result.transcript, self._language)
        result.command = command
        logger.info(f"Turn command: {command.kind}")

        if isinstance(command, Emergency):
            self.metrics["emergencies"] += 1
            self._emit(VoiceEvent(kind="emergency", target=command.target))
            result.response = self.phrases.get("emergency", self._language)
            result.speech_outcome = await self._speak(result.response, emergency=True)
            return

        if isinstance(command, Navigate):
            self.metrics["navigations"] += 1
            self._emit(VoiceEvent(kind="navigate", target=command.target))
            result.response = self.phrases.navigation(command.target, self._language)
            result.speech_outcome = await self._speak(result.response)
            return

        self.metrics["queries"] += 1
        answer = await self._answer(command, result)
        if result.cancelled:
            return
        result.response = answer
        result.speech_outcome = await self._speak(answer)

    async def _answer(self, command: Query, result: TurnResult) -> str:
        fallback = self.phrases.get("assistant_unavailable", self._language)
        if self.answerer is None:
            result.answer_failed = True
            return fallback

        task = asyncio.get_running_loop().create_task(self.answerer.answer(command.text, self._language))
        self._answer_task = task
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            raise

        if task.cancelled():
            result.cancelled = True
            return ""
        error = task.exception()
        if error is not None:
            self.metrics["answer_failures"] += 1
            result.answer_failed = True
            logger.warning(f"Query answering failed: {error}")
            return fallback

        answer = (task.result() or "").strip()
        if not answer:
            result.answer_failed = True
            return fallback
        return answer

    async def _speak(self, text: str, emergency: bool = False) -> SpeechOutcome:
        if self._cancel_requested:
            return SpeechOutcome.CANCELLED
        self._state = ControllerState.SPEAKING
        if emergency:
            outcome = await self.synthesis.speak_emergency(text)
        else:
            outcome = await self.synthesis.speak(text)
        if outcome in (SpeechOutcome.ERROR, SpeechOutcome.START_TIMEOUT):
            logger.warning(f"Speech output failed ({outcome.value}); continuing")
        return outcome

    # ---- host notifications -----------------------------------------------

    def _emit(self, event: VoiceEvent):
        if self._event_sink is None:
            return
        try:
            self._event_sink(event)
        except Exception as e:
            log_traceback(logger, e, "Event sink raised")

    def _report_error(self, error: VoiceEngineError):
        self.metrics["capture_errors"] += 1
        self.last_error = error
        self._state = ControllerState.ERROR
        if self._on_error is None:
            return
        try:
            self._on_error(error)
        except Exception as e:
            log_traceback(logger, e, "Error handler raised")

    # ---- cancellation -------------------------------------------------------

    def cancel(self):
        """Stop capture, speech and any pending assistant request. Safe to call repeatedly."""
        if self._turn_active and not self._cancel_requested:
            self._cancel_requested = True
            self.metrics["cancellations"] += 1
        self.capture.stop()
        self.synthesis.stop()
        if self._answer_task is not None and not self._answer_task.done():
            self._answer_task.cancel()
        self._state = ControllerState.IDLE

    def get_session_stats(self) -> Dict[str, Any]:
        return {
            **self.metrics,
            "language": self._language,
            "state": self._state.value,
            "synthesis": dict(self.synthesis.stats),
        }
