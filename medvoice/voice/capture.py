"""
medvoice/voice/capture.py

MedVoice - Speech Capture Session
---------------------------------
• Owns at most one capture/recognition attempt; starting a new one terminates the previous one
• Permission check before every start, maximum-duration cap, idempotent stop
• Exactly one end notification per request, whatever ended it (final, no speech, stop, cap, error)

License: Apache 2.0
"""

import asyncio
import itertools
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from medvoice.core.errors import (
    BackendUnavailable,
    CaptureTimeout,
    PermissionDenied,
    RecognitionError,
    VoiceEngineError,
)
from medvoice.utils.language import DEFAULT_LANGUAGE, normalize_language
from medvoice.utils.logger import get_logger, log_traceback
from medvoice.voice.profiles import LanguageTag, VoiceProfileResolver, get_voice_profile_resolver

logger = get_logger(__name__)

DEFAULT_MAX_DURATION = 30.0  # seconds

# -------------------------------
# Enums and Data Structures
# -------------------------------

class CaptureState(Enum):
    IDLE = "idle"
    LISTENING = "listening"
    ERROR = "error"


@dataclass
class CaptureHandlers:
    """Host callbacks for one capture request. All run on the event loop."""
    on_partial: Optional[Callable[[str], Any]] = None
    on_final: Optional[Callable[[str], Any]] = None
    on_error: Optional[Callable[[VoiceEngineError], Any]] = None
    on_end: Optional[Callable[[], Any]] = None


@dataclass
class CaptureRequest:
    request_id: int
    language: LanguageTag
    locale: str
    handlers: CaptureHandlers
    started: bool = False
    finishing: bool = False
    final_delivered: bool = False
    cap: Optional[asyncio.TimerHandle] = field(default=None, repr=False)

    def disarm_cap(self):
        if self.cap is not None:
            self.cap.cancel()
            self.cap = None

# -------------------------------
# Backend Contract
# -------------------------------

class CaptureEvents:
    """Callbacks handed to a backend for one request; safe to call from any thread."""

    def __init__(self, session: "CaptureSession", request_id: int,
                 loop: asyncio.AbstractEventLoop):
        self._session = session
        self._request_id = request_id
        self._loop = loop

    def on_partial(self, text: str):
        self._post(self._session._handle_partial, text)

    def on_final(self, text: str):
        self._post(self._session._handle_final, text)

    def on_no_speech(self):
        self._post(self._session._handle_end)

    def on_end(self):
        self._post(self._session._handle_end)

    def on_error(self, error: BaseException):
        self._post(self._session._handle_error, error)

    def _post(self, callback, *args: Any):
        if self._loop.is_closed():
            logger.debug(f"Dropping capture event for request {self._request_id}: loop closed")
            return
        self._loop.call_soon_threadsafe(callback, self._request_id, *args)


class CaptureBackend(ABC):
    """Platform microphone plus recognizer."""

    name = "capture"
    is_local = True

    @abstractmethod
    async def request_permission(self) -> bool:
        ...

    @abstractmethod
    def start(self, locale: str, events: CaptureEvents) -> None:
        """Begin capturing; must not block."""

    def finish(self) -> None:
        """End recording and deliver the final transcript. Defaults to ``stop``."""
        self.stop()

    @abstractmethod
    def stop(self) -> None:
        """Abort capture without a final transcript."""

    def close(self) -> None:
        pass

# -------------------------------
# Capture Session
# -------------------------------

class CaptureSession:
    """Single active capture request with permission check and duration cap."""

    def __init__(
        self,
        backend: CaptureBackend,
        resolver: Optional[VoiceProfileResolver] = None,
        max_duration: float = DEFAULT_MAX_DURATION,
    ):
        self._backend = backend
        self._resolver = resolver or get_voice_profile_resolver()
        self.max_duration = max_duration

        self._ids = itertools.count(1)
        self._request: Optional[CaptureRequest] = None
        self._state = CaptureState.IDLE
        self.last_error: Optional[VoiceEngineError] = None

    @property
    def state(self) -> CaptureState:
        return self._state

    @property
    def backend(self) -> CaptureBackend:
        return self._backend

    @property
    def current_request(self) -> Optional[CaptureRequest]:
        return self._request

    def is_active(self) -> bool:
        return self._request is not None

    async def start(self, language: LanguageTag, handlers: CaptureHandlers,
                    max_duration: Optional[float] = None) -> Optional[CaptureRequest]:
        """
        Start capturing speech in ``language``.

        A capture already in progress is terminated first. Permission denial and
        backend failures are reported through ``handlers.on_error`` followed by
        ``handlers.on_end``; nothing is retried. Returns the live request, or None
        when the attempt ended before listening began.
        """
        loop = asyncio.get_running_loop()
        if self._request is not None:
            logger.info(f"Capture request {self._request.request_id} preempted by a new start")
            self._terminate(self._request)

        language = normalize_language(language) or DEFAULT_LANGUAGE
        request = CaptureRequest(
            request_id=next(self._ids),
            language=language,
            locale=self._resolver.locale_for(language),
            handlers=handlers,
        )
        self._request = request
        self._state = CaptureState.LISTENING

        try:
            granted = await self._backend.request_permission()
        except VoiceEngineError as e:
            self._terminate(request, error=e)
            return None
        except Exception as e:
            self._terminate(request, error=BackendUnavailable(str(e), cause=e))
            return None

        if self._request is not request:
            # stopped or preempted while waiting for permission
            return None
        if not granted:
            logger.warning("Microphone permission denied")
            self._terminate(request, error=PermissionDenied())
            return None

        try:
            self._backend.start(request.locale, CaptureEvents(self, request.request_id, loop))
        except VoiceEngineError as e:
            self._terminate(request, error=e)
            return None
        except Exception as e:
            self._terminate(request, error=RecognitionError(str(e), cause=e))
            return None

        request.started = True
        cap = self.max_duration if max_duration is None else max_duration
        request.cap = loop.call_later(cap, self._handle_cap, request.request_id)
        logger.info(f"Listening ({request.locale}, cap {cap:.0f}s) via {self._backend.name}")
        return request

    def finish(self):
        """Stop recording and wait for the backend's final transcript."""
        request = self._request
        if request is None or not request.started or request.finishing:
            return
        request.finishing = True
        try:
            self._backend.finish()
        except Exception as e:
            self._terminate(request, error=RecognitionError(str(e), cause=e))

    def stop(self):
        """Abort the active capture. Safe to call at any time."""
        if self._request is not None:
            self._terminate(self._request)

    def close(self):
        self.stop()
        self._backend.close()

    # ---- termination ---------------------------------------------------

    def _terminate(self, request: CaptureRequest, error: Optional[VoiceEngineError] = None):
        if self._request is not request:
            return
        self._request = None
        request.disarm_cap()

        # a started backend is released on every end, including its own final or no-speech
        if request.started:
            try:
                self._backend.stop()
            except Exception as e:
                logger.warning(f"{self._backend.name} stop failed: {e}")

        if error is not None:
            self._state = CaptureState.ERROR
            self.last_error = error
            logger.warning(f"Capture request {request.request_id} failed: {error.code}: {error}")
            self._dispatch(request.handlers.on_error, error)

        self._state = CaptureState.IDLE
        self._dispatch(request.handlers.on_end)

    def _dispatch(self, callback: Optional[Callable], *args):
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            log_traceback(logger, e, "Capture handler raised")

    # ---- backend events (event loop thread) -----------------------------

    def _live(self, request_id: int) -> Optional[CaptureRequest]:
        request = self._request
        if request is None or request.request_id != request_id:
            return None
        return request

    def _handle_partial(self, request_id: int, text: str):
        request = self._live(request_id)
        if request is not None and text:
            self._dispatch(request.handlers.on_partial, text)

    def _handle_final(self, request_id: int, text: str):
        request = self._live(request_id)
        if request is None or request.final_delivered:
            return
        text = (text or "").strip()
        if not text:
            # empty result counts as no speech
            self._terminate(request)
            return
        request.final_delivered = True
        self._dispatch(request.handlers.on_final, text)
        self._terminate(request)

    def _handle_end(self, request_id: int):
        request = self._live(request_id)
        if request is not None:
            self._terminate(request)

    def _handle_error(self, request_id: int, error: BaseException):
        request = self._live(request_id)
        if request is None:
            return
        if not isinstance(error, VoiceEngineError):
            error = RecognitionError(str(error), cause=error)
        self._terminate(request, error=error)

    def _handle_cap(self, request_id: int):
        request = self._live(request_id)
        if request is None:
            return
        request.cap = None
        logger.info(f"Capture request {request_id} reached its maximum duration")
        self._terminate(request, error=CaptureTimeout())
