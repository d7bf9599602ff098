"""
medvoice/voice/backends/cloud_tts.py

MedVoice - Cloud Speech Synthesis (OpenAI TTS)
----------------------------------------------
• Natural multilingual voices from the OpenAI speech endpoint, played locally through PyAudio
• One OpenAI voice per language tag; every supported locale is offered as a remote candidate
• Pause, resume and stop act on the playback loop

License: Apache 2.0
"""

import threading
from typing import Callable, Dict, List, Optional

from openai import OpenAI, OpenAIError

from medvoice.core.errors import BackendUnavailable
from medvoice.utils.language import LANGUAGE_VOICE_TABLE
from medvoice.utils.logger import get_logger
from medvoice.voice.backends.audio_io import WavPlayer, default_audio_factory
from medvoice.voice.profiles import VoiceCandidate, normalize_locale
from medvoice.voice.synthesis import SynthesisBackend, SynthesisEvents, SynthesisRequest

logger = get_logger(__name__)

DEFAULT_VOICE = "nova"
SPEED_RANGE = (0.25, 4.0)

# language tag -> OpenAI voice
OPENAI_VOICES: Dict[str, str] = {
    "english": "nova",
    "hindi": "alloy",
    "tamil": "shimmer",
    "telugu": "alloy",
    "bengali": "echo",
    "marathi": "nova",
    "punjabi": "fable",
    "gujarati": "shimmer",
    "kannada": "nova",
    "malayalam": "alloy",
    "odia": "echo",
    "assamese": "fable",
}


def voice_catalog() -> List[VoiceCandidate]:
    """One remote candidate per distinct locale in the language table."""
    candidates: Dict[str, VoiceCandidate] = {}
    for tag, (locale, _rate, _pitch) in LANGUAGE_VOICE_TABLE.items():
        key = normalize_locale(locale)
        if key in candidates:
            continue
        voice = OPENAI_VOICES.get(tag, DEFAULT_VOICE)
        candidates[key] = VoiceCandidate(
            voice_id=voice,
            name=f"OpenAI {voice} ({locale})",
            locale=locale,
            is_local=False,
            engine_hint="openai",
        )
    return list(candidates.values())


class CloudSynthesisBackend(SynthesisBackend):
    """OpenAI speech synthesis with local playback."""

    name = "openai-tts"
    is_local = False

    def __init__(
        self,
        client: Optional[OpenAI] = None,
        model: str = "tts-1-hd",
        speed: float = 0.9,
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
        self.speed = speed
        self._audio_factory = audio_factory
        self._player: Optional[WavPlayer] = None
        self._generation = 0
        self._lock = threading.Lock()

    async def list_voices(self) -> List[VoiceCandidate]:
        return voice_catalog()

    def _speed_for(self, request: SynthesisRequest) -> float:
        low, high = SPEED_RANGE
        return max(low, min(self.speed * request.profile.rate, high))

    def submit(self, request: SynthesisRequest, events: SynthesisEvents) -> None:
        with self._lock:
            generation = self._generation
        worker = threading.Thread(target=self._speak_sync, args=(request, events, generation),
                                  name=f"medvoice-tts-{request.utterance_id}", daemon=True)
        worker.start()

    def _is_stale(self, generation: int) -> bool:
        with self._lock:
            return generation != self._generation

    def _speak_sync(self, request: SynthesisRequest, events: SynthesisEvents, generation: int):
        voice = request.voice.voice_id if request.voice is not None else DEFAULT_VOICE
        try:
            response = self._client.audio.speech.create(
                model=self.model,
                voice=voice,
                input=request.text,
                speed=self._speed_for(request),
                response_format="wav",
            )
            audio = response.read()
            player = WavPlayer(self._audio_factory)
            with self._lock:
                if generation != self._generation:
                    return
                self._player = player
            finished = player.play(audio, on_start=events.on_start)
        except Exception as e:
            logger.error(f"Cloud speech failed: {e}")
            events.on_error(e)
            return

        if finished and not self._is_stale(generation):
            events.on_end()

    def _active_player(self) -> Optional[WavPlayer]:
        with self._lock:
            return self._player

    def stop(self) -> None:
        with self._lock:
            self._generation += 1
            player, self._player = self._player, None
        if player is not None:
            player.stop()

    def pause(self) -> None:
        player = self._active_player()
        if player is not None:
            player.pause()

    def resume(self) -> None:
        player = self._active_player()
        if player is not None:
            player.resume()
