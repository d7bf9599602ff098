"""
medvoice/core/engine.py

MedVoice - Engine Assembly
--------------------------
• Builds synthesis, capture and answering collaborators from configuration
• Falls back from the preferred backend to the other one when a platform library or service is missing
• Returns a ready VoiceInteractionController owning its sessions

License: Apache 2.0
"""

from typing import Any, Callable, Optional

from medvoice.core.config_loader import MedVoiceConfig, get_config
from medvoice.core.errors import BackendUnavailable, VoiceEngineError
from medvoice.ui.voice_interface import VoiceEvent, VoiceInteractionController
from medvoice.utils.language import PhraseCatalog
from medvoice.utils.logger import get_logger
from medvoice.voice.answering import OpenAIQueryAnswerer, QueryAnswerer
from medvoice.voice.capture import CaptureBackend, CaptureSession
from medvoice.voice.commands import CommandInterpreter
from medvoice.voice.profiles import get_voice_profile_resolver
from medvoice.voice.synthesis import SynthesisBackend, SynthesisSession

logger = get_logger(__name__)


def _local_synthesis(config: MedVoiceConfig) -> SynthesisBackend:
    from medvoice.voice.backends.local_tts import LocalSynthesisBackend
    return LocalSynthesisBackend(base_rate_wpm=config.synthesis.base_rate_wpm)


def _cloud_synthesis(config: MedVoiceConfig) -> SynthesisBackend:
    from medvoice.voice.backends.cloud_tts import CloudSynthesisBackend
    cloud = config.cloud
    return CloudSynthesisBackend(model=cloud.tts_model, speed=cloud.tts_speed, api_key=cloud.api_key,
                                 base_url=cloud.base_url, timeout=cloud.request_timeout)


def _local_capture(config: MedVoiceConfig) -> CaptureBackend:
    from medvoice.voice.backends.local_asr import LocalCaptureBackend
    capture = config.capture
    return LocalCaptureBackend(model_paths=capture.vosk_model_paths, sample_rate=capture.sample_rate,
                               phrase_time_limit=capture.phrase_time_limit)


def _cloud_capture(config: MedVoiceConfig) -> CaptureBackend:
    from medvoice.voice.backends.cloud_asr import CloudCaptureBackend
    cloud, capture = config.cloud, config.capture
    return CloudCaptureBackend(model=cloud.stt_model, temperature=cloud.stt_temperature,
                               sample_rate=capture.sample_rate, chunk_size=capture.chunk_size,
                               api_key=cloud.api_key, base_url=cloud.base_url,
                               timeout=cloud.request_timeout)


def _with_fallback(kind: str, preferred: str, factories: dict, config: MedVoiceConfig):
    order = [preferred] + [name for name in factories if name != preferred]
    errors = []
    for name in order:
        try:
            backend = factories[name](config)
        except BackendUnavailable as e:
            logger.warning(f"{kind} backend '{name}' unavailable: {e}")
            errors.append(f"{name}: {e}")
            continue
        if name != preferred:
            logger.info(f"Using {name} {kind} backend instead of {preferred}")
        return backend
    raise BackendUnavailable(f"No usable {kind} backend ({'; '.join(errors)})")


def create_synthesis_backend(config: MedVoiceConfig) -> SynthesisBackend:
    return _with_fallback("synthesis", config.synthesis.backend,
                          {"local": _local_synthesis, "cloud": _cloud_synthesis}, config)


def create_capture_backend(config: MedVoiceConfig) -> CaptureBackend:
    return _with_fallback("capture", config.capture.backend,
                          {"local": _local_capture, "cloud": _cloud_capture}, config)


def create_answerer(config: MedVoiceConfig) -> Optional[QueryAnswerer]:
    cloud = config.cloud
    try:
        return OpenAIQueryAnswerer(model=cloud.chat_model, temperature=cloud.chat_temperature,
                                   max_tokens=cloud.chat_max_tokens, api_key=cloud.api_key,
                                   base_url=cloud.base_url, timeout=cloud.request_timeout)
    except VoiceEngineError as e:
        logger.warning(f"Health assistant disabled: {e}")
        return None


def build_controller(
    config: Optional[MedVoiceConfig] = None,
    event_sink: Optional[Callable[[VoiceEvent], Any]] = None,
    on_error: Optional[Callable[[VoiceEngineError], Any]] = None,
    on_transcript: Optional[Callable[[str], Any]] = None,
    synthesis_backend: Optional[SynthesisBackend] = None,
    capture_backend: Optional[CaptureBackend] = None,
    answerer: Optional[QueryAnswerer] = None,
) -> VoiceInteractionController:
    """Assemble a controller; explicit collaborators take precedence over configuration."""
    config = config or get_config()
    resolver = get_voice_profile_resolver()
    ui = config.voice_ui

    synthesis = SynthesisSession(
        synthesis_backend or create_synthesis_backend(config),
        resolver=resolver,
        language=ui.default_language,
        start_guard_floor=config.synthesis.start_guard_floor,
        start_guard_per_char=config.synthesis.start_guard_per_char,
    )
    capture = CaptureSession(
        capture_backend or create_capture_backend(config),
        resolver=resolver,
        max_duration=ui.capture_timeout,
    )
    if answerer is None:
        answerer = create_answerer(config)

    controller = VoiceInteractionController(
        synthesis=synthesis,
        capture=capture,
        interpreter=CommandInterpreter(),
        answerer=answerer,
        event_sink=event_sink,
        phrases=PhraseCatalog(ui.phrase_overrides),
        language=ui.default_language,
        on_error=on_error,
        on_transcript=on_transcript,
        greet_on_activate=ui.greet_on_activate,
    )
    logger.info(f"Voice engine ready: synthesis={synthesis.backend.name}, capture={capture.backend.name}, "
                f"language={controller.language}")
    return controller
