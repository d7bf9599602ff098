"""
medvoice/core/errors.py

MedVoice - Engine Error Taxonomy
--------------------------------
• One base class for every failure the voice engine reports to its host
• Capture errors reach the host through handlers; synthesis errors are logged and absorbed
• Configuration errors live here too so callers import a single module

License: Apache 2.0
"""


class VoiceEngineError(Exception):
    """Base voice engine error."""
    code = "voice_engine_error"

    def __init__(self, message: str = "", *, cause: BaseException = None):
        super().__init__(message or self.__class__.__doc__)
        self.cause = cause


class PermissionDenied(VoiceEngineError):
    """Microphone or audio permission was refused."""
    code = "permission_denied"


class BackendUnavailable(VoiceEngineError):
    """No capture or synthesis backend is usable on this platform."""
    code = "backend_unavailable"


class NoVoiceMatch(VoiceEngineError):
    """No installed voice matches the requested locale."""
    code = "no_voice_match"


class StartTimeout(VoiceEngineError):
    """Synthesis did not begin playback within the start guard."""
    code = "start_timeout"


class RecognitionError(VoiceEngineError):
    """Speech recognition failed after capture started."""
    code = "recognition_error"


class CaptureTimeout(VoiceEngineError):
    """Capture reached its maximum duration."""
    code = "capture_timeout"


# -------------------------------
# Configuration Exceptions
# -------------------------------

class ConfigError(Exception):
    """Base configuration error."""
    pass


class ConfigLoadError(ConfigError):
    """Configuration loading error."""
    pass


class ConfigValidationError(ConfigError):
    """Configuration validation error."""
    pass
