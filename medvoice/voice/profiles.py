"""
medvoice/voice/profiles.py

MedVoice - Voice Profiles & Voice Selection
-------------------------------------------
• Per-language synthesis parameters (locale, rate, pitch, volume) with clamped ranges
• Deterministic voice selection from a backend's candidate list with an ordered fallback chain
• Low-quality engines (eSpeak) are only ever used as a last resort

License: Apache 2.0
"""

from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence

from medvoice.utils.language import (
    DEFAULT_LANGUAGE,
    ENGLISH_FALLBACK_LOCALES,
    LANGUAGE_VOICE_TABLE,
    normalize_language,
    primary_subtag,
)
from medvoice.utils.logger import get_logger

logger = get_logger(__name__)

# -------------------------------
# Constants
# -------------------------------

RATE_RANGE = (0.5, 2.0)
PITCH_RANGE = (0.5, 2.0)
VOLUME_RANGE = (0.1, 1.0)
DEFAULT_VOLUME = 1.0

LOW_QUALITY_MARKERS = ("espeak",)

MEDICAL_RATE_FACTOR = 0.8
MEDICAL_PITCH_FACTOR = 0.95
EMERGENCY_RATE_FACTOR = 1.2
EMERGENCY_PITCH_FACTOR = 1.1

LanguageTag = str


def _clamp(value: float, bounds) -> float:
    low, high = bounds
    return max(low, min(float(value), high))


def normalize_locale(locale: Optional[str]) -> str:
    return (locale or "").replace("_", "-").lower()

# -------------------------------
# Data Structures
# -------------------------------

@dataclass(frozen=True)
class VoiceProfile:
    """Synthesis parameters for one language. Values are clamped on construction."""
    locale: str
    rate: float = 1.0
    pitch: float = 1.0
    volume: float = DEFAULT_VOLUME

    def __post_init__(self):
        object.__setattr__(self, "rate", _clamp(self.rate, RATE_RANGE))
        object.__setattr__(self, "pitch", _clamp(self.pitch, PITCH_RANGE))
        object.__setattr__(self, "volume", _clamp(self.volume, VOLUME_RANGE))

    def with_overrides(self, locale: Optional[str] = None, rate: Optional[float] = None,
                       pitch: Optional[float] = None, volume: Optional[float] = None) -> "VoiceProfile":
        return VoiceProfile(
            locale=locale or self.locale,
            rate=self.rate if rate is None else rate,
            pitch=self.pitch if pitch is None else pitch,
            volume=self.volume if volume is None else volume,
        )

    def medical(self) -> "VoiceProfile":
        """Slower, slightly lower voice for medical terminology."""
        return self.with_overrides(rate=self.rate * MEDICAL_RATE_FACTOR,
                                   pitch=self.pitch * MEDICAL_PITCH_FACTOR)

    def emergency(self) -> "VoiceProfile":
        """Faster, higher voice at full volume for urgent messages."""
        return self.with_overrides(rate=self.rate * EMERGENCY_RATE_FACTOR,
                                   pitch=self.pitch * EMERGENCY_PITCH_FACTOR,
                                   volume=1.0)


@dataclass(frozen=True)
class VoiceCandidate:
    """A voice offered by a synthesis backend."""
    voice_id: str
    name: str
    locale: str
    is_local: bool = True
    engine_hint: str = ""

    @property
    def is_low_quality(self) -> bool:
        haystack = f"{self.engine_hint} {self.name} {self.voice_id}".lower()
        return any(marker in haystack for marker in LOW_QUALITY_MARKERS)

    @property
    def family(self) -> str:
        return primary_subtag(self.locale)

# -------------------------------
# Resolver
# -------------------------------

class VoiceProfileResolver:
    """
    Looks up synthesis parameters per language and picks the best available voice.

    Selection order, first match wins (low-quality voices skipped until the last step):
      1. exact locale, on-device
      2. exact locale
      3. same language family, on-device
      4. same language family
      5. en-IN / en-US, on-device
      6. any English voice
      7. first candidate, whatever its quality
    """

    def __init__(self, table=None):
        table = table or LANGUAGE_VOICE_TABLE
        self._profiles = {
            tag: VoiceProfile(locale=locale, rate=rate, pitch=pitch)
            for tag, (locale, rate, pitch) in table.items()
        }
        self._default = self._profiles.get(DEFAULT_LANGUAGE) or VoiceProfile(locale="en-IN")

    def profile_for(self, language: LanguageTag) -> VoiceProfile:
        return self._profiles.get(normalize_language(language), self._default)

    def locale_for(self, language: LanguageTag) -> str:
        return self.profile_for(language).locale

    def supported_languages(self) -> List[LanguageTag]:
        return list(self._profiles.keys())

    def is_supported(self, language: LanguageTag) -> bool:
        return normalize_language(language) in self._profiles

    def resolve_voice(self, language: LanguageTag,
                      candidates: Sequence[VoiceCandidate]) -> Optional[VoiceCandidate]:
        """Pick a voice for ``language``; None only when ``candidates`` is empty."""
        if not candidates:
            return None
        return self.select(self.locale_for(language), candidates)

    def select(self, locale: str, candidates: Sequence[VoiceCandidate]) -> Optional[VoiceCandidate]:
        """Apply the fallback chain for an explicit locale."""
        if not candidates:
            return None

        target = normalize_locale(locale)
        family = primary_subtag(target)
        english = {normalize_locale(loc) for loc in ENGLISH_FALLBACK_LOCALES}
        usable = [c for c in candidates if not c.is_low_quality]

        rules = (
            lambda c: normalize_locale(c.locale) == target and c.is_local,
            lambda c: normalize_locale(c.locale) == target,
            lambda c: c.family == family and c.is_local,
            lambda c: c.family == family,
            lambda c: normalize_locale(c.locale) in english and c.is_local,
            lambda c: c.family == "en",
        )
        for step, rule in enumerate(rules, start=1):
            for candidate in usable:
                if rule(candidate):
                    if step > 4:
                        logger.info(f"No {locale} voice available, falling back to {candidate.locale}")
                    return candidate

        logger.warning(f"No suitable voice for {locale}; using first available: {candidates[0].name}")
        return candidates[0]

    def candidates_for(self, language: LanguageTag,
                       candidates: Iterable[VoiceCandidate]) -> List[VoiceCandidate]:
        """All candidates in the language family of ``language``."""
        family = primary_subtag(self.locale_for(language))
        return [c for c in candidates if c.family == family]

    def is_offline_voice_available(self, language: LanguageTag,
                                   candidates: Iterable[VoiceCandidate]) -> bool:
        return any(c.is_local for c in self.candidates_for(language, candidates))


_resolver: Optional[VoiceProfileResolver] = None

def get_voice_profile_resolver() -> VoiceProfileResolver:
    global _resolver
    if _resolver is None:
        _resolver = VoiceProfileResolver()
    return _resolver
