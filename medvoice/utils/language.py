"""
medvoice/utils/language.py

MedVoice - Language Catalog & Spoken Phrase Tables
--------------------------------------------------
• Maps engine language tags ("hindi", "tamil", ...) to BCP-47 locales and synthesis parameters
• Regional fallbacks for languages without a dedicated platform voice (Kashmiri, Bodo, Sanskrit, ...)
• Localized greeting, confirmation and error phrases spoken by the interaction controller

License: Apache 2.0
"""

from typing import Dict, List, Optional, Tuple

# -------------------------------
# Language Configuration & Mappings
# -------------------------------

DEFAULT_LANGUAGE = "english"
ENGLISH_FALLBACK_LOCALES = ("en-IN", "en-US")

# tag -> (locale, rate multiplier, pitch multiplier)
LANGUAGE_VOICE_TABLE: Dict[str, Tuple[str, float, float]] = {
    "english": ("en-IN", 1.0, 1.0),
    "hindi": ("hi-IN", 0.9, 1.0),
    "bengali": ("bn-IN", 0.9, 1.0),
    "telugu": ("te-IN", 0.9, 1.0),
    "marathi": ("mr-IN", 0.9, 1.0),
    "tamil": ("ta-IN", 0.9, 1.0),
    "gujarati": ("gu-IN", 0.9, 1.0),
    "kannada": ("kn-IN", 0.9, 1.0),
    "malayalam": ("ml-IN", 0.9, 1.0),
    "punjabi": ("pa-IN", 0.9, 1.0),
    "odia": ("or-IN", 0.9, 1.0),
    "assamese": ("as-IN", 0.9, 1.0),
    "urdu": ("ur-IN", 0.9, 1.0),
    # Regional languages routed to the closest widely installed voice
    "kashmiri": ("hi-IN", 0.8, 1.0),
    "sindhi": ("ur-IN", 0.8, 1.0),
    "manipuri": ("hi-IN", 0.8, 1.0),
    "bodo": ("as-IN", 0.8, 1.0),
    "konkani": ("hi-IN", 0.8, 1.0),
    "sanskrit": ("hi-IN", 0.7, 0.9),
    "maithili": ("hi-IN", 0.8, 1.0),
    "santali": ("hi-IN", 0.8, 1.0),
    "dogri": ("hi-IN", 0.8, 1.0),
    "nepali": ("ne-NP", 0.9, 1.0),
}

LANGUAGE_NAMES: Dict[str, str] = {
    "english": "English",
    "hindi": "हिन्दी",
    "bengali": "বাংলা",
    "telugu": "తెలుగు",
    "marathi": "मराठी",
    "tamil": "தமிழ்",
    "gujarati": "ગુજરાતી",
    "kannada": "ಕನ್ನಡ",
    "malayalam": "മലയാളം",
    "punjabi": "ਪੰਜਾਬੀ",
    "odia": "ଓଡ଼ିଆ",
    "assamese": "অসমীয়া",
    "urdu": "اردو",
    "kashmiri": "कॉशुर",
    "sindhi": "سنڌي",
    "manipuri": "মৈতৈলোন্",
    "bodo": "बड़ो",
    "konkani": "कोंकणी",
    "sanskrit": "संस्कृतम्",
    "maithili": "मैथिली",
    "santali": "ᱥᱟᱱᱛᱟᱲᱤ",
    "dogri": "डोगरी",
    "nepali": "नेपाली",
}

# ISO 639-1 codes used by transcription services
TRANSCRIPTION_CODES: Dict[str, str] = {
    "english": "en", "hindi": "hi", "bengali": "bn", "telugu": "te",
    "marathi": "mr", "tamil": "ta", "gujarati": "gu", "kannada": "kn",
    "malayalam": "ml", "punjabi": "pa", "odia": "or", "assamese": "as",
    "urdu": "ur", "nepali": "ne", "sanskrit": "sa",
}

# -------------------------------
# Spoken Phrases
# -------------------------------

VOICE_PHRASES: Dict[str, Dict[str, str]] = {
    "english": {
        "greeting_morning": "Good morning! I'm your MedVoice assistant. How can I help you today?",
        "greeting_afternoon": "Good afternoon! I'm here to help with your health needs.",
        "greeting_evening": "Good evening! How can I assist you with your health today?",
        "navigate_appointments": "Opening appointment booking.",
        "navigate_medications": "Showing your medications.",
        "navigate_health-records": "Opening your health records.",
        "navigate_vitals": "Opening health vitals.",
        "navigate_family-health": "Opening family health.",
        "navigate_consultation": "Starting a video consultation.",
        "navigate_asha-worker": "Connecting you with your ASHA worker.",
        "navigate_dashboard": "Going to your dashboard.",
        "navigate_default": "Opening {target}.",
        "emergency": "Connecting to emergency services.",
        "retry": "Sorry, please try again.",
        "permission_denied": "I need microphone permission to hear you.",
        "assistant_unavailable": "The health assistant is temporarily unavailable.",
    },
    "hindi": {
        "greeting_morning": "सुप्रभात! मैं आपका MedVoice आवाज सहायक हूं। आज मैं आपकी कैसे मदद कर सकता हूं?",
        "greeting_afternoon": "नमस्कार! मैं आपकी स्वास्थ्य आवश्यकताओं में मदद के लिए यहां हूं।",
        "greeting_evening": "शुभ संध्या! आज मैं आपके स्वास्थ्य में कैसे सहायता कर सकता हूं?",
        "navigate_appointments": "अपॉइंटमेंट बुकिंग खोल रहा हूं।",
        "navigate_medications": "आपकी दवाइयां दिखा रहा हूं।",
        "navigate_health-records": "आपके स्वास्थ्य रिकॉर्ड खोल रहा हूं।",
        "navigate_vitals": "आपके स्वास्थ्य संकेतक खोल रहा हूं।",
        "emergency": "आपातकालीन सेवाओं से जोड़ रहा हूं।",
        "retry": "माफ करें, कृपया दोबारा कोशिश करें।",
        "assistant_unavailable": "स्वास्थ्य सहायक अभी उपलब्ध नहीं है।",
    },
    "tamil": {
        "greeting_morning": "காலை வணக்கம்! நான் உங்கள் MedVoice குரல் உதவியாளர். இன்று நான் எப்படி உதவ முடியும்?",
        "greeting_afternoon": "மதியம் வணக்கம்! உங்கள் சுகாதார தேவைகளில் உதவ நான் இங்கே இருக்கிறேன்.",
        "greeting_evening": "மாலை வணக்கம்! இன்று உங்கள் சுகாதாரத்தில் நான் எப்படி உதவ முடியும்?",
        "navigate_appointments": "அப்பாயின்ட்மென்ட் புக்கிங் திறக்கிறேன்.",
        "navigate_medications": "உங்கள் மருந்துகளை காட்டுகிறேன்.",
        "navigate_vitals": "உங்கள் உயிர்ச்சக்தி கண்காணிப்பை திறக்கிறேன்.",
        "emergency": "அவசர சேவைகளுடன் இணைக்கிறேன்.",
        "retry": "மன்னிக்கவும், மீண்டும் முயற்சிக்கவும்.",
    },
}


class PhraseCatalog:
    """Localized phrase lookup with English fallback per key; hosts may override entries."""

    def __init__(self, overrides: Optional[Dict[str, Dict[str, str]]] = None):
        self._phrases: Dict[str, Dict[str, str]] = {
            lang: dict(table) for lang, table in VOICE_PHRASES.items()
        }
        for lang, table in (overrides or {}).items():
            self._phrases.setdefault(lang, {}).update(table)

    def get(self, key: str, language: str, **kwargs) -> str:
        table = self._phrases.get(language, {})
        template = table.get(key)
        if template is None:
            template = self._phrases.get(DEFAULT_LANGUAGE, {}).get(key, "")
        try:
            return template.format(**kwargs)
        except (KeyError, IndexError):
            return template

    def greeting(self, language: str, hour: int) -> str:
        """Time-of-day greeting: morning before 12h, afternoon before 17h, evening otherwise."""
        if hour < 12:
            key = "greeting_morning"
        elif hour < 17:
            key = "greeting_afternoon"
        else:
            key = "greeting_evening"
        return self.get(key, language)

    def navigation(self, target: str, language: str) -> str:
        phrase = self.get(f"navigate_{target}", language)
        return phrase or self.get("navigate_default", language, target=target.replace("-", " "))


# -------------------------------
# Global Utility Functions
# -------------------------------

def normalize_language(tag: Optional[str]) -> str:
    return (tag or "").strip().lower()


def get_language_name(tag: str) -> str:
    """Native display name for a tag, or the tag itself."""
    return LANGUAGE_NAMES.get(normalize_language(tag), tag)


def get_locale(tag: str) -> str:
    """BCP-47 locale for a tag; unknown tags map to the English locale."""
    entry = LANGUAGE_VOICE_TABLE.get(normalize_language(tag))
    return entry[0] if entry else LANGUAGE_VOICE_TABLE[DEFAULT_LANGUAGE][0]


def get_transcription_code(tag: str) -> Optional[str]:
    """ISO code for cloud transcription, or None to let the service auto-detect."""
    return TRANSCRIPTION_CODES.get(normalize_language(tag))


def list_supported() -> List[str]:
    return list(LANGUAGE_VOICE_TABLE.keys())


def is_language_supported(tag: str) -> bool:
    return normalize_language(tag) in LANGUAGE_VOICE_TABLE


def primary_subtag(locale: str) -> str:
    """Language family of a locale: "hi" for "hi-IN" or "hi_IN"."""
    return locale.replace("_", "-").split("-")[0].lower()
