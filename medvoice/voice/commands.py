"""
medvoice/voice/commands.py

MedVoice - Voice Command Interpreter
------------------------------------
• Classifies a final transcript as a navigation command, an emergency, or a free-form health query
• Keyword tables per language plus a language-agnostic default table (English and romanized Hindi)
• Emergency keywords always win over navigation so "call the doctor, it's urgent" is an emergency

License: Apache 2.0
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple, Union

from medvoice.utils.language import normalize_language
from medvoice.utils.logger import get_logger

logger = get_logger(__name__)

EMERGENCY_NUMBER = "108"

# -------------------------------
# Commands
# -------------------------------

@dataclass(frozen=True)
class Navigate:
    target: str
    kind: str = "navigate"


@dataclass(frozen=True)
class Emergency:
    target: str = EMERGENCY_NUMBER
    kind: str = "emergency"


@dataclass(frozen=True)
class Query:
    text: str
    kind: str = "query"


Command = Union[Navigate, Emergency, Query]

# -------------------------------
# Keyword Tables
# -------------------------------

# navigation target -> keywords
NavigationRules = Dict[str, List[str]]


@dataclass
class CommandRules:
    emergency: List[str]
    navigation: NavigationRules


DEFAULT_RULES = CommandRules(
    emergency=[
        "emergency", "urgent", "ambulance", "call 108", "dial 108", "critical", "unconscious",
        "bleeding", "heart attack", "chest pain", "accident", "help me",
        "emergency hai", "madad karo", "bachao",
    ],
    navigation={
        "appointments": ["appointment", "book", "doctor"],
        "medications": ["medicine", "medication", "prescription", "tablet", "pill", "dawa", "dawai"],
        "health-records": ["health record", "medical record", "report", "records"],
        "vitals": ["vitals", "blood pressure", "heart rate", "sugar level", "pulse"],
        "family-health": ["family health", "family member", "family"],
        "consultation": ["video call", "consultation", "teleconsult"],
        "asha-worker": ["asha", "health worker", "community worker"],
        "dashboard": ["dashboard", "home", "main screen"],
    },
)

LANGUAGE_RULES: Dict[str, CommandRules] = {
    "hindi": CommandRules(
        emergency=["आपातकाल", "आपातकालीन", "तुरंत", "एम्बुलेंस", "मदद करो", "बचाओ"],
        navigation={
            "appointments": ["अपॉइंटमेंट", "मुलाकात", "बुक", "डॉक्टर"],
            "medications": ["दवा", "दवाई", "औषधि"],
            "health-records": ["रिकॉर्ड", "रिपोर्ट"],
            "vitals": ["वाइटल", "रक्तचाप", "नब्ज़"],
            "family-health": ["परिवार"],
            "consultation": ["वीडियो कॉल", "परामर्श"],
            "asha-worker": ["आशा"],
            "dashboard": ["होम", "डैशबोर्ड"],
        },
    ),
    "tamil": CommandRules(
        emergency=["அவசரம்", "அவசர", "ஆம்புலன்ஸ்", "உதவி செய்"],
        navigation={
            "appointments": ["சந்திப்பு", "முன்பதிவு", "மருத்துவர்"],
            "medications": ["மருந்து"],
            "health-records": ["அறிக்கை", "பதிவு"],
            "vitals": ["உயிர்ச்சக்தி", "இரத்த அழுத்தம்"],
            "family-health": ["குடும்ப"],
        },
    ),
    "telugu": CommandRules(
        emergency=["అత్యవసర", "అంబులెన్స్", "సహాయం చేయండి"],
        navigation={
            "appointments": ["అపాయింట్‌మెంట్", "వైద్యుడు", "డాక్టర్"],
            "medications": ["మందు", "ఔషధ"],
            "health-records": ["రిపోర్ట్", "రికార్డు"],
        },
    ),
    "bengali": CommandRules(
        emergency=["জরুরি", "অ্যাম্বুলেন্স", "বাঁচাও"],
        navigation={
            "appointments": ["অ্যাপয়েন্টমেন্ট", "ডাক্তার"],
            "medications": ["ওষুধ"],
            "health-records": ["রিপোর্ট"],
        },
    ),
    "marathi": CommandRules(
        emergency=["आणीबाणी", "तातडी", "रुग्णवाहिका", "वाचवा"],
        navigation={
            "appointments": ["अपॉइंटमेंट", "भेट", "डॉक्टर"],
            "medications": ["औषध"],
            "health-records": ["अहवाल", "रिपोर्ट"],
        },
    ),
    "gujarati": CommandRules(
        emergency=["કટોકટી", "એમ્બ્યુલન્સ", "બચાવો"],
        navigation={
            "appointments": ["એપોઇન્ટમેન્ટ", "ડૉક્ટર"],
            "medications": ["દવા"],
            "health-records": ["રિપોર્ટ"],
        },
    ),
    "kannada": CommandRules(
        emergency=["ತುರ್ತು", "ಆಂಬ್ಯುಲೆನ್ಸ್"],
        navigation={
            "appointments": ["ಅಪಾಯಿಂಟ್ಮೆಂಟ್", "ವೈದ್ಯ"],
            "medications": ["ಔಷಧ"],
        },
    ),
    "malayalam": CommandRules(
        emergency=["അടിയന്തര", "ആംബുലൻസ്"],
        navigation={
            "appointments": ["അപ്പോയിന്റ്മെന്റ്", "ഡോക്ടർ"],
            "medications": ["മരുന്ന്"],
        },
    ),
    "punjabi": CommandRules(
        emergency=["ਐਮਰਜੈਂਸੀ", "ਐਂਬੂਲੈਂਸ", "ਬਚਾਓ"],
        navigation={
            "appointments": ["ਮੁਲਾਕਾਤ", "ਡਾਕਟਰ"],
            "medications": ["ਦਵਾਈ"],
        },
    ),
}

# -------------------------------
# Interpreter
# -------------------------------

class CommandInterpreter:
    """Stateless transcript classifier."""

    def __init__(self, language_rules: Optional[Dict[str, CommandRules]] = None,
                 default_rules: Optional[CommandRules] = None):
        self._language_rules = LANGUAGE_RULES if language_rules is None else language_rules
        self._default_rules = default_rules or DEFAULT_RULES

    def _rule_sets(self, language: str) -> List[CommandRules]:
        rules = self._language_rules.get(normalize_language(language))
        if rules is None or rules is self._default_rules:
            return [self._default_rules]
        return [rules, self._default_rules]

    def interpret(self, transcript: str, language: str) -> Command:
        lowered = (transcript or "").strip().lower()
        if not lowered:
            return Query(text="")

        rule_sets = self._rule_sets(language)

        for rules in rule_sets:
            keyword = self._first_match(lowered, rules.emergency)
            if keyword:
                logger.info(f"Emergency keyword '{keyword}' detected")
                return Emergency()

        for rules in rule_sets:
            for target, keywords in rules.navigation.items():
                keyword = self._first_match(lowered, keywords)
                if keyword:
                    logger.debug(f"Navigation keyword '{keyword}' -> {target}")
                    return Navigate(target=target)

        return Query(text=transcript)

    @staticmethod
    def _first_match(lowered: str, keywords: List[str]) -> Optional[str]:
        for keyword in keywords:
            if keyword.lower() in lowered:
                return keyword
        return None

    def targets(self) -> Tuple[str, ...]:
        """Every navigation target any table can produce."""
        seen = dict.fromkeys(self._default_rules.navigation)
        for rules in self._language_rules.values():
            seen.update(dict.fromkeys(rules.navigation))
        return tuple(seen)
