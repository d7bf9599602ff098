"""
medvoice/voice/answering.py

MedVoice - Health Query Answering
---------------------------------
• Contract for the collaborator that turns a free-form health question into a short spoken answer
• OpenAI chat-completions realization with per-language system prompts
• Adapter for any async callable so hosts can plug in their own assistant

License: Apache 2.0
"""

from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Dict, List, Optional

from openai import AsyncOpenAI, OpenAIError

from medvoice.core.errors import BackendUnavailable, VoiceEngineError
from medvoice.utils.language import DEFAULT_LANGUAGE, normalize_language
from medvoice.utils.logger import get_logger

logger = get_logger(__name__)

SYSTEM_PROMPTS: Dict[str, str] = {
    "english": (
        "You are MedVoice's AI health assistant. Provide helpful, accurate health information "
        "in simple English. Keep responses concise (2-3 sentences). Always recommend consulting "
        "healthcare professionals for serious concerns."
    ),
    "hindi": (
        "आप MedVoice के AI स्वास्थ्य सहायक हैं। सरल हिंदी में उपयोगी, सटीक स्वास्थ्य जानकारी प्रदान करें। "
        "जवाब संक्षिप्त रखें (2-3 वाक्य)। गंभीर समस्याओं के लिए हमेशा स्वास्थ्य पेशेवरों से सलाह लेने की सिफारिश करें।"
    ),
    "tamil": (
        "நீங்கள் MedVoice இன் AI சுகாதார உதவியாளர். எளிய தமிழில் பயனுள்ள, துல்லியமான சுகாதார தகவல்களை வழங்கவும். "
        "பதில்களை சுருக்கமாக வைக்கவும் (2-3 வாக்கியங்கள்). தீவிர கவலைகளுக்கு எப்போதும் சுகாதார நிபுணர்களை அணுக பரிந்துரைக்கவும்."
    ),
    "telugu": (
        "మీరు MedVoice యొక్క AI ఆరోగ్య సహాయకులు. సరళమైన తెలుగులో ఉపయోగకరమైన, ఖచ్చితమైన ఆరోగ్య సమాచారాన్ని అందించండి. "
        "ప్రతిస్పందనలను సంక్షిప్తంగా ఉంచండి (2-3 వాక్యాలు). తీవ్రమైన ఆందోళనల కోసం ఎల్లప్పుడూ ఆరోగ్య నిపుణులను సంప్రదించాలని సిఫార్సు చేయండి."
    ),
}


def get_system_prompt(language: str) -> str:
    prompt = SYSTEM_PROMPTS.get(normalize_language(language))
    if prompt is None:
        # no native prompt; ask for the answer in the user's language
        prompt = f"{SYSTEM_PROMPTS[DEFAULT_LANGUAGE]} Reply in {normalize_language(language) or DEFAULT_LANGUAGE}."
    return prompt


class QueryAnswerer(ABC):
    """Turns a transcript into text to speak."""

    @abstractmethod
    async def answer(self, text: str, language: str) -> str:
        ...


class CallableQueryAnswerer(QueryAnswerer):
    """Wraps ``async def fn(text, language) -> str``."""

    def __init__(self, fn: Callable[[str, str], Awaitable[str]]):
        self._fn = fn

    async def answer(self, text: str, language: str) -> str:
        return await self._fn(text, language)


class OpenAIQueryAnswerer(QueryAnswerer):
    """Short health answers from an OpenAI chat model."""

    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        model: str = "gpt-4",
        temperature: float = 0.7,
        max_tokens: int = 500,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
    ):
        if client is None:
            try:
                client = AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout)
            except OpenAIError as e:
                raise BackendUnavailable(f"OpenAI client unavailable: {e}", cause=e) from e
        self._client = client
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens

    def build_messages(self, text: str, language: str) -> List[Dict[str, str]]:
        return [
            {"role": "system", "content": get_system_prompt(language)},
            {"role": "user", "content": text},
        ]

    async def answer(self, text: str, language: str) -> str:
        try:
            response = await self._client.chat.completions.create(
                model=self.model,
                messages=self.build_messages(text, language),
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
        except OpenAIError as e:
            logger.error(f"Chat completion failed: {e}")
            raise VoiceEngineError(f"Query answering failed: {e}", cause=e) from e

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise VoiceEngineError("Query answering returned no content")
        return content.strip()
