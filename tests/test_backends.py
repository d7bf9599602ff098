"""
tests/test_backends.py

MedVoice - Platform backend tests
---------------------------------
• pyttsx3 and OpenAI synthesis backends driven through a real SynthesisSession
• Vosk decoding, microphone probing and Whisper transcription with mocked libraries
• OpenAI health-query answering with an async mocked client
"""

import asyncio
import time
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, Mock

import pytest
from openai import OpenAIError

from conftest import HandlerRecorder
from medvoice.core.errors import BackendUnavailable, RecognitionError, VoiceEngineError
from medvoice.voice.answering import OpenAIQueryAnswerer, get_system_prompt
from medvoice.voice.backends.audio_io import WavPlayer, encode_wav
from medvoice.voice.backends.cloud_asr import CloudCaptureBackend, _Recording
from medvoice.voice.backends.cloud_tts import CloudSynthesisBackend, voice_catalog
from medvoice.voice.backends.local_asr import LocalCaptureBackend
from medvoice.voice.backends.local_tts import LocalSynthesisBackend, detect_voice_locale, get_engine_type
from medvoice.voice.capture import CaptureSession
from medvoice.voice.synthesis import SpeechOutcome, SynthesisSession


async def wait_until(predicate, timeout=2.0):
    """Poll while backend worker threads report back to the loop."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


# -------------------------------
# Fakes for platform libraries
# -------------------------------

class FakeTTSEngine:
    """Stands in for a pyttsx3 engine."""

    def __init__(self, voices=None):
        self.voices = voices or []
        self.properties = {}
        self.spoken = []
        self.stopped = 0
        self._callbacks = {}

    def getProperty(self, name):
        return self.voices if name == 'voices' else self.properties.get(name)

    def setProperty(self, name, value):
        self.properties[name] = value

    def connect(self, topic, callback):
        token = (topic, len(self._callbacks))
        self._callbacks[token] = callback
        return token

    def disconnect(self, token):
        self._callbacks.pop(token, None)

    def say(self, text, name=None):
        self.spoken.append((text, name))

    def runAndWait(self):
        for (topic, _), callback in list(self._callbacks.items()):
            if topic == 'started-utterance':
                callback(self.spoken[-1][1])

    def stop(self):
        self.stopped += 1


class FakeStream:
    def __init__(self):
        self.written = []
        self.closed = False

    def write(self, data):
        self.written.append(data)

    def read(self, frames, exception_on_overflow=True):
        time.sleep(0.001)
        return b"\x01\x00" * frames

    def stop_stream(self):
        pass

    def close(self):
        self.closed = True


class FakePyAudio:
    """Stands in for pyaudio.PyAudio."""
    instances = []

    def __init__(self):
        self.streams = []
        self.terminated = False
        FakePyAudio.instances.append(self)

    def get_format_from_width(self, width):
        return 8

    def open(self, **kwargs):
        stream = FakeStream()
        stream.kwargs = kwargs
        self.streams.append(stream)
        return stream

    def terminate(self):
        self.terminated = True


@pytest.fixture(autouse=True)
def reset_fake_audio():
    FakePyAudio.instances = []
    yield


def wav_bytes(frames=3200):
    return encode_wav([b"\x00\x00" * frames], 16000)


# -------------------------------
# On-device synthesis
# -------------------------------

class TestLocalSynthesis:
    """pyttsx3 backend behind a synthesis session."""

    @pytest.mark.parametrize("voice,locale", [
        (SimpleNamespace(id="gmw/en-US", name="English (America)", languages=[b"\x05en-us"]), "en-us"),
        (SimpleNamespace(id="HKEY_LOCAL_MACHINE\\SOFTWARE\\Microsoft\\Speech\\Voices\\Tokens\\TTS_MS_EN-US_ZIRA_11.0",
                         name="Microsoft Zira Desktop", languages=[]), "en-US"),
        (SimpleNamespace(id="com.apple.voice.compact.hi-IN.Lekha", name="Lekha", languages=[]), "hi-IN"),
        (SimpleNamespace(id="hindi_voice", name="hi_IN female", languages=None), "hi-IN"),
        (SimpleNamespace(id="default", name="Default", languages=[]), ""),
    ])
    def test_detect_voice_locale(self, voice, locale):
        assert detect_voice_locale(voice) == locale

    @pytest.mark.parametrize("voice_id,engine", [
        ("HKEY_LOCAL_MACHINE\\SOFTWARE\\Microsoft\\Speech\\Voices\\Tokens\\TTS_MS_EN-US_ZIRA_11.0", "SAPI5"),
        ("com.apple.speech.synthesis.voice.samantha", "NSSS"),
        ("espeak/hi", "eSpeak"),
    ])
    def test_engine_type(self, voice_id, engine):
        assert get_engine_type(voice_id) == engine

    @pytest.mark.asyncio
    async def test_speak_through_session(self):
        """Voice, rate and volume reach the engine; start and end events resolve the utterance."""
        engine = FakeTTSEngine(voices=[
            SimpleNamespace(id="espeak-hi", name="eSpeak Hindi", languages=[b"\x05hi"]),
            SimpleNamespace(id="nsss-hi", name="Lekha", languages=["hi_IN"]),
        ])
        backend = LocalSynthesisBackend(base_rate_wpm=200, engine_factory=lambda: engine)
        session = SynthesisSession(backend, language="hindi")
        try:
            outcome = await asyncio.wait_for(session.speak("नमस्ते"), timeout=5.0)
        finally:
            session.close()

        assert outcome == SpeechOutcome.COMPLETED
        assert engine.spoken[0][0] == "नमस्ते"
        assert engine.properties['voice'] == "nsss-hi"
        assert engine.properties['rate'] == 180
        assert engine.properties['volume'] == 1.0

    @pytest.mark.asyncio
    async def test_engine_failure_is_an_error_outcome(self):
        def broken_factory():
            raise RuntimeError("no audio driver")

        backend = LocalSynthesisBackend(engine_factory=broken_factory)
        session = SynthesisSession(backend)
        try:
            outcome = await asyncio.wait_for(session.speak("hello"), timeout=5.0)
        finally:
            session.close()
        assert outcome == SpeechOutcome.ERROR
        assert isinstance(session.last_error, BackendUnavailable)


# -------------------------------
# Cloud synthesis
# -------------------------------

class TestCloudSynthesis:
    """OpenAI speech backend with PyAudio playback."""

    def test_catalog_has_one_remote_voice_per_locale(self):
        catalog = voice_catalog()
        locales = [voice.locale for voice in catalog]
        assert len(locales) == len(set(locales))
        assert all(not voice.is_local for voice in catalog)
        assert {"en-IN", "hi-IN", "ta-IN"} <= set(locales)

    @pytest.mark.asyncio
    async def test_speak_requests_audio_and_plays_it(self):
        client = Mock()
        client.audio.speech.create.return_value.read.return_value = wav_bytes()
        backend = CloudSynthesisBackend(client=client, audio_factory=FakePyAudio)
        session = SynthesisSession(backend, language="tamil")

        outcome = await asyncio.wait_for(session.speak("வணக்கம்"), timeout=5.0)

        assert outcome == SpeechOutcome.COMPLETED
        kwargs = client.audio.speech.create.call_args.kwargs
        assert kwargs["model"] == "tts-1-hd"
        assert kwargs["voice"] == "shimmer"
        assert kwargs["input"] == "வணக்கம்"
        assert kwargs["speed"] == pytest.approx(0.81)
        assert kwargs["response_format"] == "wav"
        played = FakePyAudio.instances[0].streams[0]
        assert played.written
        assert played.closed

    @pytest.mark.asyncio
    async def test_request_failure_is_an_error_outcome(self):
        client = Mock()
        client.audio.speech.create.side_effect = OpenAIError("quota exceeded")
        backend = CloudSynthesisBackend(client=client, audio_factory=FakePyAudio)
        session = SynthesisSession(backend)
        assert await asyncio.wait_for(session.speak("hello"), timeout=5.0) == SpeechOutcome.ERROR

    def test_player_stopped_before_playback_plays_nothing(self):
        player = WavPlayer(FakePyAudio)
        player.stop()
        assert player.play(wav_bytes()) is False
        assert FakePyAudio.instances == []


# -------------------------------
# On-device recognition
# -------------------------------

class FakeKaldi:
    """First chunk completes a word, later chunks only produce partials."""

    def __init__(self, model, sample_rate):
        self.chunks = 0

    def AcceptWaveform(self, data):
        self.chunks += 1
        return self.chunks == 1

    def Result(self):
        return '{"text": "book"}'

    def PartialResult(self):
        return '{"partial": "appoint"}'

    def FinalResult(self):
        return '{"text": "appointment"}'


class SilentKaldi(FakeKaldi):

    def AcceptWaveform(self, data):
        return False

    def PartialResult(self):
        return '{"partial": ""}'

    def FinalResult(self):
        return '{"text": ""}'


def local_backend(tmp_path, recognizer=None, microphone_factory=None, recognizer_factory=FakeKaldi):
    return LocalCaptureBackend(
        model_paths={"en": str(tmp_path), "hi-IN": str(tmp_path / "missing")},
        recognizer=recognizer or Mock(),
        microphone_factory=microphone_factory or MagicMock,
        model_loader=lambda path: f"model:{path}",
        recognizer_factory=recognizer_factory,
    )


class TestLocalCapture:
    """SpeechRecognition microphone plus Vosk decoding."""

    def test_decode_reports_partials_then_final(self, tmp_path):
        backend = local_backend(tmp_path)
        audio = Mock()
        audio.get_raw_data.return_value = b"\x00" * 16000
        events = Mock()

        backend._decode("model", audio, events)

        audio.get_raw_data.assert_called_once_with(convert_rate=16000, convert_width=2)
        assert [c.args[0] for c in events.on_partial.call_args_list] == ["book", "book appoint"]
        events.on_final.assert_called_once_with("book appointment")
        events.on_no_speech.assert_not_called()

    def test_decode_silence_is_no_speech(self, tmp_path):
        backend = local_backend(tmp_path, recognizer_factory=SilentKaldi)
        audio = Mock()
        audio.get_raw_data.return_value = b"\x00" * 4000
        events = Mock()

        backend._decode("model", audio, events)

        events.on_no_speech.assert_called_once()
        events.on_final.assert_not_called()

    def test_models_cached_per_language_family(self, tmp_path):
        backend = local_backend(tmp_path)
        assert backend.load_model("en-IN") == f"model:{tmp_path}"
        assert backend.load_model("en-US") is backend.load_model("en-IN")

    @pytest.mark.parametrize("locale", ["hi-IN", "ta-IN"])
    def test_missing_model_is_backend_unavailable(self, tmp_path, locale):
        with pytest.raises(BackendUnavailable):
            local_backend(tmp_path).load_model(locale)

    def test_start_and_stop_background_listener(self, tmp_path):
        recognizer = Mock()
        stopper = Mock()
        recognizer.listen_in_background.return_value = stopper
        backend = local_backend(tmp_path, recognizer=recognizer)

        backend.start("en-IN", Mock())
        assert recognizer.listen_in_background.call_args.kwargs == {"phrase_time_limit": None}
        backend.stop()
        backend.stop()
        stopper.assert_called_once_with(wait_for_stop=False)

    def test_finish_ends_without_final(self, tmp_path):
        recognizer = Mock()
        backend = local_backend(tmp_path, recognizer=recognizer)
        events = Mock()
        backend.start("en-IN", events)
        backend.finish()
        events.on_end.assert_called_once()
        events.on_final.assert_not_called()

    @pytest.mark.asyncio
    async def test_permission_probe(self, tmp_path):
        assert await local_backend(tmp_path).request_permission() is True

        def no_microphone():
            raise OSError("No Default Input Device Available")

        assert await local_backend(tmp_path, microphone_factory=no_microphone).request_permission() is False

    @pytest.mark.asyncio
    async def test_permission_probe_without_pyaudio(self, tmp_path):
        def missing_pyaudio():
            raise AttributeError("Could not find PyAudio; check installation")

        with pytest.raises(BackendUnavailable):
            await local_backend(tmp_path, microphone_factory=missing_pyaudio).request_permission()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kaldi, finals", [(SilentKaldi, []), (FakeKaldi, ["book appointment"])])
    async def test_session_releases_listener_when_phrase_ends(self, tmp_path, kaldi, finals):
        recognizer = Mock()
        first_stopper, second_stopper = Mock(), Mock()
        recognizer.listen_in_background.side_effect = [first_stopper, second_stopper]
        backend = local_backend(tmp_path, recognizer=recognizer, recognizer_factory=kaldi)
        session = CaptureSession(backend)
        recorder = HandlerRecorder()

        await session.start("english", recorder.handlers())
        on_phrase = recognizer.listen_in_background.call_args.args[1]
        audio = Mock()
        audio.get_raw_data.return_value = b"\x00" * 16000
        on_phrase(recognizer, audio)
        await wait_until(lambda: recorder.ends == 1)

        assert recorder.finals == finals
        first_stopper.assert_called_once_with(wait_for_stop=False)
        assert backend._stopper is None

        await session.start("english", HandlerRecorder().handlers())
        session.stop()
        first_stopper.assert_called_once()
        second_stopper.assert_called_once_with(wait_for_stop=False)


# -------------------------------
# Cloud recognition
# -------------------------------

class TestCloudCapture:
    """PyAudio recording uploaded to Whisper."""

    @pytest.fixture
    def client(self):
        client = Mock()
        client.audio.transcriptions.create.return_value = SimpleNamespace(text=" mujhe bukhar hai ")
        return client

    def test_transcribe_uploads_wav_with_language(self, client):
        backend = CloudCaptureBackend(client=client, audio_factory=FakePyAudio)
        events = Mock()
        recording = _Recording("hi-IN", events)
        recording.frames = [b"\x00\x00" * 160]

        backend._transcribe(recording)

        kwargs = client.audio.transcriptions.create.call_args.kwargs
        assert kwargs["model"] == "whisper-1"
        assert kwargs["language"] == "hi"
        assert kwargs["temperature"] == 0.1
        name, data, mime = kwargs["file"]
        assert (name, mime) == ("speech.wav", "audio/wav")
        assert data.startswith(b"RIFF")
        events.on_final.assert_called_once_with("mujhe bukhar hai")

    def test_empty_recording_is_no_speech(self, client):
        backend = CloudCaptureBackend(client=client, audio_factory=FakePyAudio)
        events = Mock()
        backend._transcribe(_Recording("en-IN", events))
        events.on_no_speech.assert_called_once()
        client.audio.transcriptions.create.assert_not_called()

    def test_service_error_is_recognition_error(self, client):
        client.audio.transcriptions.create.side_effect = OpenAIError("timeout")
        backend = CloudCaptureBackend(client=client, audio_factory=FakePyAudio)
        events = Mock()
        recording = _Recording("en-IN", events)
        recording.frames = [b"\x00\x00"]

        backend._transcribe(recording)

        error = events.on_error.call_args.args[0]
        assert isinstance(error, RecognitionError)

    @pytest.mark.asyncio
    async def test_record_finish_transcribe_through_session(self, client):
        """Permission probe, recording thread, finish() and upload end in one final transcript."""
        backend = CloudCaptureBackend(client=client, audio_factory=FakePyAudio)
        session = CaptureSession(backend)
        recorder = HandlerRecorder()

        request = await session.start("hindi", recorder.handlers())
        assert request is not None
        await asyncio.sleep(0.05)
        session.finish()
        await wait_until(lambda: recorder.ends == 1)

        assert recorder.finals == ["mujhe bukhar hai"]
        assert recorder.errors == []

    @pytest.mark.asyncio
    async def test_stop_discards_recording(self, client):
        backend = CloudCaptureBackend(client=client, audio_factory=FakePyAudio)
        session = CaptureSession(backend)
        recorder = HandlerRecorder()

        await session.start("english", recorder.handlers())
        await asyncio.sleep(0.05)
        session.stop()
        await asyncio.sleep(0.05)

        assert recorder.ends == 1
        assert recorder.finals == []
        client.audio.transcriptions.create.assert_not_called()


# -------------------------------
# Query answering
# -------------------------------

def chat_response(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


class TestOpenAIAnswerer:
    """Chat-completions answerer."""

    @pytest.mark.asyncio
    async def test_answer_uses_language_prompt(self):
        client = Mock()
        client.chat.completions.create = AsyncMock(return_value=chat_response("  पानी ज़्यादा पिएं।  "))
        answerer = OpenAIQueryAnswerer(client=client, model="gpt-4o-mini", max_tokens=200)

        answer = await answerer.answer("बुखार में क्या करें", "hindi")

        assert answer == "पानी ज़्यादा पिएं।"
        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-4o-mini"
        assert kwargs["max_tokens"] == 200
        assert kwargs["messages"][0] == {"role": "system", "content": get_system_prompt("hindi")}
        assert kwargs["messages"][1] == {"role": "user", "content": "बुखार में क्या करें"}

    @pytest.mark.asyncio
    async def test_service_error_raises_engine_error(self):
        client = Mock()
        client.chat.completions.create = AsyncMock(side_effect=OpenAIError("rate limited"))
        with pytest.raises(VoiceEngineError):
            await OpenAIQueryAnswerer(client=client).answer("hello", "english")

    @pytest.mark.asyncio
    async def test_empty_completion_raises(self):
        client = Mock()
        client.chat.completions.create = AsyncMock(return_value=chat_response(None))
        with pytest.raises(VoiceEngineError):
            await OpenAIQueryAnswerer(client=client).answer("hello", "english")

    def test_prompt_for_language_without_native_prompt(self):
        prompt = get_system_prompt("marathi")
        assert prompt.startswith(get_system_prompt("english"))
        assert prompt.endswith("Reply in marathi.")
