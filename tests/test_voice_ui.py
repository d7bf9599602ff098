"""
tests/test_voice_ui.py

MedVoice - Voice interaction controller tests
---------------------------------------------
• Full listen -> interpret -> respond -> speak turns against in-memory backends
• Greeting, localized confirmations, error phrases, cancellation
"""

import asyncio
from datetime import datetime

import pytest

from conftest import FakeCaptureBackend, drain
from medvoice.core.errors import CaptureTimeout, PermissionDenied
from medvoice.ui.voice_interface import ControllerState, VoiceEvent, VoiceInteractionController
from medvoice.utils.language import VOICE_PHRASES
from medvoice.voice.answering import CallableQueryAnswerer
from medvoice.voice.capture import CaptureSession
from medvoice.voice.commands import Emergency, Navigate, Query
from medvoice.voice.synthesis import SpeechOutcome, SynthesisSession

EN = VOICE_PHRASES["english"]


def make_controller(tts, asr, answerer=None, clock=None, **kwargs):
    events, errors = [], []
    controller = VoiceInteractionController(
        synthesis=SynthesisSession(tts),
        capture=CaptureSession(asr),
        answerer=answerer,
        event_sink=events.append,
        on_error=errors.append,
        clock=clock or (lambda: datetime(2024, 5, 1, 9, 0, 0)),
        **kwargs,
    )
    return controller, events, errors


async def echo_answer(text, language):
    return f"Answer about {text}"


class TestCommands:

    @pytest.mark.asyncio
    async def test_navigation_turn(self, tts_backend):
        asr = FakeCaptureBackend(transcript="book an appointment with the doctor")
        controller, events, _ = make_controller(tts_backend, asr)
        result = await controller.handle_turn()

        assert result.transcript == "book an appointment with the doctor"
        assert result.command == Navigate("appointments")
        assert events == [VoiceEvent(kind="navigate", target="appointments")]
        assert result.response == EN["navigate_appointments"]
        assert tts_backend.spoken == [EN["navigate_appointments"]]
        assert result.speech_outcome == SpeechOutcome.COMPLETED
        assert controller.state == ControllerState.IDLE

    @pytest.mark.asyncio
    async def test_emergency_turn_uses_urgent_delivery(self, tts_backend):
        asr = FakeCaptureBackend(transcript="chest pain, please send an ambulance")
        controller, events, _ = make_controller(tts_backend, asr)
        result = await controller.handle_turn()

        assert isinstance(result.command, Emergency)
        assert events == [VoiceEvent(kind="emergency", target="108")]
        profile = tts_backend.submitted[-1].profile
        assert profile.rate == pytest.approx(1.2)
        assert profile.volume == 1.0
        assert controller.metrics["emergencies"] == 1

    @pytest.mark.asyncio
    async def test_query_answer_is_spoken(self, tts_backend):
        asr = FakeCaptureBackend(transcript="is fever common with dengue")
        controller, events, _ = make_controller(tts_backend, asr,
                                                answerer=CallableQueryAnswerer(echo_answer))
        result = await controller.handle_turn()

        assert result.command == Query("is fever common with dengue")
        assert result.response == "Answer about is fever common with dengue"
        assert tts_backend.spoken == [result.response]
        assert not result.answer_failed
        assert events == []

    @pytest.mark.asyncio
    async def test_answer_failure_speaks_fallback(self, tts_backend):
        async def failing(text, language):
            raise RuntimeError("service down")

        asr = FakeCaptureBackend(transcript="what is normal for diabetes")
        controller, _, _ = make_controller(tts_backend, asr, answerer=CallableQueryAnswerer(failing))
        result = await controller.handle_turn()

        assert result.answer_failed
        assert result.response == EN["assistant_unavailable"]
        assert tts_backend.spoken == [EN["assistant_unavailable"]]
        assert controller.metrics["answer_failures"] == 1

    @pytest.mark.asyncio
    async def test_missing_answerer_speaks_fallback(self, tts_backend):
        asr = FakeCaptureBackend(transcript="tell me about vitamin d")
        controller, _, _ = make_controller(tts_backend, asr)
        result = await controller.handle_turn()
        assert result.answer_failed
        assert result.response == EN["assistant_unavailable"]

    @pytest.mark.asyncio
    async def test_event_sink_failure_does_not_break_turn(self, tts_backend):
        def broken_sink(event):
            raise RuntimeError("host crashed")

        controller = VoiceInteractionController(
            SynthesisSession(tts_backend),
            CaptureSession(FakeCaptureBackend(transcript="open my medicines")),
            event_sink=broken_sink,
        )
        result = await controller.handle_turn()
        assert result.command == Navigate("medications")
        assert result.speech_outcome == SpeechOutcome.COMPLETED

    @pytest.mark.asyncio
    async def test_speech_failure_does_not_fail_turn(self, tts_backend):
        def broken_submit(request, events):
            raise RuntimeError("speaker unplugged")
        tts_backend.submit = broken_submit

        controller, events, _ = make_controller(tts_backend, FakeCaptureBackend(transcript="show vitals"))
        result = await controller.handle_turn()
        assert events == [VoiceEvent("navigate", "vitals")]
        assert result.speech_outcome == SpeechOutcome.ERROR
        assert result.error is None


class TestCaptureFailures:

    @pytest.mark.asyncio
    async def test_permission_denied(self, tts_backend):
        asr = FakeCaptureBackend(permission=False)
        controller, events, errors = make_controller(tts_backend, asr)
        result = await controller.handle_turn()

        assert isinstance(result.error, PermissionDenied)
        assert errors == [result.error]
        assert result.command is None
        assert tts_backend.spoken == [EN["permission_denied"]]
        assert asr.permission_calls == 1
        assert events == []
        assert controller.state == ControllerState.IDLE

    @pytest.mark.asyncio
    async def test_capture_cap_speaks_retry(self, tts_backend, asr_backend):
        controller, _, errors = make_controller(tts_backend, asr_backend)
        result = await asyncio.wait_for(controller.handle_turn(max_duration=0.05), timeout=2.0)
        assert isinstance(result.error, CaptureTimeout)
        assert len(errors) == 1
        assert tts_backend.spoken == [EN["retry"]]

    @pytest.mark.asyncio
    async def test_silence_ends_turn_quietly(self, tts_backend, asr_backend):
        controller, _, errors = make_controller(tts_backend, asr_backend)
        turn = asyncio.create_task(controller.handle_turn())
        await drain()
        asr_backend.events.on_no_speech()
        result = await turn
        assert result.transcript is None
        assert result.error is None
        assert errors == []
        assert tts_backend.spoken == []

    @pytest.mark.asyncio
    async def test_partials_reach_host(self, tts_backend, asr_backend):
        partials = []
        controller = VoiceInteractionController(
            SynthesisSession(tts_backend), CaptureSession(asr_backend),
            on_transcript=partials.append,
        )
        turn = asyncio.create_task(controller.handle_turn())
        await drain()
        assert controller.state == ControllerState.LISTENING
        asr_backend.events.on_partial("open")
        asr_backend.events.on_final("open dashboard")
        result = await turn
        assert partials == ["open"]
        assert result.command == Navigate("dashboard")


class TestConcurrencyAndCancel:

    @pytest.mark.asyncio
    async def test_second_turn_while_busy_is_ignored(self, tts_backend, asr_backend):
        controller, _, _ = make_controller(tts_backend, asr_backend)
        first = asyncio.create_task(controller.handle_turn())
        await drain()
        assert controller.is_busy()
        assert await controller.handle_turn() is None
        assert asr_backend.permission_calls == 1

        controller.cancel()
        result = await first
        assert result.cancelled
        assert not controller.is_busy()

    @pytest.mark.asyncio
    async def test_cancel_is_idempotent_when_idle(self, tts_backend, asr_backend):
        controller, _, _ = make_controller(tts_backend, asr_backend)
        controller.cancel()
        controller.cancel()
        assert controller.state == ControllerState.IDLE
        assert controller.metrics["cancellations"] == 0
        assert asr_backend.stop_calls == 0

    @pytest.mark.asyncio
    async def test_cancel_while_listening(self, tts_backend, asr_backend):
        controller, _, errors = make_controller(tts_backend, asr_backend)
        turn = asyncio.create_task(controller.handle_turn())
        await drain()
        controller.cancel()
        controller.cancel()
        result = await turn
        assert result.cancelled
        assert result.transcript is None
        assert errors == []
        assert asr_backend.stop_calls == 1
        assert tts_backend.spoken == []
        assert controller.metrics["cancellations"] == 1

    @pytest.mark.asyncio
    async def test_cancel_while_waiting_for_answer(self, tts_backend):
        started = asyncio.Event()

        async def slow_answer(text, language):
            started.set()
            await asyncio.sleep(60)
            return "never"

        asr = FakeCaptureBackend(transcript="explain my blood test")
        controller, _, _ = make_controller(tts_backend, asr, answerer=CallableQueryAnswerer(slow_answer))
        turn = asyncio.create_task(controller.handle_turn())
        await asyncio.wait_for(started.wait(), timeout=2.0)

        controller.cancel()
        result = await asyncio.wait_for(turn, timeout=2.0)
        assert result.cancelled
        assert result.response is None
        assert tts_backend.spoken == []
        assert controller.state == ControllerState.IDLE


class TestGreetingAndLanguage:

    @pytest.mark.asyncio
    async def test_greeting_spoken_once(self, tts_backend, asr_backend):
        controller, _, _ = make_controller(tts_backend, asr_backend)
        greeting = controller.activate()
        assert await greeting == SpeechOutcome.COMPLETED
        assert controller.activate() is None
        assert tts_backend.spoken == [EN["greeting_morning"]]

    @pytest.mark.asyncio
    async def test_greeting_disabled(self, tts_backend, asr_backend):
        controller, _, _ = make_controller(tts_backend, asr_backend, greet_on_activate=False)
        assert controller.activate() is None

    @pytest.mark.parametrize("hour,key", [
        (6, "greeting_morning"),
        (14, "greeting_afternoon"),
        (20, "greeting_evening"),
    ])
    @pytest.mark.asyncio
    async def test_hindi_greeting_by_time_of_day(self, tts_backend, asr_backend, hour, key):
        controller, _, _ = make_controller(tts_backend, asr_backend, language="hindi",
                                           clock=lambda: datetime(2024, 5, 1, hour, 30))
        await controller.activate()
        assert tts_backend.spoken == [VOICE_PHRASES["hindi"][key]]
        assert tts_backend.submitted[0].profile.locale == "hi-IN"

    @pytest.mark.asyncio
    async def test_language_switch_applies_to_capture_and_speech(self, tts_backend):
        asr = FakeCaptureBackend(transcript="मेरी दवा")
        controller, events, _ = make_controller(tts_backend, asr)
        controller.set_language("Hindi")
        result = await controller.handle_turn()

        assert controller.language == "hindi"
        assert asr.started_locales == ["hi-IN"]
        assert result.command == Navigate("medications")
        assert tts_backend.spoken == [VOICE_PHRASES["hindi"]["navigate_medications"]]
        assert tts_backend.submitted[0].profile.locale == "hi-IN"

    @pytest.mark.asyncio
    async def test_missing_translation_falls_back_to_english(self, tts_backend):
        asr = FakeCaptureBackend(transcript="family health please")
        controller, _, _ = make_controller(tts_backend, asr, language="tamil")
        result = await controller.handle_turn()
        assert result.response == EN["navigate_family-health"]

    @pytest.mark.asyncio
    async def test_session_stats(self, tts_backend):
        controller, _, _ = make_controller(tts_backend, FakeCaptureBackend(transcript="open dashboard"))
        await controller.handle_turn()
        stats = controller.get_session_stats()
        assert stats["turns"] == 1
        assert stats["navigations"] == 1
        assert stats["language"] == "english"
        assert stats["synthesis"]["completed"] == 1
