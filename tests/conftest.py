"""
tests/conftest.py

MedVoice - Shared test fixtures
-------------------------------
• In-memory synthesis and capture backends driven by the tests
• Fixed clock and recording helpers for controller tests
"""

import asyncio
from datetime import datetime
from typing import List, Optional

import pytest

from medvoice.voice.capture import CaptureBackend, CaptureEvents, CaptureHandlers
from medvoice.voice.profiles import VoiceCandidate
from medvoice.voice.synthesis import SynthesisBackend, SynthesisEvents, SynthesisRequest


async def drain(rounds: int = 5):
    """Let call_soon callbacks posted by backends run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeSynthesisBackend(SynthesisBackend):
    name = "fake-tts"

    def __init__(self, voices: Optional[List[VoiceCandidate]] = None,
                 auto_start: bool = True, auto_end: bool = True):
        self.voices = voices if voices is not None else [
            VoiceCandidate("en-in-local", "English (India)", "en-IN"),
        ]
        self.auto_start = auto_start
        self.auto_end = auto_end
        self.submitted: List[SynthesisRequest] = []
        self.events: Optional[SynthesisEvents] = None
        self.stop_calls = 0
        self.pause_calls = 0
        self.resume_calls = 0
        self.list_calls = 0

    @property
    def spoken(self) -> List[str]:
        return [request.text for request in self.submitted]

    async def list_voices(self):
        self.list_calls += 1
        await asyncio.sleep(0)
        return list(self.voices)

    def submit(self, request, events):
        self.submitted.append(request)
        self.events = events
        if self.auto_start:
            events.on_start()
        if self.auto_end:
            events.on_end()

    def stop(self):
        self.stop_calls += 1

    def pause(self):
        self.pause_calls += 1

    def resume(self):
        self.resume_calls += 1


class FakeCaptureBackend(CaptureBackend):
    name = "fake-asr"

    def __init__(self, permission: bool = True, transcript: Optional[str] = None):
        self.permission = permission
        self.transcript = transcript
        self.permission_calls = 0
        self.started_locales: List[str] = []
        self.events: Optional[CaptureEvents] = None
        self.stop_calls = 0
        self.finish_calls = 0

    async def request_permission(self):
        self.permission_calls += 1
        await asyncio.sleep(0)
        return self.permission

    def start(self, locale, events):
        self.started_locales.append(locale)
        self.events = events
        if self.transcript is not None:
            events.on_final(self.transcript)

    def finish(self):
        self.finish_calls += 1

    def stop(self):
        self.stop_calls += 1


class HandlerRecorder:
    """CaptureHandlers that record every callback."""

    def __init__(self):
        self.partials: List[str] = []
        self.finals: List[str] = []
        self.errors: List[Exception] = []
        self.ends = 0

    def handlers(self) -> CaptureHandlers:
        return CaptureHandlers(
            on_partial=self.partials.append,
            on_final=self.finals.append,
            on_error=self.errors.append,
            on_end=self._on_end,
        )

    def _on_end(self):
        self.ends += 1


@pytest.fixture
def tts_backend():
    return FakeSynthesisBackend()


@pytest.fixture
def asr_backend():
    return FakeCaptureBackend()


@pytest.fixture
def recorder():
    return HandlerRecorder()


@pytest.fixture
def morning_clock():
    return lambda: datetime(2024, 5, 1, 9, 0, 0)
