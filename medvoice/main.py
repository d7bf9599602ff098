"""
medvoice/main.py

MedVoice - Command Line Entry Point
-----------------------------------
• Interactive voice loop: greeting, then listen/answer turns until interrupted
• Utility modes to list supported languages and installed voices, or speak a line of text
• Configuration file, language and log level selectable from the command line

License: Apache 2.0
"""

import argparse
import asyncio
import sys
from typing import List, Optional

from colorama import Fore, Style, init as colorama_init

from medvoice.core.config_loader import MedVoiceConfig, load_config
from medvoice.core.engine import build_controller, create_synthesis_backend
from medvoice.core.errors import BackendUnavailable, ConfigError, PermissionDenied, VoiceEngineError
from medvoice.ui.voice_interface import TurnResult, VoiceEvent, VoiceInteractionController
from medvoice.utils.language import get_language_name, list_supported
from medvoice.utils.logger import configure_logging, get_logger, set_verbosity
from medvoice.voice.synthesis import SynthesisSession

colorama_init(autoreset=True)

logger = get_logger(__name__)

APP_NAME = "MedVoice"
APP_VERSION = "1.0.0"
APP_DESCRIPTION = "Multilingual voice assistant engine for health applications"

# -------------------------------
# Output helpers
# -------------------------------

def _print_event(event: VoiceEvent):
    color = Fore.RED if event.kind == "emergency" else Fore.CYAN
    print(f"{color}[{event.kind}] {event.target}{Style.RESET_ALL}")


def _print_error(error: VoiceEngineError):
    print(f"{Fore.YELLOW}! {error.code}: {error}{Style.RESET_ALL}")


def _print_partial(text: str):
    print(f"{Style.DIM}... {text}{Style.RESET_ALL}")


def _print_turn(result: TurnResult):
    if result.transcript:
        print(f"{Fore.GREEN}You: {result.transcript}{Style.RESET_ALL}")
    if result.response:
        print(f"{Fore.MAGENTA}{APP_NAME}: {result.response}{Style.RESET_ALL}")

# -------------------------------
# Commands
# -------------------------------

async def list_voices(config: MedVoiceConfig) -> int:
    session = SynthesisSession(create_synthesis_backend(config), language=config.voice_ui.default_language)
    try:
        voices = await session.refresh_voices()
    finally:
        session.close()
    for voice in voices:
        where = "local" if voice.is_local else "cloud"
        print(f"{voice.locale or '??':8} {where:6} {voice.engine_hint:8} {voice.name}")
    print(f"{len(voices)} voice(s)")
    return 0


async def say(config: MedVoiceConfig, text: str) -> int:
    session = SynthesisSession(
        create_synthesis_backend(config),
        language=config.voice_ui.default_language,
        start_guard_floor=config.synthesis.start_guard_floor,
        start_guard_per_char=config.synthesis.start_guard_per_char,
    )
    try:
        outcome = await session.speak(text)
    finally:
        session.close()
    print(f"Speech outcome: {outcome.value}")
    return 0


async def _finish_on_enter(controller: VoiceInteractionController):
    """One stdin reader for the whole loop; Enter ends the recording in progress."""
    loop = asyncio.get_running_loop()
    while True:
        line = await loop.run_in_executor(None, sys.stdin.readline)
        if not line:
            return  # EOF
        controller.finish_listening()


async def run_voice_loop(config: MedVoiceConfig, turns: Optional[int]) -> int:
    controller = build_controller(
        config,
        event_sink=_print_event,
        on_error=_print_error,
        on_transcript=_print_partial,
    )
    greeting = controller.activate()
    if greeting is not None:
        await greeting

    finisher = None
    if not controller.capture.backend.is_local:
        finisher = asyncio.create_task(_finish_on_enter(controller))

    completed = 0
    try:
        while turns is None or completed < turns:
            if finisher is not None:
                print("Recording... press Enter when done speaking")
            result = await controller.handle_turn()
            if result is not None:
                _print_turn(result)
                if isinstance(result.error, (PermissionDenied, BackendUnavailable)):
                    return 1
            completed += 1
    finally:
        if finisher is not None:
            finisher.cancel()
        controller.cancel()
        controller.synthesis.close()
        controller.capture.close()
        logger.info(f"Session stats: {controller.get_session_stats()}")
    return 0

# -------------------------------
# Argument parsing
# -------------------------------

def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog=APP_NAME.lower(),
        description=APP_DESCRIPTION,
        epilog=f"Version {APP_VERSION}",
    )
    parser.add_argument('--config', '-c', type=str, help='Path to configuration file')
    parser.add_argument('--language', '-l', type=str, help='Language tag, e.g. english, hindi, tamil')
    parser.add_argument('--synthesis', choices=['local', 'cloud'], help='Speech output backend')
    parser.add_argument('--capture', choices=['local', 'cloud'], help='Speech input backend')
    parser.add_argument('--turns', '-n', type=int, help='Stop after this many turns')
    parser.add_argument('--say', type=str, metavar='TEXT', help='Speak TEXT and exit')
    parser.add_argument('--list-languages', action='store_true', help='List supported languages and exit')
    parser.add_argument('--list-voices', action='store_true', help='List synthesis voices and exit')
    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
        help='Set logging level',
    )
    parser.add_argument('--version', action='version', version=f'{APP_NAME} {APP_VERSION}')
    return parser.parse_args(argv)


def apply_arguments(config: MedVoiceConfig, args: argparse.Namespace) -> MedVoiceConfig:
    updates = {}
    if args.language:
        updates["voice_ui"] = config.voice_ui.model_copy(update={"default_language": args.language})
    if args.synthesis:
        updates["synthesis"] = config.synthesis.model_copy(update={"backend": args.synthesis})
    if args.capture:
        updates["capture"] = config.capture.model_copy(update={"backend": args.capture})
    if args.log_level:
        updates["logging"] = config.logging.model_copy(update={"level": args.log_level})
    return config.model_copy(update=updates) if updates else config

# -------------------------------
# Main Entry Point
# -------------------------------

async def main(argv: Optional[List[str]] = None) -> int:
    args = parse_arguments(argv)

    if args.list_languages:
        for tag in list_supported():
            print(f"{tag:12} {get_language_name(tag)}")
        return 0

    config_paths = [args.config] if args.config else None
    config = apply_arguments(load_config(config_paths=config_paths), args)
    configure_logging(config.model_dump(mode='json'))
    set_verbosity(config.logging.level)

    if args.list_voices:
        return await list_voices(config)
    if args.say:
        return await say(config, args.say)
    return await run_voice_loop(config, args.turns)


def run_sync(argv: Optional[List[str]] = None) -> int:
    """Synchronous wrapper for main function."""
    try:
        return asyncio.run(main(argv))
    except KeyboardInterrupt:
        print("\nGoodbye! Take care of your health.")
        return 130
    except (ConfigError, VoiceEngineError) as e:
        print(f"{Fore.RED}Error: {e}{Style.RESET_ALL}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(run_sync())
