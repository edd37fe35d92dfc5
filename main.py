"""
Console Test Harness for SessionOrchestrator

Simple console loop to run a tapping session without the web layer.
Uses the in-process DialogueEngine unless TAPAWAY_SERVICE_URL points at a
running dialogue service.

Commands:
    /intensity N   submit a 0-10 rating
    /choice NAME   continue-tapping | talk-to-assistant | end-session |
                   breathing | hydration | talk-to-human
    /next          advance to the next tapping point
    quit           end the session
"""

import json
import logging
import os
import sys

from dotenv import load_dotenv

from tapaway.core.dialogue_engine import DialogueEngine
from tapaway.core.dialogue_service import HttpDialogueClient, LocalDialogueService
from tapaway.core.round_generator import tapping_point_name
from tapaway.core.session_context import MessageType
from tapaway.core.session_orchestrator import SessionOrchestrator
from tapaway.persistence import SessionPersistence
from tapaway.results import TurnRejected
from tapaway.utils.hf_client import HuggingFaceClient

load_dotenv()

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

EXIT_COMMANDS = ('quit', 'exit', 'stop')


def print_separator(char="=", length=60):
    """Print a separator line"""
    print(char * length)


def print_turn(orchestrator, result):
    """Print the messages and state from a TurnResult"""
    if isinstance(result, TurnRejected):
        print(f"\n[Rejected] {result.reason}\n")
        return

    for message in result.messages:
        if message.type == MessageType.BOT:
            print(f"\nAssistant: {message.content}\n")
        elif message.type == MessageType.SYSTEM:
            payload = json.loads(message.content)
            print(f"\n[{payload['type']}] {payload}")
            if payload.get('options'):
                print(f"Options: {', '.join(payload['options'])}")
            else:
                print("Options: continue-tapping, talk-to-assistant, end-session")

    state = result.state
    if state.is_tapping:
        print(f"[Point {state.point_index + 1}/8: {tapping_point_name(state.point_index)}] "
              f"{orchestrator.current_phrase() or ''}")
    print(f"[State: {state.name.value}]")

    if result.debug.get('errors'):
        print(f"ERRORS: {result.debug['errors']}")


def build_dialogue_service():
    """In-process engine, or the HTTP client when a service URL is configured"""
    service_url = os.getenv('TAPAWAY_SERVICE_URL')
    if service_url:
        print(f"Using dialogue service at {service_url}")
        return HttpDialogueClient(service_url)

    print("\nLoading model (this may take 30 seconds)...")
    return LocalDialogueService(DialogueEngine(HuggingFaceClient.from_env()))


def main():
    """Run console session"""
    print_separator()
    print("EFT TAPPING ASSISTANT - CONSOLE")
    print_separator()

    try:
        dialogue_service = build_dialogue_service()
        persistence = SessionPersistence(os.getenv('TAPAWAY_OUTPUT_DIR', 'outputs/sessions'))
        orchestrator = SessionOrchestrator(dialogue_service, persistence=persistence)
        print("\nModules initialized successfully!")

    except Exception as e:
        print(f"\nFailed to initialize: {e}")
        import traceback
        traceback.print_exc()
        return 1

    user_name = input("What's your name? ").strip() or None
    print_separator()
    print("Type 'quit', 'exit', or 'stop' to end\n")

    print_turn(orchestrator, orchestrator.start_session(user_name))

    while True:
        try:
            user_input = input("> ").strip()

            if not user_input:
                continue

            if user_input.lower() in EXIT_COMMANDS:
                break

            if user_input.startswith('/intensity'):
                result = orchestrator.submit_intensity(user_input[len('/intensity'):].strip())
            elif user_input.startswith('/choice'):
                result = orchestrator.handle_choice(user_input[len('/choice'):].strip())
            elif user_input == '/next':
                result = orchestrator.advance_tapping_point()
            else:
                result = orchestrator.send_message(user_input)

            print_turn(orchestrator, result)

            if not isinstance(result, TurnRejected) and result.crisis_detected:
                print_separator()
                print("Please reach out to the resources above.")
                print_separator()

        except KeyboardInterrupt:
            print("\n\nSession interrupted by user (Ctrl+C)")
            break

    print_separator()
    print(f"Session {orchestrator.session_id} ended after {orchestrator.turn_count} turns")
    print_separator()
    return 0


if __name__ == '__main__':
    sys.exit(main())
