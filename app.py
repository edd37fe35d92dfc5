"""
Flask Web Application for the EFT tapping assistant

Serves the dialogue endpoint (/api/eft-chat) backed by the DialogueEngine,
plus a session API that drives SessionOrchestrator instances held in an
in-memory registry (snapshots persisted to disk).
"""

from flask import Flask, request, jsonify
from dotenv import load_dotenv
import logging
import os

from tapaway.core.dialogue_engine import DialogueEngine
from tapaway.core.dialogue_service import HttpDialogueClient, LocalDialogueService
from tapaway.core.session_orchestrator import SessionOrchestrator
from tapaway.core.session_state import ChatState
from tapaway.persistence import SessionPersistence
from tapaway.results import TurnRejected
from tapaway.utils.hf_client import HuggingFaceClient
from tapaway.utils.rate_limiter import client_key_from_headers

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_SECRET_KEY = 'tapaway-dev-secret-key'
DEFAULT_OUTPUT_DIR = 'outputs/sessions'
MAX_LIVE_SESSIONS = 500


def create_app(engine=None, dialogue_service=None, persistence=None, round_generator=None):
    """
    Build the Flask app.

    Args:
        engine: DialogueEngine for /api/eft-chat (model loaded lazily if omitted)
        dialogue_service: Service used by session orchestrators; defaults to
            HttpDialogueClient when TAPAWAY_SERVICE_URL is set, otherwise an
            in-process LocalDialogueService over the engine
        persistence: SessionPersistence (defaults to TAPAWAY_OUTPUT_DIR)
        round_generator: TappingRoundGenerator for new rounds

    Returns:
        Flask app
    """
    app = Flask(__name__)
    app.config['SECRET_KEY'] = os.getenv('TAPAWAY_SECRET_KEY', DEFAULT_SECRET_KEY)
    app.config['OUTPUT_DIR'] = os.getenv('TAPAWAY_OUTPUT_DIR', DEFAULT_OUTPUT_DIR)
    app.config['SERVICE_URL'] = os.getenv('TAPAWAY_SERVICE_URL')
    app.config['MAX_LIVE_SESSIONS'] = int(os.getenv('TAPAWAY_MAX_LIVE_SESSIONS', MAX_LIVE_SESSIONS))

    if persistence is None:
        persistence = SessionPersistence(app.config['OUTPUT_DIR'])

    # Lazily created collaborators and live sessions (oldest first; every
    # session is snapshotted each turn, so an evicted one is restored on demand)
    runtime = {
        'engine': engine,
        'sessions': {},
    }

    def get_engine():
        if runtime['engine'] is None:
            logger.info("Initializing HuggingFace model (this takes ~30 seconds)...")
            runtime['engine'] = DialogueEngine(HuggingFaceClient.from_env())
            logger.info("Dialogue engine ready")
        return runtime['engine']

    def make_dialogue_service(client_key):
        if dialogue_service is not None:
            return dialogue_service
        if app.config['SERVICE_URL']:
            return HttpDialogueClient(app.config['SERVICE_URL'])
        return LocalDialogueService(get_engine(), client_key=client_key)

    def lookup(session_id):
        orchestrator = runtime['sessions'].get(session_id)
        if orchestrator is not None:
            runtime['sessions'][session_id] = runtime['sessions'].pop(session_id)
            return orchestrator

        snapshot = persistence.load_latest_snapshot(session_id) if persistence.session_exists(session_id) else None
        if snapshot is None:
            return None

        client_key = client_key_from_headers(request.headers, request.remote_addr)
        orchestrator = SessionOrchestrator.restore(
            snapshot, make_dialogue_service(client_key), persistence, round_generator
        )
        register(orchestrator)
        return orchestrator

    def register(orchestrator):
        sessions = runtime['sessions']
        sessions[orchestrator.session_id] = orchestrator
        while len(sessions) > app.config['MAX_LIVE_SESSIONS']:
            oldest = next(iter(sessions))
            del sessions[oldest]
            logger.info(f"Evicted idle session {oldest} from memory")

    def release_if_complete(orchestrator):
        if orchestrator.state.name == ChatState.COMPLETE:
            runtime['sessions'].pop(orchestrator.session_id, None)
            logger.info(f"Released completed session {orchestrator.session_id}")

    def turn_response(orchestrator, result):
        if isinstance(result, TurnRejected):
            return jsonify({
                'success': False,
                'error': result.reason,
                'operation': result.operation
            }), 409

        response = jsonify({
            'success': True,
            'session_id': orchestrator.session_id,
            'session_name': orchestrator.session_name,
            'turn': result.to_json(),
            'phrase': orchestrator.current_phrase()
        })
        release_if_complete(orchestrator)
        return response

    def not_found(session_id):
        return jsonify({
            'success': False,
            'error': f'Session not found: {session_id}'
        }), 404

    @app.route('/api/eft-chat', methods=['POST'])
    def eft_chat():
        """Dialogue service endpoint"""
        client_key = client_key_from_headers(request.headers, request.remote_addr)
        payload = request.get_json(silent=True)
        reply = get_engine().handle(payload, client_key)
        return jsonify(reply.body), reply.status

    @app.route('/api/session/start', methods=['POST'])
    def start_session():
        """Start new tapping session"""
        try:
            data = request.get_json(silent=True) or {}
            user_name = data.get('userName')
            if not isinstance(user_name, str):
                user_name = None

            client_key = client_key_from_headers(request.headers, request.remote_addr)
            orchestrator = SessionOrchestrator(
                make_dialogue_service(client_key),
                persistence=persistence,
                round_generator=round_generator,
                user_name=user_name
            )
            result = orchestrator.start_session()
            register(orchestrator)

            logger.info(f"New session created: {orchestrator.session_id}")
            return turn_response(orchestrator, result)

        except Exception as e:
            logger.error(f"Error starting session: {e}")
            return jsonify({
                'success': False,
                'error': str(e)
            }), 500

    @app.route('/api/session/<session_id>/message', methods=['POST'])
    def send_message(session_id):
        """Submit a user message"""
        try:
            orchestrator = lookup(session_id)
            if orchestrator is None:
                return not_found(session_id)

            data = request.get_json(silent=True) or {}
            message = data.get('message')
            if not isinstance(message, str) or not message.strip():
                return jsonify({
                    'success': False,
                    'error': 'Message must be a non-empty string'
                }), 400

            context = data.get('context')
            if not isinstance(context, dict):
                context = None

            return turn_response(orchestrator, orchestrator.send_message(message, context))

        except Exception as e:
            logger.error(f"Error processing message: {e}")
            return jsonify({
                'success': False,
                'error': str(e)
            }), 500

    @app.route('/api/session/<session_id>/intensity', methods=['POST'])
    def submit_intensity(session_id):
        """Submit a 0-10 intensity rating"""
        try:
            orchestrator = lookup(session_id)
            if orchestrator is None:
                return not_found(session_id)

            data = request.get_json(silent=True) or {}
            return turn_response(orchestrator, orchestrator.submit_intensity(data.get('intensity')))

        except Exception as e:
            logger.error(f"Error submitting intensity: {e}")
            return jsonify({
                'success': False,
                'error': str(e)
            }), 500

    @app.route('/api/session/<session_id>/choice', methods=['POST'])
    def handle_choice(session_id):
        """Act on a post-tapping choice"""
        try:
            orchestrator = lookup(session_id)
            if orchestrator is None:
                return not_found(session_id)

            data = request.get_json(silent=True) or {}
            choice = data.get('choice')
            if not isinstance(choice, str):
                return jsonify({
                    'success': False,
                    'error': 'Choice must be a string'
                }), 400

            return turn_response(orchestrator, orchestrator.handle_choice(choice))

        except Exception as e:
            logger.error(f"Error handling choice: {e}")
            return jsonify({
                'success': False,
                'error': str(e)
            }), 500

    @app.route('/api/session/<session_id>/tapping/advance', methods=['POST'])
    def advance_tapping_point(session_id):
        """Move to the next tapping point"""
        try:
            orchestrator = lookup(session_id)
            if orchestrator is None:
                return not_found(session_id)

            return turn_response(orchestrator, orchestrator.advance_tapping_point())

        except Exception as e:
            logger.error(f"Error advancing tapping point: {e}")
            return jsonify({
                'success': False,
                'error': str(e)
            }), 500

    @app.route('/api/session/<session_id>', methods=['GET'])
    def get_session(session_id):
        """Current session snapshot"""
        orchestrator = lookup(session_id)
        if orchestrator is None:
            return not_found(session_id)

        response = jsonify({
            'success': True,
            'session': orchestrator.snapshot(),
            'phrase': orchestrator.current_phrase()
        })
        release_if_complete(orchestrator)
        return response

    return app


if __name__ == '__main__':
    # Configure logging
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    app = create_app()

    print("\n" + "=" * 60)
    print("EFT TAPPING ASSISTANT - WEB INTERFACE")
    print("=" * 60)
    print("\nServer starting...")
    print("Dialogue endpoint: http://localhost:5000/api/eft-chat")
    print("\nPress Ctrl+C to stop the server")
    print("=" * 60 + "\n")

    app.run(host='0.0.0.0', port=5000, debug=False)
