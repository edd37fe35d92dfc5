"""
Session and episode persistence.

JSON files for episodes, transcripts and turn snapshots. Snapshots are
append-only for audit trail and restart resilience.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from tapaway.core.session_context import Message
from tapaway.utils.helpers import generate_session_id

logger = logging.getLogger(__name__)


class SessionPersistence:
    """
    Manages episode, transcript and snapshot persistence.

    Layout:
        outputs/sessions/
            episodes/EPISODE-abc123.json
            SESSION-f00d/
                SESSION-f00d_TRANSCRIPT.json
                SESSION-f00d_TURN-001.json
                SESSION-f00d_TURN-002.json
                ...

    Design:
    - Snapshots are append-only (never overwrite)
    - Episode and transcript files are rewritten in place
    - Enables resuming a session from its latest turn
    """

    def __init__(self, base_dir: str = "outputs/sessions"):
        """
        Initialize persistence layer.

        Args:
            base_dir: Base directory for all sessions
        """
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self.episode_dir = self.base_dir / "episodes"
        self.episode_dir.mkdir(exist_ok=True)
        logger.info(f"SessionPersistence initialized: {self.base_dir}")

    # ========================
    # Episodes
    # ========================

    def _episode_path(self, handle: str) -> Path:
        return self.episode_dir / f"EPISODE-{handle}.json"

    def create_episode(self, problem: str, feeling: str, body_location: str,
                       initial_intensity: int) -> str:
        """
        Create a tapping episode record.

        Args:
            problem: Problem description
            feeling: Emotion word
            body_location: Where the feeling sits
            initial_intensity: Baseline intensity (0-10)

        Returns:
            str: Episode handle
        """
        handle = generate_session_id(short=False)
        record = {
            'id': handle,
            'problem': problem,
            'feeling': feeling,
            'body_location': body_location,
            'initial_intensity': initial_intensity,
            'final_intensity': None,
            'rounds_completed': 0,
            'created_at': datetime.now(timezone.utc).isoformat(),
            'completed_at': None,
        }
        self._write_json(self._episode_path(handle), record)
        logger.info(f"Created episode {handle[:8]} (initial intensity {initial_intensity})")
        return handle

    def update_episode(
        self,
        handle: str,
        final_intensity: Optional[int] = None,
        rounds_completed: Optional[int] = None,
        completed_at: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Update an episode record. None values are left unchanged.

        Returns:
            dict: Updated record

        Raises:
            FileNotFoundError: If the episode does not exist
        """
        path = self._episode_path(handle)
        if not path.exists():
            raise FileNotFoundError(f"Episode not found: {handle}")

        record = self._read_json(path)
        if final_intensity is not None:
            record['final_intensity'] = final_intensity
        if rounds_completed is not None:
            record['rounds_completed'] = rounds_completed
        if completed_at is not None:
            record['completed_at'] = completed_at

        self._write_json(path, record)
        logger.info(
            f"Updated episode {handle[:8]}: final={record['final_intensity']}, "
            f"rounds={record['rounds_completed']}"
        )
        return record

    def load_episode(self, handle: str) -> Optional[Dict[str, Any]]:
        path = self._episode_path(handle)
        if not path.exists():
            return None
        return self._read_json(path)

    # ========================
    # Transcripts
    # ========================

    def _session_dir(self, session_id: str) -> Path:
        return self.base_dir / f"SESSION-{session_id}"

    def append_and_persist_transcript(self, session_id: str, messages: List[Message],
                                      session_name: Optional[str] = None,
                                      crisis_detected: bool = False) -> str:
        """
        Persist the full transcript for a session.

        Args:
            session_id: Session identifier
            messages: Complete message log
            session_name: Human-friendly title
            crisis_detected: Whether a crisis was flagged in this session

        Returns:
            str: Absolute path to the transcript file
        """
        session_dir = self._session_dir(session_id)
        session_dir.mkdir(exist_ok=True)
        filepath = session_dir / f"SESSION-{session_id}_TRANSCRIPT.json"

        self._write_json(filepath, {
            'session_id': session_id,
            'session_name': session_name,
            'crisis_detected': crisis_detected,
            'updated_at': datetime.now(timezone.utc).isoformat(),
            'messages': [m.to_json() for m in messages],
        })
        logger.debug(f"Persisted {len(messages)} messages for session {session_id}")
        return str(filepath.absolute())

    def load_transcript(self, session_id: str) -> List[Message]:
        filepath = self._session_dir(session_id) / f"SESSION-{session_id}_TRANSCRIPT.json"
        if not filepath.exists():
            return []
        data = self._read_json(filepath)
        return [Message.from_json(m) for m in data.get('messages', [])]

    # ========================
    # Turn snapshots
    # ========================

    def save_snapshot(self, session_id: str, turn: int, snapshot: Dict[str, Any]) -> str:
        """
        Save turn snapshot to append-only file.

        Args:
            session_id: Session identifier
            turn: Turn number
            snapshot: Orchestrator snapshot

        Returns:
            str: Absolute path to saved file

        Raises:
            FileExistsError: If turn file already exists (double-submit)
        """
        session_dir = self._session_dir(session_id)
        session_dir.mkdir(exist_ok=True)

        filename = f"SESSION-{session_id}_TURN-{turn:03d}.json"
        filepath = session_dir / filename

        if filepath.exists():
            raise FileExistsError(
                f"Turn file already exists: {filepath}. "
                f"This indicates a double-submit or turn-count error."
            )

        self._write_json(filepath, snapshot)
        logger.info(f"Saved turn {turn} for {session_id}: {filename}")
        return str(filepath.absolute())

    def load_latest_snapshot(self, session_id: str) -> Optional[Dict[str, Any]]:
        """
        Load latest turn snapshot for a session.

        Returns:
            dict if the session has snapshots, None otherwise
        """
        session_dir = self._session_dir(session_id)

        if not session_dir.exists():
            logger.warning(f"Session directory not found: {session_id}")
            return None

        turn_files = list(session_dir.glob(f"SESSION-{session_id}_TURN-*.json"))
        if not turn_files:
            logger.warning(f"No turn files found for {session_id}")
            return None

        latest_file = max(turn_files, key=lambda p: p.name)
        logger.info(f"Loading latest turn for {session_id}: {latest_file.name}")
        return self._read_json(latest_file)

    def get_turn_count(self, session_id: str) -> int:
        session_dir = self._session_dir(session_id)
        if not session_dir.exists():
            return 0
        return len(list(session_dir.glob(f"SESSION-{session_id}_TURN-*.json")))

    def session_exists(self, session_id: str) -> bool:
        return self.get_turn_count(session_id) > 0

    # ========================
    # File helpers
    # ========================

    @staticmethod
    def _write_json(path: Path, data: Dict[str, Any]) -> None:
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2, ensure_ascii=False)

    @staticmethod
    def _read_json(path: Path) -> Dict[str, Any]:
        with open(path, 'r', encoding='utf-8') as f:
            return json.load(f)
