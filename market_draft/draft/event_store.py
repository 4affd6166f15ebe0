"""
Append-only event storage for draft history.

Uses JSONL (JSON Lines) format where each line is a complete JSON object
representing a committed pick, a session snapshot or the scoring
baseline adopted for an unpriced pick. This format enables:
- Streaming writes without loading entire file
- Human-readable audit log
- Crash recovery from the latest session snapshot
"""

import json
import logging
import threading
from datetime import datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pandas as pd

from .draft_event import DraftSession, Pick

logger = logging.getLogger(__name__)

PICK_RECORD = 'pick'
SESSION_RECORD = 'session'
BASELINE_RECORD = 'baseline'


class DraftEventStore:
    """Append-only event log, one JSONL file per draft session."""

    def __init__(self, base_dir: Path):
        """
        Initialize event store.

        Args:
            base_dir: Directory holding one JSONL file per session
        """
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self._write_lock = threading.Lock()

    def session_filepath(self, session_id: str) -> Path:
        return self.base_dir / f"draft_{session_id}.jsonl"

    def record_pick(self, pick: Pick) -> None:
        """Append a committed pick."""
        self._append(pick.session_id, PICK_RECORD, pick.to_dict())
        logger.debug(f"Recorded pick {pick.pick_number}: {pick.member_id} → {pick.asset_id}")

    def record_session_state(self, session: DraftSession) -> None:
        """Append a full session snapshot."""
        self._append(session.session_id, SESSION_RECORD, session.to_dict())
        logger.debug(
            f"Recorded session {session.session_id} snapshot "
            f"({session.state.value}, {session.total_picks()} picks)"
        )

    def record_baseline(self, session_id: str, asset_id: str, baseline: Decimal, sequence: int) -> None:
        """Append the first-tick baseline adopted for an unpriced pick."""
        self._append(session_id, BASELINE_RECORD, {
            'session_id': session_id,
            'asset_id': asset_id,
            'baseline': str(baseline),
            'sequence': sequence,
        })
        logger.debug(f"Recorded baseline {baseline} for {asset_id} in session {session_id}")

    def _append(self, session_id: str, kind: str, data: dict) -> None:
        record = {
            'kind': kind,
            'recorded_at': datetime.now().isoformat(),
            'data': data,
        }
        with self._write_lock:
            with open(self.session_filepath(session_id), 'a', encoding='utf-8') as f:
                f.write(json.dumps(record) + '\n')

    def load_records(self, session_id: str) -> List[Tuple[str, dict]]:
        """
        Load the complete record history for a session.

        Returns:
            List of (kind, data) tuples in write order

        Returns empty list if file doesn't exist. Unparseable lines are
        logged and skipped.
        """
        filepath = self.session_filepath(session_id)
        if not filepath.exists():
            logger.debug(f"Event store file does not exist: {filepath}")
            return []

        records = []
        with open(filepath, 'r', encoding='utf-8') as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue

                try:
                    record = json.loads(line)
                    records.append((record['kind'], record['data']))
                except (json.JSONDecodeError, KeyError, TypeError) as e:
                    logger.error(
                        f"Failed to parse record at line {line_num} of {filepath}: {e}"
                    )

        logger.info(f"Loaded {len(records)} records from {filepath}")
        return records

    def load_picks(self, session_id: str) -> List[Pick]:
        """Committed picks in commit order."""
        picks = []
        for kind, data in self.load_records(session_id):
            if kind != PICK_RECORD:
                continue
            try:
                picks.append(Pick.from_dict(data))
            except (KeyError, ValueError) as e:
                logger.error(f"Skipping invalid pick record: {e}")
        return sorted(picks, key=lambda p: p.pick_number)

    def latest_snapshot(self, session_id: str) -> Optional[DraftSession]:
        """
        Most recent session snapshot, or None.

        Snapshots are written after every committed mutation, so the last
        readable one is the state to resume from.
        """
        for kind, data in reversed(self.load_records(session_id)):
            if kind != SESSION_RECORD:
                continue
            try:
                return DraftSession.from_dict(data)
            except (KeyError, ValueError) as e:
                logger.error(f"Failed to parse session snapshot: {e}")
                continue
        return None

    def load_baselines(self, session_id: str) -> Dict[str, Decimal]:
        """
        Adopted baselines by asset id.

        The first record per asset wins; a baseline never moves once adopted.
        """
        baselines: Dict[str, Decimal] = {}
        for kind, data in self.load_records(session_id):
            if kind != BASELINE_RECORD:
                continue
            try:
                baselines.setdefault(data['asset_id'], Decimal(data['baseline']))
            except (KeyError, TypeError, InvalidOperation) as e:
                logger.error(f"Skipping invalid baseline record: {e}")
        return baselines

    def list_session_ids(self) -> List[str]:
        """Session ids with an event file, oldest file first."""
        files = sorted(self.base_dir.glob('draft_*.jsonl'), key=lambda p: p.stat().st_mtime)
        return [f.stem[len('draft_'):] for f in files]

    def export_to_csv(self, session_id: str, output_path: Path) -> None:
        """
        Export a session's picks to CSV for analysis.

        Args:
            session_id: Session to export
            output_path: Path for CSV output file
        """
        picks = self.load_picks(session_id)
        if not picks:
            logger.warning(f"No picks to export for session {session_id}")
            return

        df = pd.DataFrame([p.to_dict() for p in picks])
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        df.to_csv(output_path, index=False)

        logger.info(f"Exported {len(df)} picks to {output_path}")

    def clear(self, session_id: str) -> None:
        """
        Delete a session's event log.

        WARNING: This deletes the event log file. Use with caution.
        """
        filepath = self.session_filepath(session_id)
        if filepath.exists():
            filepath.unlink()
            logger.warning(f"Cleared event store: {filepath}")
