"""
Event log file processing using streaming parser.
"""

import json
from collections import defaultdict
from typing import Any, Dict, Iterator, List, Optional

import ijson

DEFAULT_SESSION_ID = 'default'

JSON_LINES_SUFFIXES = ('.jsonl', '.ndjson')


class EventFileProcessor:
    """Reads recorded event streams from disk, grouped by session."""

    @staticmethod
    def iter_records(file_path: str) -> Iterator[Any]:
        """
        Stream raw records from an event log file.

        Supported layouts:
        - JSON object with an `events` array
        - bare JSON array of events
        - newline-delimited JSON (.jsonl / .ndjson), blank and undecodable
          lines are skipped

        Args:
            file_path: Path to the event log

        Yields:
            Raw event records
        """
        if file_path.endswith(JSON_LINES_SUFFIXES):
            with open(file_path, 'r', encoding='utf-8') as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        yield json.loads(line)
                    except json.JSONDecodeError:
                        continue
            return

        with open(file_path, 'rb') as f:
            prefix = 'events.item' if _first_significant_byte(f) == b'{' else 'item'
            f.seek(0)
            for record in ijson.items(f, prefix, use_float=True):
                yield record

    @staticmethod
    def session_of(record: Any) -> Optional[str]:
        """Session id named by a raw record, or None when it names none."""
        if not isinstance(record, dict):
            return None
        session_id = record.get('sessionId') or record.get('session_id')
        return str(session_id) if session_id else None

    @staticmethod
    def process_file(file_path: str) -> Dict[str, List[Dict]]:
        """
        Read an event log and group records by sessionId.

        Records without a session id are grouped under DEFAULT_SESSION_ID.

        Args:
            file_path: Path to the event log

        Returns:
            Dictionary mapping session_id -> list of raw records, in file order
        """
        sessions = defaultdict(list)

        print(f"Processing {file_path}...")

        record_count = 0
        for record in EventFileProcessor.iter_records(file_path):
            record_count += 1
            session_id = EventFileProcessor.session_of(record) or DEFAULT_SESSION_ID
            sessions[session_id].append(record)

            if record_count % 10000 == 0:
                print(f"  Read {record_count} events...")

        print(f"Completed reading file: {record_count} events found.")
        print(f"Found {len(sessions)} sessions.")

        return dict(sessions)


def _first_significant_byte(f) -> bytes:
    while True:
        byte = f.read(1)
        if not byte or not byte.isspace():
            return byte
