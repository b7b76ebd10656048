from __future__ import annotations

import json
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Mapping

from profile_engine.clock import Clock


@dataclass(frozen=True)
class JournalEvent:
    """
    A single append-only journal record.

    Parameters
    ----------
    timestamp : datetime
        Event time (timezone-aware).
    event : str
        Stable event identifier (e.g., 'run_started', 'target_completed').
    data : Mapping[str, Any]
        Structured event payload. Must be JSON-serializable.
    """

    timestamp: datetime
    event: str
    data: Mapping[str, Any]


class RunJournal:
    """
    Append-only JSONL journal for one application run.

    Notes
    -----
    - Each call to `append()` writes one JSON object per line (JSONL).
    - The journal is an inspectable artifact intended for debugging and audit.
    """

    def __init__(self, journal_path: Path, *, clock: Clock) -> None:
        self._journal_path = journal_path
        self._clock = clock
        self._lock = threading.Lock()
        self._journal_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        """Return the on-disk path to the journal file."""
        return self._journal_path

    def append(self, event: str, data: Mapping[str, Any]) -> None:
        """
        Append a new event record.

        Raises
        ------
        OSError
            If the journal cannot be written.
        TypeError
            If `data` contains non-JSON-serializable values.
        """
        record = JournalEvent(timestamp=self._clock.now(), event=event, data=data)
        line = json.dumps(
            {
                "ts": record.timestamp.isoformat(),
                "event": record.event,
                "data": record.data,
            },
            ensure_ascii=False,
            sort_keys=True,
            separators=(",", ":"),
        )

        with self._lock, self._journal_path.open("a", encoding="utf-8", newline="\n") as handle:
            handle.write(line + "\n")
            handle.flush()


def build_run_journal_path(*, runs_root: Path, profile_name: str, run_id: str) -> Path:
    """Return ``<runs_root>/<profile_name>/<run_id>.jsonl``."""
    return runs_root / profile_name / f"{run_id}.jsonl"


def read_journal(journal_path: Path) -> list[dict[str, Any]]:
    """Read every record of a journal, in append order."""
    records: list[dict[str, Any]] = []
    with journal_path.open("r", encoding="utf-8") as handle:
        for line in handle:
            if line.strip():
                records.append(json.loads(line))
    return records
