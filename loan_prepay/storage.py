import json
import logging
import sqlite3
from contextlib import closing, contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from loan_prepay.config import LOAN_DB_PATH

logger = logging.getLogger(__name__)

DB_PATH = Path(LOAN_DB_PATH)


class VersionConflictError(Exception):
    """The stored record moved on since the caller last read it."""

    def __init__(self, owner_id: str, expected: int, actual: int):
        super().__init__(f"loan record for {owner_id!r} is at version {actual}, not {expected}")
        self.owner_id = owner_id
        self.expected = expected
        self.actual = actual


@dataclass
class LoanRecord:
    owner_id: str
    version: int
    payload: dict
    created_at: str
    updated_at: str


@contextmanager
def get_conn():
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    with closing(sqlite3.connect(DB_PATH)) as conn:
        with conn:
            yield conn


def init_db():
    with get_conn() as conn:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS loans (
                owner_id TEXT PRIMARY KEY,
                version INTEGER NOT NULL,
                payload TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def load_loan(owner_id: str) -> Optional[LoanRecord]:
    init_db()
    with get_conn() as conn:
        row = conn.execute(
            "SELECT version, payload, created_at, updated_at FROM loans WHERE owner_id = ?",
            (owner_id,)
        ).fetchone()
    if not row:
        return None
    return LoanRecord(owner_id, row[0], json.loads(row[1]), row[2], row[3])


def save_loan(owner_id: str, payload: dict, expected_version: Optional[int] = None) -> LoanRecord:
    """Write the owner's record and bump its version.

    With ``expected_version`` the write only lands if the stored version still
    matches (0 means "must not exist yet"); otherwise the last writer wins.
    """
    init_db()
    now = _now()
    with get_conn() as conn:
        row = conn.execute(
            "SELECT version, created_at FROM loans WHERE owner_id = ?",
            (owner_id,)
        ).fetchone()
        current = row[0] if row else 0
        if expected_version is not None and expected_version != current:
            logger.info("version conflict on %s: expected %s, stored %s", owner_id, expected_version, current)
            raise VersionConflictError(owner_id, expected_version, current)

        if row:
            cur = conn.execute(
                "UPDATE loans SET version = ?, payload = ?, updated_at = ? WHERE owner_id = ? AND version = ?",
                (current + 1, json.dumps(payload), now, owner_id, current)
            )
            if cur.rowcount == 0:
                raise VersionConflictError(owner_id, current, current + 1)
            created_at = row[1]
        else:
            try:
                conn.execute(
                    "INSERT INTO loans (owner_id, version, payload, created_at, updated_at) VALUES (?, ?, ?, ?, ?)",
                    (owner_id, 1, json.dumps(payload), now, now)
                )
            except sqlite3.IntegrityError:
                raise VersionConflictError(owner_id, 0, 1)
            created_at = now

    logger.info("saved loan record for %s at version %s", owner_id, current + 1)
    return LoanRecord(owner_id, current + 1, payload, created_at, now)
