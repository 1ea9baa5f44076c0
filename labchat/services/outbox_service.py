from __future__ import annotations

import os
import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import text
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from labchat.models import OutboxMessage

STATUS_PENDING = "PENDING"
STATUS_PROCESSING = "PROCESSING"
STATUS_SENT = "SENT"
STATUS_FAILED = "FAILED"

_RETURNING = """
    RETURNING outbox_messages.id,
              outbox_messages.lab_id,
              outbox_messages.session_id,
              outbox_messages.inbound_message_id,
              outbox_messages.seq,
              outbox_messages.action_type,
              outbox_messages.payload_json,
              outbox_messages.attempts,
              outbox_messages.created_at
"""


def enqueue_outbox_action(
    db: Session,
    *,
    lab_id,
    session_id,
    inbound_message_id: str,
    seq: int,
    action_type: str,
    payload_json: dict[str, Any],
) -> bool:
    now = datetime.now(timezone.utc)
    stmt = (
        insert(OutboxMessage)
        .values(
            id=uuid.uuid4(),
            lab_id=lab_id,
            session_id=session_id,
            inbound_message_id=inbound_message_id,
            seq=seq,
            action_type=action_type,
            payload_json=payload_json,
            status=STATUS_PENDING,
            attempts=0,
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing(index_elements=["inbound_message_id", "seq"])
    )
    result = db.execute(stmt)
    return result.rowcount > 0


def claim_pending_outbox(db: Session, *, limit: int = 10) -> list[dict[str, Any]]:
    """Claim due rows for the background worker. Rows locked by another worker are skipped."""
    rows = (
        db.execute(
            text(
                """
                WITH cte AS (
                    SELECT id
                    FROM outbox_messages
                    WHERE status = 'PENDING'
                      AND (next_attempt_at IS NULL OR next_attempt_at <= NOW())
                    ORDER BY created_at, seq
                    LIMIT :limit
                    FOR UPDATE SKIP LOCKED
                )
                UPDATE outbox_messages
                SET status = 'PROCESSING',
                    attempts = attempts + 1,
                    updated_at = NOW()
                FROM cte
                WHERE outbox_messages.id = cte.id
                """
                + _RETURNING
            ),
            {"limit": limit},
        )
        .mappings()
        .all()
    )
    db.commit()
    return [dict(row) for row in rows]


def claim_outbox_for_message(db: Session, inbound_message_id: str) -> list[dict[str, Any]]:
    """Claim the fresh rows of one inbound message for immediate delivery."""
    rows = (
        db.execute(
            text(
                """
                WITH cte AS (
                    SELECT id
                    FROM outbox_messages
                    WHERE inbound_message_id = :inbound_message_id
                      AND status = 'PENDING'
                      AND next_attempt_at IS NULL
                    FOR UPDATE SKIP LOCKED
                )
                UPDATE outbox_messages
                SET status = 'PROCESSING',
                    attempts = attempts + 1,
                    updated_at = NOW()
                FROM cte
                WHERE outbox_messages.id = cte.id
                """
                + _RETURNING
            ),
            {"inbound_message_id": inbound_message_id},
        )
        .mappings()
        .all()
    )
    db.commit()
    return sorted((dict(row) for row in rows), key=lambda row: row.get("seq") or 0)


def mark_outbox_status(
    db: Session,
    *,
    outbox_id,
    status: str,
    last_error: str | None = None,
    next_attempt_at: datetime | None = None,
) -> None:
    db.execute(
        text(
            """
            UPDATE outbox_messages
            SET status = :status,
                last_error = :last_error,
                next_attempt_at = :next_attempt_at,
                updated_at = NOW()
            WHERE id = :id
            """
        ),
        {"id": outbox_id, "status": status, "last_error": last_error, "next_attempt_at": next_attempt_at},
    )
    db.commit()


def update_outbox_payload(db: Session, *, outbox_id, payload_json: dict[str, Any]) -> None:
    """Persist progress inside a multi-step action so a retry resumes after it."""
    db.query(OutboxMessage).filter(OutboxMessage.id == outbox_id).update(
        {OutboxMessage.payload_json: payload_json},
        synchronize_session=False,
    )
    db.commit()


def release_stale_processing(db: Session, *, stale_seconds: int, max_attempts: int) -> int:
    """Return rows stuck in PROCESSING (crashed delivery) to the queue, or fail them when out of attempts."""
    result = db.execute(
        text(
            """
            UPDATE outbox_messages
            SET status = CASE WHEN attempts >= :max_attempts THEN 'FAILED' ELSE 'PENDING' END,
                last_error = COALESCE(last_error, 'stale_processing'),
                next_attempt_at = NULL,
                updated_at = NOW()
            WHERE status = 'PROCESSING'
              AND updated_at < NOW() - make_interval(secs => :stale_seconds)
            """
        ),
        {"stale_seconds": stale_seconds, "max_attempts": max_attempts},
    )
    db.commit()
    return result.rowcount or 0


def get_outbox_retry_settings() -> tuple[int, float]:
    max_attempts = int(os.environ.get("OUTBOX_MAX_ATTEMPTS", "5"))
    retry_backoff_seconds = float(os.environ.get("OUTBOX_RETRY_BACKOFF_SECONDS", "2"))
    return max(max_attempts, 1), max(retry_backoff_seconds, 0.0)
