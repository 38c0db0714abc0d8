"""Lifecycle event sink backed by the activity log."""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from models.activity_log import ActivityLog

logger = logging.getLogger(__name__)


EVENT_RENTAL_START = "rental_start"
EVENT_MATCH_DETECTED = "match_detected"
EVENT_RENTAL_COMPLETED = "rental_completed"
EVENT_IDLE_TIMEOUT = "idle_timeout"
EVENT_RENTAL_CANCELLED = "rental_cancelled"
EVENT_RENTAL_FORCE_RELEASE = "rental_force_release"
EVENT_HEARTBEAT_TIMEOUT = "heartbeat_timeout"


async def emit_event(
    *,
    db: AsyncSession,
    user_id: Optional[str],
    event_type: str,
    metadata: Optional[Dict[str, Any]] = None,
) -> bool:
    """Best-effort event write on its own short session.

    Call only after the state change it describes has committed. A failure
    here is logged and never touches that change or the caller's session.
    """
    try:
        async with AsyncSession(db.bind, expire_on_commit=False) as sink:
            sink.add(
                ActivityLog(
                    id=str(uuid.uuid4()),
                    user_id=user_id,
                    event_type=event_type,
                    metadata_json=metadata if isinstance(metadata, dict) else None,
                )
            )
            await sink.commit()
        logger.info("Lifecycle event user=%s event=%s metadata=%s", user_id, event_type, metadata or {})
        return True
    except Exception as exc:
        logger.warning("Lifecycle event write skipped for user=%s event=%s: %s", user_id, event_type, exc)
        return False
