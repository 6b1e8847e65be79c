from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

logger = logging.getLogger("audit")


@dataclass
class AuditEvent:
    """Structured representation of a session audit event.

    Payloads carry identifiers, states and counts only. Transcript text, note
    text and audio never appear here.
    """

    timestamp: str
    action: str
    session_id: str
    actor: Optional[str] = None
    extra: Optional[Dict[str, Any]] = None


class AuditService:
    def log_event(
        self,
        *,
        action: str,
        session_id: str,
        actor: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> AuditEvent:
        """Log a structured audit event as one JSON line on the ``audit`` logger.

        - `action`: high-level verb, e.g. "recording_finished", "submitted".
        - `session_id`: the documentation session the action applies to.
        - `actor`: provider identity recorded on the session, when known.
        - `extra`: optional small dict of non-PHI metadata (counts, flags).
        """

        event = AuditEvent(
            timestamp=datetime.now(timezone.utc).isoformat(),
            action=action,
            session_id=session_id,
            actor=actor,
            extra=extra,
        )

        payload = asdict(event)
        try:
            logger.info(json.dumps(payload))
        except TypeError:
            # Something in extra is not JSON serializable.
            payload["extra"] = None
            logger.info(json.dumps(payload))
        return event


audit_service = AuditService()
