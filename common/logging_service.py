from collections import deque
from datetime import datetime, timezone
from typing import Deque, Dict, List, Optional
import logging
import json

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'

# Most recent sync events, newest last. Read by the /health endpoint.
RECENT_EVENT_LIMIT = 50
_recent_events: Deque[Dict] = deque(maxlen=RECENT_EVENT_LIMIT)


def configure_logging(level: str = "info") -> None:
    """Configure the root logger once at process start."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )


def log_sync_event(event_type: str, status: str, message: str, details: Optional[dict] = None):
    """
    Logs a sync event to the standard logger and the in-memory event history.

    Args:
        event_type: The type of event (e.g., 'reconcile', 'push_create', 'persist')
        status: The status/level (e.g., 'info', 'success', 'error', 'warning')
        message: Human readable message
        details: Optional dictionary with additional details
    """
    log_msg = f"[{event_type.upper()}] {message}"
    if details:
        log_msg += f" | Details: {json.dumps(details, default=str)}"

    if status.lower() in ["error", "fatal"]:
        logger.error(log_msg)
    elif status.lower() == "warning":
        logger.warning(log_msg)
    else:
        logger.info(log_msg)

    _recent_events.append({
        "event_type": event_type,
        "status": status,
        "message": message[:500] if message else "",
        "details": details or {},
        "created_at": datetime.now(timezone.utc).isoformat(),
    })


def recent_sync_events(limit: int = 20) -> List[Dict]:
    """Return up to `limit` most recent sync events, newest first."""
    events = list(_recent_events)[-limit:]
    events.reverse()
    return events


def clear_sync_events() -> None:
    _recent_events.clear()
