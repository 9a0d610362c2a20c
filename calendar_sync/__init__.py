"""
Discord ↔ Google Calendar sync engine.

Google → Discord runs as a periodic reconciliation pass, Discord → Google as
push handlers on gateway notifications. All shared state lives in one
SyncContext per bridge.
"""

from .context import SyncContext, build_context
from .guard import SyncLoopGuard, guard_key
from .mapping_store import MappingFile, MappingStore
from .push_handlers import PushSyncHandlers
from .reconciliation import ReconciliationEngine
from .service import CalendarBridge

__all__ = [
    # Wiring
    'CalendarBridge',
    'SyncContext',
    'build_context',

    # State
    'MappingStore',
    'MappingFile',
    'SyncLoopGuard',
    'guard_key',

    # Flows
    'ReconciliationEngine',
    'PushSyncHandlers',
]
