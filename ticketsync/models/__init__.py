"""Database models package."""
from ticketsync.models.database import Base, get_session, init_db, close_db, get_pool_status, get_engine
from ticketsync.models.ticket import Ticket
from ticketsync.models.sync_log import SyncLog

__all__ = [
    "Base",
    "get_session",
    "init_db",
    "close_db",
    "get_pool_status",
    "get_engine",
    "Ticket",
    "SyncLog",
]
