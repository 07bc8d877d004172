"""
Database module.
Contains database connection, models, and store implementations.
"""

from jobrelay.db.connection import create_engine, create_schema, create_session_factory
from jobrelay.db.models import Base, Job, JobLog, PushSubscription

__all__ = [
    "create_engine",
    "create_session_factory",
    "create_schema",
    "Job",
    "JobLog",
    "PushSubscription",
    "Base",
]
