"""Relational store and cache clients."""

from fulfillment.db.base import Base, close_db, create_tables, get_session_factory, init_db
from fulfillment.db.redis import close_redis, create_redis, get_redis, init_redis

__all__ = [
    "Base",
    "close_db",
    "close_redis",
    "create_redis",
    "create_tables",
    "get_redis",
    "get_session_factory",
    "init_db",
    "init_redis",
]
