"""
testgen-backend - Database Layer

The process owns exactly one database engine, held by ConnectionSupervisor.
"""
from db.connection import ConnectionState, ConnectionSupervisor

__all__ = ["ConnectionState", "ConnectionSupervisor"]
