"""
Process wiring: which store backs this process, and FastAPI accessors for what lifespan set up.
"""
from fastapi import Request

from washledger.changes import ChangePublisher
from washledger.config import settings
from washledger.db import PostgresStore
from washledger.memory_store import InMemoryStore
from washledger.notifications import NotificationDispatcher
from washledger.store import LedgerStore


def create_store() -> LedgerStore:
    if settings.store_backend == "memory":
        return InMemoryStore()
    return PostgresStore(settings.database_url)


def get_store(request: Request) -> LedgerStore:
    return request.app.state.store


def get_dispatcher(request: Request) -> NotificationDispatcher:
    return request.app.state.dispatcher


def get_publisher(request: Request) -> ChangePublisher:
    return request.app.state.publish
