from tracebridge.persistence.record_store import SqliteTraceRecordStore
from tracebridge.persistence.uow import UnitOfWork, UnitOfWorkFactory

__all__ = ["SqliteTraceRecordStore", "UnitOfWork", "UnitOfWorkFactory"]
