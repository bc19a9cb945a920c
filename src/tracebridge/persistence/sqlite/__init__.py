from tracebridge.persistence.sqlite.trace_repo import SqliteTraceRepo

__all__ = ["SqliteTraceRepo"]
