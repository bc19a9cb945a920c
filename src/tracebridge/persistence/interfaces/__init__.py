from tracebridge.persistence.interfaces.trace_repo import TraceRepoProtocol

__all__ = ["TraceRepoProtocol"]
