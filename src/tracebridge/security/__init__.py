from tracebridge.security.redaction import (
    REDACTED,
    SENSITIVE_KEY_PARTS,
    redact_data,
    sanitize_mapping,
    sanitize_text,
)

__all__ = [
    "REDACTED",
    "SENSITIVE_KEY_PARTS",
    "redact_data",
    "sanitize_mapping",
    "sanitize_text",
]
