from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from typing import Any

REDACTED = "***REDACTED***"

# Substrings that mark a key as sensitive wherever they appear.
SENSITIVE_KEY_PARTS = (
    "private_key",
    "privatekey",
    "mnemonic",
    "secret",
    "password",
    "passphrase",
    "authorization",
    "signature",
    "access_token",
    "refresh_token",
    "api_key",
    "apikey",
    "record_store_token",
)

# Keys only sensitive as a whole word; "token" alone would also hit ``token_symbol``.
_SENSITIVE_EXACT_KEYS = {"token", "jwt", "auth", "seed", "signed_tx", "raw_tx"}

_PLAIN_SECRET_PATTERNS = (
    re.compile(r"(?im)(authorization\s*[:=]\s*)(bearer\s+)?([^\s,;]+)"),
    re.compile(r"(?im)(private[_-]?key\s*[:=]\s*)([^\s,;]+)"),
    re.compile(r"(?im)(mnemonic\s*[:=]\s*)([^,;]+)"),
)

_QUERY_PARAM_PATTERN = re.compile(r"([?&]?)(access_token|token|apiKey)=([^&\s]+)", re.IGNORECASE)


def _is_sensitive_key(key: object) -> bool:
    normalized = str(key).replace("-", "_").casefold()
    if normalized in _SENSITIVE_EXACT_KEYS:
        return True
    return any(part in normalized for part in SENSITIVE_KEY_PARTS)


def _mask_secret(value: str) -> str:
    if not value:
        return REDACTED
    if len(value) > 8:
        return f"{value[:4]}{'*' * (len(value) - 8)}{value[-4:]}"
    return "*" * len(value)


def _redact_match(match: re.Match[str]) -> str:
    prefix = match.group(1)
    optional_scheme = ""
    if match.lastindex and match.lastindex >= 3:
        optional_scheme = match.group(2) or ""
    return f"{prefix}{optional_scheme}[REDACTED]"


def sanitize_text(text: str, known_secrets: Iterable[str] = ()) -> str:
    redacted = str(text)
    for secret in known_secrets:
        if secret:
            redacted = redacted.replace(secret, _mask_secret(str(secret)))
    for pattern in _PLAIN_SECRET_PATTERNS:
        redacted = pattern.sub(_redact_match, redacted)
    return _QUERY_PARAM_PATTERN.sub(
        lambda m: f"{m.group(1)}{m.group(2)}={_mask_secret(m.group(3))}", redacted
    )


def sanitize_mapping(d: Mapping[str, Any]) -> dict[str, Any]:
    sanitized: dict[str, Any] = {}
    for key, value in d.items():
        key_str = str(key)
        if _is_sensitive_key(key_str):
            sanitized[key_str] = _mask_secret(str(value)) if value is not None else REDACTED
        else:
            sanitized[key_str] = redact_data(value)
    return sanitized


def redact_data(value: Any) -> Any:
    try:
        if isinstance(value, Mapping):
            return sanitize_mapping(value)
        if isinstance(value, list):
            return [redact_data(item) for item in value]
        if isinstance(value, tuple):
            return tuple(redact_data(item) for item in value)
        if isinstance(value, str):
            return sanitize_text(value)
        return value
    except Exception:  # noqa: BLE001
        return REDACTED
