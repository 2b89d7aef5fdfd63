"""Redaction module to mask secrets in logs, errors and ledger messages."""
import re
from typing import Any, Dict

SECRET_KEYS = ("authorization", "api_key", "apikey", "x-api-key", "access_token", "refresh_token", "password")


def redact_string(text: str) -> str:
    """Redact secrets from a string."""
    if not text:
        return text

    # Patterns to redact
    patterns = [
        (r'Bearer\s+[A-Za-z0-9\-._~+/]+=*', 'Bearer [REDACTED]'),
        (r'(api[_-]?key["\']?\s*[:=]\s*["\']?)([^"\'&\s,}]+)', r'\1[REDACTED]'),
        (r'(access_token["\']?\s*[:=]\s*["\']?)([^"\'&\s,}]+)', r'\1[REDACTED]'),
        (r'(refresh_token["\']?\s*[:=]\s*["\']?)([^"\'&\s,}]+)', r'\1[REDACTED]'),
        (r'(password["\']?\s*[:=]\s*["\']?)([^"\'&\s,}]+)', r'\1[REDACTED]'),
    ]

    result = text
    for pattern, replacement in patterns:
        result = re.sub(pattern, replacement, result, flags=re.IGNORECASE)

    return result


def redact_dict(data: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively redact secrets from a dictionary."""
    if not isinstance(data, dict):
        return data

    redacted = {}
    for key, value in data.items():
        if str(key).lower() in SECRET_KEYS:
            redacted[key] = "[REDACTED]"
        else:
            redacted[key] = redact_json(value)
    return redacted


def redact_json(data: Any) -> Any:
    """Redact secrets from JSON-serializable data."""
    if isinstance(data, dict):
        return redact_dict(data)
    elif isinstance(data, list):
        return [redact_json(item) for item in data]
    elif isinstance(data, str):
        return redact_string(data)
    else:
        return data
