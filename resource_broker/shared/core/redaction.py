from __future__ import annotations

import re
from typing import Any

REDACTED = "***"

_SENSITIVE_KEY_FRAGMENTS = (
    "token",
    "secret",
    "password",
    "pwd",
    "api_key",
    "apikey",
    "access_key",
    "account_key",
    "private_key",
    "client_secret",
    "refresh_token",
    "code_verifier",
    "authorization",
    "connection_string",
)

# key=value pairs as they appear in connection strings, query strings and form bodies
_KEY_VALUE_RE = re.compile(
    r"(?P<key>\b(?:password|pwd|clientsecret|client_secret|accountkey|sharedaccesskey|"
    r"access_token|refresh_token|id_token|code_verifier|api[_-]?key)\s*[=:]\s*)"
    r"(?P<value>\"[^\"]*\"|'[^']*'|[^;&\s,]+)",
    re.IGNORECASE,
)
_BEARER_RE = re.compile(r"\b(Bearer)\s+[A-Za-z0-9._~+/=-]+", re.IGNORECASE)
_JWT_RE = re.compile(r"\beyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]*")
_URL_USERINFO_RE = re.compile(r"(?P<scheme>[a-z][a-z0-9+.-]*://)(?P<user>[^:/@\s]+):(?P<password>[^@/\s]+)@")
_AD_SP_RE = re.compile(
    r"Authentication=ActiveDirectoryServicePrincipal;([^;]*);", re.IGNORECASE
)


def sanitize_message(message: Any) -> str:
    """
    Mask secret material in free text (error messages, driver output).

    Connection-string credentials, bearer tokens, JWT-shaped strings and
    URL passwords are replaced with ``***``.
    """
    text = str(message) if message is not None else ""
    if not text:
        return text
    text = _KEY_VALUE_RE.sub(lambda m: f"{m.group('key')}{REDACTED}", text)
    text = _BEARER_RE.sub(lambda m: f"{m.group(1)} {REDACTED}", text)
    text = _JWT_RE.sub(REDACTED, text)
    text = _URL_USERINFO_RE.sub(
        lambda m: f"{m.group('scheme')}{m.group('user')}:{REDACTED}@", text
    )
    text = _AD_SP_RE.sub(f"Authentication={REDACTED};", text)
    return text


def is_sensitive_key(key: Any) -> bool:
    key_norm = str(key).lower().strip().replace("-", "_")
    return any(fragment in key_norm for fragment in _SENSITIVE_KEY_FRAGMENTS)


def redact_secrets(value: Any) -> Any:
    """
    Redact secret-bearing keys from JSON-like payloads and sanitize free text.

    This is intentionally conservative: if a key name looks sensitive, we replace its value.
    """
    if isinstance(value, dict):
        return {
            k: (REDACTED if is_sensitive_key(k) else redact_secrets(v))
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact_secrets(item) for item in value]
    if isinstance(value, str):
        return sanitize_message(value)
    return value
