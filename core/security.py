# core/security.py
"""Input sanitization, API-key obfuscation and local endpoint validation."""

from __future__ import annotations

import base64
import binascii
import ipaddress
import re
from urllib.parse import urlsplit, urlunsplit

import structlog

from config import settings
from core.errors import ClassifiedError, invalid_request

logger = structlog.get_logger(__name__)

# Lines matching any of these are dropped from user-supplied text before it
# is embedded in a prompt.
_INJECTION_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"\b(ignore|disregard|forget)\b.{0,40}\b(previous|prior|above|earlier|all)\b.{0,40}\b(instructions?|prompts?|rules|messages?)\b",
        r"\byou\s+are\s+now\b.{0,60}\b(assistant|ai|model|dan|jailbroken)\b",
        r"\b(reveal|show|print|repeat|output)\b.{0,30}\b(system\s+prompt|hidden\s+instructions?)\b",
        r"\bnew\s+instructions?\s*:",
        r"^\s*(system|assistant)\s*:\s*",
        r"(以前|前|上記|これまで)の(指示|命令|プロンプト|ルール).{0,10}(無視|忘れ)",
        r"システムプロンプト.{0,10}(表示|教え|出力|開示)",
        r"(忽略|无视).{0,10}(之前|以上|上面).{0,10}(指令|指示|提示)",
    )
)

_HTML_ANGLE_RE = re.compile(r"[<>]")
_JS_SCHEME_RE = re.compile(r"javascript:", re.IGNORECASE)
_EVENT_HANDLER_RE = re.compile(r"on\w+\s*=", re.IGNORECASE)


def strip_injection_lines(text: str) -> str:
    """Remove lines that look like prompt-injection attempts."""
    kept: list[str] = []
    removed = 0
    for line in text.splitlines():
        if any(p.search(line) for p in _INJECTION_PATTERNS):
            removed += 1
            continue
        kept.append(line)
    if removed:
        logger.warning("Removed %d suspected prompt-injection line(s)", removed)
    return "\n".join(kept)


def sanitize_input(text: str | None, max_length: int | None = None) -> str:
    """Sanitize user-supplied text before it is embedded in a prompt."""
    if not text:
        return ""
    limit = settings.MAX_PROMPT_CHARS if max_length is None else max_length
    cleaned = strip_injection_lines(text)
    cleaned = _HTML_ANGLE_RE.sub("", cleaned)
    cleaned = _JS_SCHEME_RE.sub("", cleaned)
    cleaned = _EVENT_HANDLER_RE.sub("", cleaned)
    return cleaned[:limit]


def _xor_index(data: bytes) -> bytes:
    return bytes(b ^ (i % 256) for i, b in enumerate(data))


def encrypt_api_key(key: str) -> str:
    """Obfuscate an API key for storage (base64, index XOR, base64).

    This is obfuscation at rest, not real encryption.
    """
    if not key:
        return ""
    encoded = base64.b64encode(key.encode("utf-8"))
    return base64.b64encode(_xor_index(encoded)).decode("ascii")


def decrypt_api_key(encrypted_key: str) -> str:
    """Reverse ``encrypt_api_key``. Returns the input unchanged when malformed."""
    if not encrypted_key:
        return ""
    try:
        scrambled = base64.b64decode(encrypted_key, validate=True)
        return base64.b64decode(_xor_index(scrambled), validate=True).decode("utf-8")
    except (binascii.Error, ValueError, UnicodeDecodeError):
        logger.warning(
            "API key could not be decrypted; treating it as plain text.",
            key=mask_api_key(encrypted_key),
        )
        return encrypted_key


def mask_api_key(key: str | None) -> str:
    if not key:
        return ""
    if len(key) <= 8:
        return "*" * len(key)
    return f"{key[:4]}...{key[-4:]}"


_LOCAL_NETWORKS = tuple(
    ipaddress.ip_network(n)
    for n in (
        "127.0.0.0/8",
        "10.0.0.0/8",
        "172.16.0.0/12",
        "192.168.0.0/16",
        "169.254.0.0/16",
        "::1/128",
        "fc00::/7",
        "fe80::/10",
    )
)


def _is_local_host(host: str) -> bool:
    # ipaddress.is_private also covers documentation ranges, so match explicitly
    if host.lower() in {"localhost", "localhost.localdomain"}:
        return True
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return False
    return any(
        address.version == network.version and address in network
        for network in _LOCAL_NETWORKS
    )


def validate_local_endpoint(endpoint: str | None) -> str:
    """Return the chat-completions URL for a local server or raise.

    Only http(s) URLs whose host is loopback, private or link-local are
    accepted; anything else is rejected as ``invalid_request``.
    """
    raw = (endpoint or settings.LOCAL_DEFAULT_ENDPOINT).strip()
    try:
        parts = urlsplit(raw)
        port = parts.port
    except ValueError as exc:
        raise invalid_request(
            f"Local endpoint has an invalid port: {raw}", "INVALID_ENDPOINT"
        ) from exc

    if parts.scheme not in ("http", "https"):
        raise invalid_request(
            f"Local endpoint must use http or https: {raw}", "INVALID_ENDPOINT"
        )
    host = parts.hostname or ""
    if not host:
        raise invalid_request(f"Local endpoint has no host: {raw}", "INVALID_ENDPOINT")
    if port is not None and not 1 <= port <= 65535:
        raise invalid_request(
            f"Local endpoint has an invalid port: {raw}", "INVALID_ENDPOINT"
        )
    if not _is_local_host(host):
        raise invalid_request(
            "Local endpoint must point to localhost or a private network "
            f"address, got '{host}'.",
            "INVALID_ENDPOINT",
        )

    path = parts.path
    if not path or path == "/":
        path = settings.LOCAL_CHAT_COMPLETIONS_PATH
    return urlunsplit((parts.scheme, parts.netloc, path, parts.query, ""))


def is_valid_local_endpoint(endpoint: str | None) -> bool:
    try:
        validate_local_endpoint(endpoint)
    except ClassifiedError:
        return False
    return True
