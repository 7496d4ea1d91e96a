import hashlib
from typing import Optional


def mask_token(text: str, token: str) -> str:
    """Replace every occurrence of a secret in a log line with its first characters."""
    return text.replace(token, f"{token[:4]}****") if token else text


def key_fingerprint(key: Optional[str]) -> str:
    """Provide a stable, low-leak identifier for an unlock key in logs."""
    if not key:
        return "<empty>"
    digest = hashlib.sha256(key.encode("utf-8")).hexdigest()[:12]
    return f"len={len(key)} sha256={digest}"
