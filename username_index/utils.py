import json
import os
import re
import time
import unicodedata
from typing import Any, Dict, Optional

from username_index.errors import InvalidUsernameError

def normalize_username(username: str) -> str:
    """
    Canonical form shared by the filter, the service and the store.
    Any divergence here would let the index report a stored name as absent.
    """
    return username.strip().casefold()

def validate_username(username: Any, max_length: int = 255) -> str:
    """Normalizes and rejects input that must never reach the hash scheme."""
    if not isinstance(username, str):
        raise InvalidUsernameError(f"Username must be a string, got {type(username).__name__}")

    normalized = normalize_username(username)
    if not normalized:
        raise InvalidUsernameError("Username is empty")
    if len(normalized) > max_length:
        raise InvalidUsernameError(f"Username longer than {max_length} characters")
    return normalized

def generate_username(name: str, timestamp: Optional[int] = None) -> str:
    """
    Builds a username slug from a display name.
    'José da Silva' -> 'jose_da_silva_1700000000000'
    """
    decomposed = unicodedata.normalize("NFD", name or "")
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))

    slug = re.sub(r'[^a-z0-9]', '_', stripped.lower())
    slug = re.sub(r'_+', '_', slug).strip('_') or "user"

    if timestamp is None:
        timestamp = int(time.time() * 1000)
    return f"{slug}_{timestamp}"

def load_config(path: str) -> Dict[str, Any]:
    """Loads JSON config with Environment Variable expansion."""
    with open(path, 'r', encoding='utf-8') as f:
        content = f.read()

    pattern = re.compile(r'\$\{([^}]+)\}|\$([a-zA-Z0-9_]+)')

    def replace_env(match):
        var_name = match.group(1) or match.group(2)
        return os.environ.get(var_name, match.group(0))

    expanded_content = pattern.sub(replace_env, content)
    return json.loads(expanded_content)
