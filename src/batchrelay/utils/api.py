"""API utils"""

import os


def get_api_key_from_env(provider: str) -> str | None:
    """Return ``<PROVIDER>_API_KEY`` from the environment, or ``None`` when unset or blank."""
    api_key = os.getenv(f"{provider.upper()}_API_KEY")
    if not api_key or not api_key.strip():
        return None
    return api_key.strip()
