#!/usr/bin/env python3
"""Secret lookup for API credentials kept out of source control."""

import os
from typing import Mapping, Optional


class SecretNotFoundError(KeyError):
    """Requested secret is not configured"""


class EnvironmentVault:
    """Reads secrets from environment variables (``.env`` is loaded by config).

    ``get("secret_api_key")`` reads ``VAULT_SECRET_API_KEY``.
    """

    def __init__(self, prefix: str = "VAULT_", environ: Optional[Mapping[str, str]] = None):
        self.prefix = prefix
        self.environ = environ if environ is not None else os.environ

    def variable_name(self, secret_name: str) -> str:
        return f"{self.prefix}{secret_name.upper().replace('-', '_')}"

    async def get(self, secret_name: str) -> str:
        value = self.environ.get(self.variable_name(secret_name), "").strip()
        if not value:
            raise SecretNotFoundError(secret_name)
        return value
