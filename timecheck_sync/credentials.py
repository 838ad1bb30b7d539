import os
from typing import Protocol

from .config import TOKEN_ENV


class CredentialProvider(Protocol):
    def get_token(self) -> str | None:
        """Return the current bearer token, or None when signed out."""
        ...


class StaticCredentialProvider:
    def __init__(self, token: str | None = None) -> None:
        self.token = token

    def get_token(self) -> str | None:
        return self.token or None


class EnvCredentialProvider:
    """Reads the token from the environment on every call."""

    def __init__(self, var: str = TOKEN_ENV) -> None:
        self.var = var

    def get_token(self) -> str | None:
        token = os.getenv(self.var, "").strip()
        return token or None
