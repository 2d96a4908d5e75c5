"""
Secret generation for installation steps.

The generator itself is pluggable; installation only asks it for values for
keys whose value is still an unresolved placeholder, so re-running the
secrets step never rotates a secret that was already set.
"""

from __future__ import annotations

import secrets
from abc import ABC, abstractmethod

from stackpilot.envfile import EnvironmentFile
from stackpilot.logging import get_logger

logger = get_logger(__name__)


class SecretGenerator(ABC):
    """Produces cryptographically secure random values."""

    @abstractmethod
    def generate(self, key: str) -> str:
        """Return a new secret value for environment key ``key``."""


class TokenSecretGenerator(SecretGenerator):
    """URL-safe random tokens from the ``secrets`` module."""

    def __init__(self, nbytes: int = 32) -> None:
        self.nbytes = nbytes

    def generate(self, key: str) -> str:
        return secrets.token_urlsafe(self.nbytes)


def fill_placeholders(
    env: EnvironmentFile,
    generator: SecretGenerator,
    placeholder: str = "CHANGE_ME",
) -> list[str]:
    """
    Replace unresolved placeholder values with generated secrets.

    A value is unresolved when it starts with ``placeholder``. Other values
    are left untouched.

    Returns:
        Keys that were filled.
    """
    filled = []
    for key in env.keys():
        value = env.get(key) or ""
        if value.startswith(placeholder):
            env.set_value(key, generator.generate(key))
            filled.append(key)
    if filled:
        logger.info(f"Generated {len(filled)} secret(s)", extra={"keys": filled})
    return filled
