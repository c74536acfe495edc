#
# Copyright (c) 2024-2026, Daily
#
# SPDX-License-Identifier: BSD 2-Clause License
#

"""Environment variable helpers.

Small parsing helpers used by ``ConversationParams.from_env()``.
"""

from __future__ import annotations

import os


class InvalidEnvVarValueError(ValueError):
    """Raised when an environment variable value cannot be parsed."""

    def __init__(self, name: str, value: str, expected: str):
        """Initialize an InvalidEnvVarValueError."""
        super().__init__(f"Invalid value for env var {name!r}: {value!r}. Expected {expected}.")
        self.name = name
        self.value = value
        self.expected = expected


def env_truthy(name: str, default: bool = False) -> bool:
    """Interpret an environment variable as a boolean.

    - If the variable is **not set**, returns `default`.
    - If the variable is set to a recognized boolean string, returns the parsed value.
    - Otherwise, raises `InvalidEnvVarValueError`.

    Recognized values (case-insensitive, whitespace ignored):
    - Truthy: "1", "true", "yes", "y", "on"
    - Falsy:  "0", "false", "no", "n", "off", ""
    """
    raw = os.getenv(name)
    if raw is None:
        return default

    val = raw.strip().lower()
    if val in {"1", "true", "yes", "y", "on"}:
        return True
    if val in {"0", "false", "no", "n", "off", ""}:
        return False

    raise InvalidEnvVarValueError(
        name=name,
        value=raw,
        expected="true or false",
    )


def env_int(name: str, default: int, *, minimum: int | None = None, maximum: int | None = None) -> int:
    """Interpret an environment variable as an integer, optionally clamped.

    - If the variable is **not set** or blank, returns `default`.
    - If the variable holds an integer, returns it clamped to `[minimum, maximum]`.
    - Otherwise, raises `InvalidEnvVarValueError`.
    """
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default

    try:
        val = int(raw.strip())
    except ValueError:
        raise InvalidEnvVarValueError(name=name, value=raw, expected="an integer")

    if minimum is not None:
        val = max(minimum, val)
    if maximum is not None:
        val = min(maximum, val)
    return val
