#
# Copyright (c) 2024–2025, Daily
#
# SPDX-License-Identifier: BSD 2-Clause License
#

"""Base clock interface for turnscribe timing operations."""

from abc import ABC, abstractmethod


class BaseClock(ABC):
    """Abstract base class for clock implementations.

    The engine stamps turns and utterances with ``get_time()``. Injecting the
    clock keeps timing deterministic under test.
    """

    @abstractmethod
    def get_time(self) -> int:
        """Get the current time value.

        Returns:
            The current time in milliseconds. The reference point depends on
            the concrete implementation.
        """
        pass

    @abstractmethod
    def start(self):
        """Start or initialize the clock."""
        pass
