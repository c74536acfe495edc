#
# Copyright (c) 2024–2025, Daily
#
# SPDX-License-Identifier: BSD 2-Clause License
#

"""Naming helpers for turnscribe objects.

Every engine component gets a process-unique id and a per-class counter so
log lines can tell sessions apart (``ConversationOrchestrator#3``). These
counters only feed names; no conversation state lives at module level.
"""

import collections
import itertools
import threading

_COUNTS = collections.defaultdict(itertools.count)
_COUNTS_LOCK = threading.Lock()
_ID = itertools.count()
_ID_LOCK = threading.Lock()


def obj_id() -> int:
    """Generate a unique id for an object.

    Returns:
        A unique integer identifier shared by all turnscribe objects.
    """
    with _ID_LOCK:
        return next(_ID)


def obj_count(obj) -> int:
    """Generate a per-class instance number for an object.

    Args:
        obj: The object instance to count.

    Returns:
        The next instance number for the object's class.
    """
    with _COUNTS_LOCK:
        return next(_COUNTS[obj.__class__.__name__])
