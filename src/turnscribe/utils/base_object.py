#
# Copyright (c) 2024–2025, Daily
#
# SPDX-License-Identifier: BSD 2-Clause License
#

"""Base object class providing naming and event handling.

The transcript engine runs single-threaded and must stay deterministic, so
event handlers are dispatched synchronously, in registration order, before
``_call_event_handler()`` returns. Coroutine handlers are still accepted: they
are scheduled on the running event loop and awaited by ``cleanup()``.
"""

import asyncio
import inspect
from abc import ABC
from typing import Optional

from loguru import logger

from turnscribe.utils.utils import obj_count, obj_id


class BaseObject(ABC):
    """Abstract base class providing common functionality for turnscribe objects.

    Provides unique identification, naming and event handling for the engine
    components. Handlers receive the emitting object as first argument.
    """

    def __init__(self, *, name: Optional[str] = None, **kwargs):
        """Initialize the base object.

        Args:
            name: Optional custom name for the object. If not provided,
                generates a name using the class name and instance count.
            **kwargs: Additional arguments passed to parent class.
        """
        self._id: int = obj_id()
        self._name = name or f"{self.__class__.__name__}#{obj_count(self)}"

        # Registered event handlers.
        self._event_handlers: dict = {}

        # Coroutine handlers still running. Awaited on cleanup.
        self._event_tasks = set()

    @property
    def id(self) -> int:
        """Get the unique identifier for this object.

        Returns:
            The unique integer ID assigned to this object instance.
        """
        return self._id

    @property
    def name(self) -> str:
        """Get the name of this object.

        Returns:
            The object's name, either custom-provided or auto-generated.
        """
        return self._name

    async def cleanup(self):
        """Wait for any coroutine event handlers that are still running."""
        if self._event_tasks:
            event_names, tasks = zip(*self._event_tasks)
            logger.debug(f"{self} waiting on event handlers to finish {list(event_names)}...")
            await asyncio.wait(tasks)

    def event_handler(self, event_name: str):
        """Decorator for registering event handlers.

        Args:
            event_name: The name of the event to handle.

        Returns:
            The decorator function that registers the handler.
        """

        def decorator(handler):
            self.add_event_handler(event_name, handler)
            return handler

        return decorator

    def add_event_handler(self, event_name: str, handler):
        """Add an event handler for the specified event.

        Args:
            event_name: The name of the event to handle.
            handler: The function to call when the event occurs.
                Can be sync or async.
        """
        if event_name in self._event_handlers:
            self._event_handlers[event_name].append(handler)
        else:
            logger.warning(f"Event handler {event_name} not registered")

    def _register_event_handler(self, event_name: str):
        """Register an event handler type.

        Args:
            event_name: The name of the event type to register.
        """
        if event_name not in self._event_handlers:
            self._event_handlers[event_name] = []
        else:
            logger.warning(f"Event handler {event_name} already registered")

    def _call_event_handler(self, event_name: str, *args, **kwargs):
        """Call all registered handlers for the specified event.

        A handler that raises is logged and the remaining handlers still run.

        Args:
            event_name: The name of the event to trigger.
            *args: Positional arguments to pass to event handlers.
            **kwargs: Keyword arguments to pass to event handlers.
        """
        for handler in list(self._event_handlers.get(event_name, [])):
            try:
                if inspect.iscoroutinefunction(handler):
                    self._schedule_coroutine(event_name, handler(self, *args, **kwargs))
                else:
                    handler(self, *args, **kwargs)
            except Exception as e:
                logger.exception(f"Exception in event handler {event_name}: {e}")

    def _schedule_coroutine(self, event_name: str, coro):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            logger.warning(f"{self} dropping async handler for {event_name}: no running event loop")
            return

        task = loop.create_task(coro)
        self._event_tasks.add((event_name, task))
        task.add_done_callback(self._event_task_finished)

    def _event_task_finished(self, task: asyncio.Task):
        """Clean up completed event handler tasks.

        Args:
            task: The completed asyncio Task to remove from tracking.
        """
        tuple_to_remove = next((t for t in self._event_tasks if t[1] == task), None)
        if tuple_to_remove:
            self._event_tasks.discard(tuple_to_remove)
        if not task.cancelled() and task.exception():
            e = task.exception()
            logger.opt(exception=e).error(f"Exception in async event handler: {e}")

    def __str__(self):
        """Return the string representation of this object.

        Returns:
            The object's name as its string representation.
        """
        return self.name
