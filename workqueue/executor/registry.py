# workqueue/executor/registry.py
"""
Handler registry - maps a task type string to the callable that executes it

Handler contract:
    handler(payload: dict, context: TaskContext) -> Optional[dict] | TaskFailure
Handlers may be plain functions (run in a worker thread) or coroutines.
Raising, or returning a TaskFailure, fails the attempt.
"""

import importlib
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

logger = logging.getLogger("workqueue.executor.registry")

TaskHandler = Callable[..., Any]


class TaskHandlerRegistry:
    """Strategy table of task handlers, keyed by task type"""

    def __init__(self):
        self._handlers: Dict[str, TaskHandler] = {}

    def register(self, task_type: str, handler: Optional[TaskHandler] = None):
        """
        Register ``handler`` for ``task_type``.

        Usable directly, ``registry.register("index-document", fn)``, or as a
        decorator, ``@registry.register("index-document")``.
        """
        if not task_type or not task_type.strip():
            raise ValueError("task_type is required")

        if handler is None:
            def decorator(fn: TaskHandler) -> TaskHandler:
                self.register(task_type, fn)
                return fn
            return decorator

        if not callable(handler):
            raise TypeError(f"Handler for {task_type!r} is not callable")
        if task_type in self._handlers:
            logger.warning(f"Replacing handler for task type {task_type}")
        self._handlers[task_type] = handler
        logger.debug(f"Registered handler for task type {task_type}")
        return handler

    def get(self, task_type: str) -> Optional[TaskHandler]:
        return self._handlers.get(task_type)

    def types(self) -> List[str]:
        return sorted(self._handlers)

    def __contains__(self, task_type: str) -> bool:
        return task_type in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)

    def update(self, other: "TaskHandlerRegistry") -> None:
        for task_type in other.types():
            self.register(task_type, other.get(task_type))


def load_registry(specs: Iterable[str]) -> TaskHandlerRegistry:
    """
    Build one registry from handler modules named as ``module[:attribute]``.

    The attribute (default ``registry``) must be a TaskHandlerRegistry; its
    handlers are merged in the order given.
    """
    merged = TaskHandlerRegistry()
    for spec in specs:
        spec = spec.strip()
        if not spec:
            continue
        module_name, _, attribute = spec.partition(":")
        module = importlib.import_module(module_name)
        registry = getattr(module, attribute or "registry", None)
        if not isinstance(registry, TaskHandlerRegistry):
            raise TypeError(f"{spec} does not name a TaskHandlerRegistry")
        merged.update(registry)
        logger.info(f"Loaded {len(registry)} handler(s) from {spec}")
    return merged
