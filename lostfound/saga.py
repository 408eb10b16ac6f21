"""
Compensating-action bookkeeping for multi-step operations.

Each step that leaves an external side effect registers an undo action.
If a later step fails, ``compensate`` runs the undo actions newest first.
"""

import logging
from typing import Callable, List, Tuple

logger = logging.getLogger(__name__)


class Saga:
    def __init__(self, name: str):
        self.name = name
        self._compensations: List[Tuple[str, Callable[[], None]]] = []
        self.failed_compensations: List[str] = []

    def add_compensation(self, description: str, action: Callable[[], None]):
        self._compensations.append((description, action))

    def compensate(self):
        """Run every registered undo action in reverse order.

        A failing undo action is logged and recorded; the rest still run.
        """
        while self._compensations:
            description, action = self._compensations.pop()
            try:
                action()
                logger.info(f"[{self.name}] compensated: {description}")
            except Exception as e:
                logger.error(f"[{self.name}] compensation failed ({description}): {e}")
                self.failed_compensations.append(description)

    def complete(self):
        """Forget the undo actions once every step has succeeded."""
        self._compensations.clear()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is not None:
            self.compensate()
        else:
            self.complete()
        return False
