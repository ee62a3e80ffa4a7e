from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple


logger = logging.getLogger("commands")


class Intent(str, Enum):
    SAVE = "save"
    ADD_PRESCRIPTION = "add_prescription"
    ADD_LAB_ORDER = "add_lab_order"
    COMPLETE = "complete"
    HELP = "help"


@dataclass(frozen=True)
class KeyEvent:
    key: str
    ctrl: bool = False
    # Cmd on macOS; treated the same as Ctrl.
    meta: bool = False
    shift: bool = False
    alt: bool = False
    # True while focus is inside a free-text input (textarea, text field).
    in_text_input: bool = False


@dataclass(frozen=True)
class KeyBinding:
    intent: Intent
    key: str
    description: str
    ctrl: bool = False
    shift: bool = False
    alt: bool = False

    def matches(self, event: KeyEvent) -> bool:
        if event.key.lower() != self.key.lower():
            return False
        if self.ctrl != (event.ctrl or event.meta):
            return False
        if self.alt != event.alt:
            return False
        if self.shift and not event.shift:
            return False
        return True

    @property
    def label(self) -> str:
        parts = []
        if self.ctrl:
            parts.append("Ctrl")
        if self.alt:
            parts.append("Alt")
        if self.shift:
            parts.append("Shift")
        parts.append(self.key.upper() if len(self.key) == 1 else self.key)
        return " + ".join(parts)


DEFAULT_BINDINGS: Tuple[KeyBinding, ...] = (
    KeyBinding(Intent.SAVE, "s", "Save SOAP notes", ctrl=True),
    KeyBinding(Intent.ADD_PRESCRIPTION, "p", "Add prescription", ctrl=True),
    KeyBinding(Intent.ADD_LAB_ORDER, "l", "Add lab order", ctrl=True),
    KeyBinding(Intent.COMPLETE, "Enter", "Complete consultation", ctrl=True),
    KeyBinding(Intent.HELP, "?", "Show keyboard shortcuts help"),
)

KeyListener = Callable[[KeyEvent], Any]
Handler = Callable[[], Any]


class KeyEventHub:
    """Source of key events for a view, the equivalent of the browser window."""

    def __init__(self) -> None:
        self._listeners: List[KeyListener] = []

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def add_listener(self, listener: KeyListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: KeyListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def emit(self, event: KeyEvent) -> None:
        for listener in list(self._listeners):
            listener(event)


class CommandDispatcher:
    """Maps key presses to workflow intents.

    Rules, in order: nothing fires from inside a text input except save;
    nothing but help fires once the encounter is read-only. Async handlers
    are scheduled on the running loop and tracked in ``pending_tasks``.
    """

    def __init__(
        self,
        is_read_only: Callable[[], bool],
        bindings: Sequence[KeyBinding] = DEFAULT_BINDINGS,
    ) -> None:
        self._is_read_only = is_read_only
        self._bindings = tuple(bindings)
        self._handlers: Dict[Intent, Handler] = {}
        self._hub: Optional[KeyEventHub] = None
        self._tasks: Set[asyncio.Task] = set()
        self._last_error: Optional[BaseException] = None
        self._error_listeners: List[Callable[[Intent, BaseException], Any]] = []

    @property
    def mounted(self) -> bool:
        return self._hub is not None

    @property
    def pending_tasks(self) -> List[asyncio.Task]:
        return list(self._tasks)

    @property
    def last_error(self) -> Optional[BaseException]:
        """Failure of the most recent async handler, cleared when one succeeds."""

        return self._last_error

    def on_error(self, listener: Callable[[Intent, BaseException], Any]) -> None:
        self._error_listeners.append(listener)

    def bind(self, intent: Intent, handler: Handler) -> None:
        self._handlers[intent] = handler

    def mount(self, hub: KeyEventHub) -> None:
        """Attach the single key listener for this session to ``hub``."""

        if self._hub is hub:
            return
        if self._hub is not None:
            raise RuntimeError("Command dispatcher is already mounted")
        hub.add_listener(self.handle_key)
        self._hub = hub

    def unmount(self) -> None:
        if self._hub is not None:
            self._hub.remove_listener(self.handle_key)
            self._hub = None

    def resolve(self, event: KeyEvent) -> Optional[Intent]:
        for binding in self._bindings:
            if binding.matches(event):
                return binding.intent
        return None

    def is_enabled(self, intent: Intent, *, in_text_input: bool = False) -> bool:
        if in_text_input and intent != Intent.SAVE:
            return False
        if intent != Intent.HELP and self._is_read_only():
            return False
        return True

    def handle_key(self, event: KeyEvent) -> Optional[Intent]:
        """Dispatch ``event``; returns the intent that fired, if any."""

        intent = self.resolve(event)
        if intent is None:
            return None
        if not self.is_enabled(intent, in_text_input=event.in_text_input):
            return None
        return intent if self.dispatch(intent) else None

    def dispatch(self, intent: Intent) -> bool:
        handler = self._handlers.get(intent)
        if handler is None:
            return False
        outcome = handler()
        if inspect.isawaitable(outcome):
            task = asyncio.ensure_future(outcome)
            self._tasks.add(task)
            task.add_done_callback(lambda done: self._on_task_done(intent, done))
        return True

    def _on_task_done(self, intent: Intent, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            self._last_error = None
            return
        logger.warning("Command handler for %s failed: %s", intent.value, exc)
        self._last_error = exc
        for listener in list(self._error_listeners):
            listener(intent, exc)

    def shortcuts(self) -> List[Tuple[str, str]]:
        """(shortcut label, description) pairs for the help listing."""

        return [(binding.label, binding.description) for binding in self._bindings]
