import contextlib
import copy
from dataclasses import dataclass
from typing import Any, Callable, Dict, FrozenSet, Iterator, List, Optional, Sequence


@dataclass(frozen=True)
class FlushEvent:
    # names changed during the batch
    changed: FrozenSet[str]
    # True when the batch was written by a bookmark restore
    replay: bool = False


@dataclass
class Container:
    """A structural widget (e.g. a tab set) whose selection is part of app state."""

    name: str
    choices: Optional[Sequence[Any]] = None
    selected: Any = None
    default: Any = None

    def accepts(self, value: Any) -> bool:
        return self.choices is None or value in self.choices


def normalize_updates(updates):
    out = []
    for entry in updates:
        if isinstance(entry, dict):
            for key, value in entry.items():
                out.append([key, "reset", value])
        else:
            out.append([entry[0], entry[1], entry[2]])
    return out


def apply_updates(state, updates):
    for name, operation, payload in updates:
        if operation == "append":
            if name not in state:
                state[name] = []
            state[name].append(payload)
        elif operation == "concat":
            if name not in state:
                state[name] = []
            state[name].extend(payload)
        elif operation == "reset":
            state[name] = payload
        elif operation == "setAt":
            index, value = payload
            if name not in state:
                state[name] = []
            state[name][index] = value
        else:
            raise ValueError(f"Unknown operation: {operation}")


class ReactiveState:
    """
    Named input values of one application session.

    Updates propagate in batches: per-name listeners run as each update lands,
    and flush listeners run once when the outermost `batch()` exits, with the
    set of names that changed. An update outside any batch is a batch of its own.
    """

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._state: Dict[str, Any] = dict(initial or {})
        self._listeners: Dict[str, List[Callable]] = {}
        self._flush_listeners: List[Callable[[FlushEvent], None]] = []
        self._processing_listeners = set()  # Track which listeners are currently processing
        self._containers: Dict[str, Container] = {}
        self._batch_depth = 0
        self._batch_replay = False
        self._changed: set = set()

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        if name in self._state:
            return self._state[name]
        raise AttributeError(f"'{self.__class__.__name__}' has no attribute '{name}'")

    def __setattr__(self, name, value):
        if name.startswith("_"):
            super().__setattr__(name, value)
        else:
            self.update([name, "reset", value])

    def __contains__(self, name: str) -> bool:
        return name in self._state

    def get(self, name: str, default: Any = None) -> Any:
        return self._state.get(name, default)

    def values(self) -> Dict[str, Any]:
        """A deep copy of the current inputs; later updates do not alter it."""
        return copy.deepcopy(self._state)

    def snapshot(self, exclude: FrozenSet[str] = frozenset()) -> Dict[str, Any]:
        """
        A shallow copy of the inputs not named in `exclude`. Values are not
        copied, so inputs holding live objects (connections, locks) can be
        read as long as they are excluded.
        """
        return {k: v for k, v in self._state.items() if k not in exclude}

    @contextlib.contextmanager
    def transaction(self) -> Iterator["ReactiveState"]:
        """
        Put values and container selections back as they were if the body
        raises. Values mutated in place (`append`, `concat`, `setAt`) are not
        rolled back.
        """
        saved = dict(self._state)
        selections = {name: c.selected for name, c in self._containers.items()}
        try:
            yield self
        except BaseException:
            self._state = saved
            for name, selected in selections.items():
                if name in self._containers:
                    self._containers[name].selected = selected
            raise

    def on_change(self, listeners: Dict[str, Callable]) -> "ReactiveState":
        for name, listener in listeners.items():
            self._listeners.setdefault(name, []).append(listener)
        return self

    def on_flush(self, listener: Callable[[FlushEvent], None]) -> Callable:
        self._flush_listeners.append(listener)
        return listener

    def remove_flush_listener(self, listener: Callable[[FlushEvent], None]) -> None:
        if listener in self._flush_listeners:
            self._flush_listeners.remove(listener)

    def notify_listeners(self, updates):
        for name, operation, value in updates:
            for listener in self._listeners.get(name, []):
                # Skip if this listener is already being processed
                if listener in self._processing_listeners:
                    continue
                try:
                    self._processing_listeners.add(listener)
                    listener(self, {"id": name, "value": self._state.get(name)})
                finally:
                    self._processing_listeners.remove(listener)

    @contextlib.contextmanager
    def batch(self, replay: bool = False) -> Iterator["ReactiveState"]:
        """
        Group updates into one propagation batch. Nested batches join the
        outermost one; a replay flag on any of them marks the whole batch.
        """
        self._batch_depth += 1
        self._batch_replay = self._batch_replay or replay
        try:
            yield self
        except BaseException:
            self._batch_depth -= 1
            if self._batch_depth == 0:
                self._discard_batch()
            raise
        self._batch_depth -= 1
        if self._batch_depth == 0:
            self._flush()

    def _flush(self):
        changed, replay = frozenset(self._changed), self._batch_replay
        self._changed = set()
        self._batch_replay = False
        if not changed:
            return
        event = FlushEvent(changed, replay)
        for listener in list(self._flush_listeners):
            listener(event)

    def _discard_batch(self):
        self._changed = set()
        self._batch_replay = False

    # update values from python
    def update(self, *updates):
        updates = normalize_updates(updates)
        with self.batch():
            apply_updates(self._state, updates)
            self._changed.update(name for name, _, _ in updates)
            self.notify_listeners(updates)

    def set(self, name: str, value: Any) -> None:
        self.update({name: value})

    def register_container(
        self, name: str, choices: Optional[Sequence[Any]] = None, selected: Any = None
    ) -> Container:
        """
        Register a container widget under a stable name so its selection is
        captured in bookmarks and re-selected on restore.
        """
        if selected is None and choices:
            selected = choices[0]
        container = Container(name, choices, selected, selected)
        self._containers[name] = container
        return container

    def containers(self) -> Dict[str, Container]:
        return dict(self._containers)

    def selected(self, name: str) -> Any:
        return self._containers[name].selected

    def select(self, name: str, value: Any) -> None:
        container = self._containers[name]
        if not container.accepts(value):
            raise ValueError(f"{value!r} is not a choice of container {name!r}")
        with self.batch():
            container.selected = value
            self._changed.add(name)
