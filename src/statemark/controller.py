"""
Bookmark lifecycle for one application session.

A bookmark runs Idle -> Capturing -> Encoding -> Storing -> Notifying -> Idle.
A restore runs Idle -> [Resolving] -> Decoding -> Replaying -> Notifying -> Idle,
where Resolving only happens for server-side bookmarks. A failure at any step
returns the controller to Idle and re-raises; listeners of the failed path do
not fire, no locator is returned and no input is touched.
"""

import enum
import logging
import threading
import warnings
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Union

from statemark.codec import StateCodec
from statemark.errors import BookmarkBusyError, BookmarkError, NotFoundError
from statemark.exclusion import ExclusionPolicy
from statemark.locator import (
    BookmarkLocator,
    InlineLocator,
    ReferenceLocator,
    parse_locator,
)
from statemark.replay import RestoreReplayer
from statemark.runtime import FlushEvent, ReactiveState
from statemark.store import BookmarkStore, make_store
from statemark.util import CONFIG

logger = logging.getLogger(__name__)


class Phase(enum.Enum):
    IDLE = "idle"
    CAPTURING = "capturing"
    ENCODING = "encoding"
    STORING = "storing"
    RESOLVING = "resolving"
    DECODING = "decoding"
    REPLAYING = "replaying"
    NOTIFYING = "notifying"


@dataclass
class BookmarkState:
    """
    Handed to on_bookmark listeners while a bookmark is being captured.

    `input` is the captured snapshot with exclusions already applied. Listeners
    may add entries to `values` to save state that is not an input, such as a
    random seed or the result of an expensive computation.
    """

    input: Dict[str, Any]
    values: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RestoreState:
    input: Dict[str, Any]
    values: Dict[str, Any]
    locator: BookmarkLocator


Listener = Callable[[Any], Any]


class BookmarkController:
    """
    Captures, publishes and restores bookmarks of a ReactiveState.

    Args:
        state: The session's reactive inputs.
        store: "url" to embed the whole state in the URL, "server" to save it to
            a FileBookmarkStore, "disable" to turn bookmarking off, or a
            BookmarkStore instance. Defaults to CONFIG["bookmark_store"].
        base_url: URL that bookmark query strings are appended to.
        exclude: Input names never to capture.
    """

    def __init__(
        self,
        state: ReactiveState,
        store: Union[str, BookmarkStore, None] = None,
        base_url: str = "",
        exclude: Optional[Iterable[str]] = None,
        codec: Optional[StateCodec] = None,
    ):
        store = CONFIG["bookmark_store"] if store is None else store
        self.mode = "server" if isinstance(store, BookmarkStore) else store
        self.store = make_store(store)
        self.state = state
        self.base_url = base_url
        self.exclusions = ExclusionPolicy(exclude)
        self.codec = codec or StateCodec()
        self.replayer = RestoreReplayer(state)
        self.phase = Phase.IDLE
        self._lock = threading.Lock()
        self._closed = False
        self._auto = False
        self._listeners: Dict[str, List[Listener]] = {
            "bookmark": [],
            "bookmarked": [],
            "restore": [],
            "restored": [],
            "error": [],
        }

    # listener registration; each returns the function so it works as a decorator

    def on_bookmark(self, fn: Callable[[BookmarkState], Any]) -> Callable:
        self._listeners["bookmark"].append(fn)
        return fn

    def on_bookmarked(self, fn: Callable[[BookmarkLocator], Any]) -> Callable:
        self._listeners["bookmarked"].append(fn)
        return fn

    def on_restore(self, fn: Callable[[RestoreState], Any]) -> Callable:
        self._listeners["restore"].append(fn)
        return fn

    def on_restored(self, fn: Callable[[RestoreState], Any]) -> Callable:
        self._listeners["restored"].append(fn)
        return fn

    def on_error(self, fn: Callable[[BookmarkError], Any]) -> Callable:
        self._listeners["error"].append(fn)
        return fn

    def _notify(self, kind: str, event: Any) -> None:
        for listener in list(self._listeners[kind]):
            listener(event)

    def exclude(self, *names: str) -> "BookmarkController":
        """Never capture the named inputs. Unknown names are allowed."""
        for name in names:
            self.exclusions.exclude(name)
        return self

    @property
    def enabled(self) -> bool:
        return self.mode != "disable"

    @property
    def closed(self) -> bool:
        return self._closed

    def _begin(self, phase: Phase) -> None:
        with self._lock:
            if self._closed:
                raise BookmarkError("The bookmarking session is closed")
            if self.phase is not Phase.IDLE:
                raise BookmarkBusyError(
                    f"Cannot start {phase.value}: a bookmark operation is {self.phase.value}"
                )
            self.phase = phase
        logger.debug("bookmark phase -> %s", phase.value)

    def _enter(self, phase: Phase) -> None:
        self.phase = phase
        logger.debug("bookmark phase -> %s", phase.value)

    def _finish(self) -> None:
        with self._lock:
            self.phase = Phase.IDLE

    def capture(self, excluded: Optional[FrozenSet[str]] = None) -> Dict[str, Any]:
        """
        Current inputs and registered container selections, minus exclusions.
        Excluded inputs are never read, so they may hold values with no
        serialization mapping.
        """
        excluded = self.exclusions.names if excluded is None else excluded
        snapshot = self.state.snapshot(excluded)
        for name, container in self.state.containers().items():
            snapshot[name] = container.selected
        return self.exclusions.apply(snapshot, excluded)

    def bookmark(self) -> Optional[BookmarkLocator]:
        """
        Capture the current state and publish it.

        Returns:
            The locator of the new bookmark, or None if the session was closed
            while the bookmark was being stored.

        Raises:
            EncodingError: an input value cannot be serialized.
            StorageError: the server-side store failed or timed out.
            BookmarkBusyError: another bookmark or restore is in progress.
        """
        if not self.enabled:
            raise BookmarkError("Bookmarking is disabled for this session")
        self._begin(Phase.CAPTURING)
        try:
            excluded = self.exclusions.names
            bookmark_state = BookmarkState(self.capture(excluded))
            self._notify("bookmark", bookmark_state)
            # listeners may have touched the input dict
            inputs = self.exclusions.apply(bookmark_state.input, excluded)

            self._enter(Phase.ENCODING)
            token = self.codec.encode_bookmark(inputs, bookmark_state.values)

            self._enter(Phase.STORING)
            locator: BookmarkLocator
            if self.store is None:
                locator = InlineLocator(token, self.base_url)
                url = locator.url()
                if len(url) > CONFIG["max_url_length"]:
                    warnings.warn(
                        f"Bookmark URL is {len(url)} characters long; some browsers "
                        "truncate long URLs. Consider server-side bookmarking.",
                        UserWarning,
                    )
            else:
                locator = ReferenceLocator(self.store.store(token), self.base_url)
            if self._closed:
                logger.debug("Session closed while storing; discarding bookmark")
                return None

            self._enter(Phase.NOTIFYING)
            self._notify("bookmarked", locator)
            logger.info("Bookmarked %d inputs (%s mode)", len(inputs), self.mode)
            return locator
        finally:
            self._finish()

    def restore(
        self, url: Union[str, BookmarkLocator, None]
    ) -> Optional[RestoreState]:
        """
        Restore the bookmark found in `url` (a URL, a query string or a locator).

        Returns:
            The restored state, or None if `url` holds no bookmark, bookmarking is
            disabled, or the session was closed mid-restore.

        Raises:
            NotFoundError: the server-side record does not exist.
            EncodingError: the token is malformed.
        """
        locator = parse_locator(url) if isinstance(url, str) or url is None else url
        if locator is None:
            return None
        if not self.enabled:
            logger.debug("Bookmarking disabled; ignoring %r", locator)
            return None

        if isinstance(locator, ReferenceLocator):
            self._begin(Phase.RESOLVING)
        else:
            self._begin(Phase.DECODING)
        try:
            if isinstance(locator, ReferenceLocator):
                if self.store is None:
                    raise NotFoundError(
                        f"Bookmark {locator.id!r} is server-side but no store is configured"
                    )
                token = self.store.resolve(locator.id)
                if self._closed:
                    return None
                self._enter(Phase.DECODING)
            else:
                token = locator.token

            inputs, values = self.codec.decode_bookmark(token)
            restore_state = RestoreState(self.exclusions.apply(inputs), values, locator)
            self._notify("restore", restore_state)

            self._enter(Phase.REPLAYING)
            self.replayer.apply(restore_state.input)

            self._enter(Phase.NOTIFYING)
            self._notify("restored", restore_state)
            logger.info("Restored %d inputs", len(restore_state.input))
            return restore_state
        finally:
            self._finish()

    def _on_flush(self, event: FlushEvent) -> None:
        if event.replay or self._closed or not self.enabled:
            return
        if self.phase is not Phase.IDLE:
            # changes made by our own listeners mid-operation
            logger.debug("Skipping automatic bookmark while %s", self.phase.value)
            return
        try:
            self.bookmark()
        except BookmarkError as e:
            if not self._listeners["error"]:
                raise
            self._notify("error", e)

    def auto_bookmark(self, enabled: bool = True) -> "BookmarkController":
        """
        Bookmark automatically after every batch of input changes. A batch is
        one propagation of the runtime, so a gesture that changes several
        inputs at once yields a single bookmark.
        """
        if enabled and not self._auto:
            self.state.on_flush(self._on_flush)
        elif not enabled and self._auto:
            self.state.remove_flush_listener(self._on_flush)
        self._auto = enabled
        return self

    def close(self) -> None:
        """End the session. In-flight work is discarded and no listener fires."""
        self._closed = True
        self.auto_bookmark(False)
