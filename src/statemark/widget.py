import logging
from typing import Any, Dict, Iterable, Optional, Union

import anywidget
import traitlets

from statemark.codec import from_json, to_json
from statemark.controller import BookmarkController
from statemark.errors import BookmarkError
from statemark.runtime import ReactiveState, normalize_updates
from statemark.store import BookmarkStore

logger = logging.getLogger(__name__)

_ESM = """
export default {
  async render({ model, el, experimental }) {
    const button = document.createElement("button");
    button.className = "statemark-bookmark";
    button.textContent = model.get("label");
    button.addEventListener("click", () => experimental.invoke("handle_bookmark", {}));
    el.appendChild(button);

    const rewriteLocation = () => {
      const url = model.get("url");
      if (url && model.get("update_location")) {
        window.history.replaceState(null, "", url);
      }
    };
    model.on("change:url", rewriteLocation);

    if (window.location.search) {
      const [result] = await experimental.invoke("handle_restore", { url: window.location.href });
      if (result && result.error) {
        console.warn("statemark: could not restore bookmark:", result.error);
      }
    }
    return () => model.off("change:url", rewriteLocation);
  },
};
"""


def _data_to_json(value, widget):
    return to_json(value)


class WidgetState(ReactiveState):
    """ReactiveState whose Python-side updates are mirrored to the browser."""

    def __init__(self, widget, initial: Optional[Dict[str, Any]] = None):
        super().__init__(initial)
        self._widget = widget

    # update values from python - send to js
    def update(self, *updates):
        updates = normalize_updates(updates)
        super().update(*updates)
        self._widget.send({"type": "update_state", "updates": to_json(updates)})

    # accept updates from js; one message is one batch
    def accept_js_updates(self, updates):
        ReactiveState.update(self, *from_json(updates))


class BookmarkWidget(anywidget.AnyWidget):
    """
    Bookmark button for a browser page backed by a BookmarkController.

    Clicking the button bookmarks the current state and rewrites the address
    bar with the new URL; loading a page whose URL holds a bookmark restores it.
    """

    _esm = _ESM
    url = traitlets.Unicode("").tag(sync=True)
    label = traitlets.Unicode("Bookmark...").tag(sync=True)
    update_location = traitlets.Bool(True).tag(sync=True)
    data = traitlets.Any().tag(sync=True, to_json=_data_to_json)

    def __init__(
        self,
        initial: Optional[Dict[str, Any]] = None,
        store: Union[str, BookmarkStore, None] = None,
        base_url: str = "",
        exclude: Optional[Iterable[str]] = None,
        auto: bool = False,
    ):
        self.state = WidgetState(self, initial)
        super().__init__()
        self.controller = BookmarkController(
            self.state, store=store, base_url=base_url, exclude=exclude
        )
        self.controller.on_bookmarked(self._set_url)
        if auto:
            self.controller.auto_bookmark()
        self.data = self.state.values()

    def _set_url(self, locator) -> None:
        self.url = locator.url()

    @anywidget.experimental.command  # type: ignore
    def handle_updates(
        self, params: dict[str, Any], buffers: list[bytes]
    ) -> tuple[str, list[bytes]]:
        self.state.accept_js_updates(params["updates"])
        return "ok", []

    @anywidget.experimental.command  # type: ignore
    def handle_bookmark(
        self, params: dict[str, Any], buffers: list[bytes]
    ) -> tuple[dict, list[bytes]]:
        try:
            locator = self.controller.bookmark()
        except BookmarkError as e:
            logger.warning("Bookmark failed: %s", e)
            return {"error": str(e)}, []
        return {"url": locator.url() if locator else None}, []

    @anywidget.experimental.command  # type: ignore
    def handle_restore(
        self, params: dict[str, Any], buffers: list[bytes]
    ) -> tuple[dict, list[bytes]]:
        try:
            restored = self.controller.restore(params.get("url"))
        except BookmarkError as e:
            logger.warning("Restore failed: %s", e)
            return {"error": str(e)}, []
        if restored is None:
            return {"restored": False}, []
        self.data = self.state.values()
        return {"restored": True, "values": to_json(restored.values)}, []
