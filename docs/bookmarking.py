# %% [markdown]
# # Bookmarking state
#
# A bookmark captures the current inputs of an app so that the exact same state can be
# reopened later from a URL. There are two ways to publish a bookmark:
#
# - **URL bookmarks** put every input value in the query string:
#   `http://localhost:8000/?_inputs_&omega=1.0&delta=1.5708`
# - **Server bookmarks** save the state on the server and put only a short id in the URL:
#   `http://localhost:8000/?_state_id_=d80625dc681e913a`
#
# URL bookmarks need no storage but grow with the state; browsers start truncating URLs
# around 2000 characters. Server bookmarks stay short and can hold large values such as
# arrays.

# %%
from statemark.controller import BookmarkController
from statemark.runtime import ReactiveState

state = ReactiveState({"omega": 1.0, "delta": 1.5708})
controller = BookmarkController(state, store="url", base_url="http://localhost:8000/")

locator = controller.bookmark()
locator.url()

# %% [markdown]
# Restoring a URL replays the saved values into the inputs:

# %%
fresh = ReactiveState({"omega": 0.0, "delta": 0.0})
BookmarkController(fresh, store="url").restore(locator.url())
fresh.values()

# %% [markdown]
# ## Server bookmarks
#
# Pass `store="server"` to save bookmarks under `CONFIG["store_dir"]`, or pass any
# `BookmarkStore`. Use `configure()` to change the defaults for the whole process:
#
# ```python
# from statemark.util import configure
# configure(bookmark_store="server", store_dir="/var/lib/myapp/bookmarks", store_timeout=2.0)
# ```

# %%
from statemark.store import MemoryBookmarkStore

store = MemoryBookmarkStore()
server_controller = BookmarkController(state, store=store)
server_controller.bookmark().url()

# %% [markdown]
# ## Excluding inputs
#
# Passwords, API keys and button click counters usually should not be bookmarked:

# %%
state.update({"api_key": "s3cr3t", "go_clicks": 4})
controller.exclude("api_key", "go_clicks")
controller.capture()

# %% [markdown]
# ## Saving extra values
#
# Some state is not an input. `on_bookmark` listeners can add entries to `state.values`,
# and `on_restore` listeners read them back. This is how to make randomness in an app
# reproducible: bookmark the seed.

# %%
import random


@controller.on_bookmark
def save_seed(bookmark_state):
    bookmark_state.values["seed"] = 42


@controller.on_restore
def restore_seed(restore_state):
    random.seed(restore_state.values["seed"])


controller.bookmark().url()

# %% [markdown]
# ## Tabs and other containers
#
# Containers are part of the bookmark only when they are registered with a stable name.
# An unregistered container always opens on its default selection.

# %%
state.register_container("tabs", choices=["Plot", "Summary", "Table"])
state.select("tabs", "Summary")
controller.capture()["tabs"]

# %% [markdown]
# ## Bookmarking automatically
#
# With `auto_bookmark()`, each batch of input changes creates a new bookmark, so the
# address bar always reflects the current state. Combine it with an `on_bookmarked`
# listener that rewrites the URL (the `BookmarkWidget` does this in the browser):

# %%
urls = []
controller.on_bookmarked(lambda locator: urls.append(locator.url()))
controller.auto_bookmark()

with state.batch():
    state.omega = 2.0
    state.delta = 0.5

len(urls)

# %% [markdown]
# ## In a notebook
#
# `BookmarkWidget` renders a bookmark button, restores the bookmark in the page URL when it
# loads, and replaces the address bar with each new bookmark:
#
# ```python
# from statemark.widget import BookmarkWidget
# BookmarkWidget({"omega": 1.0, "delta": 1.5708}, store="server", auto=True)
# ```
