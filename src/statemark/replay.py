import logging
from typing import Any, Dict

from statemark.runtime import ReactiveState

logger = logging.getLogger(__name__)


class RestoreReplayer:
    """Writes a decoded snapshot back into a ReactiveState."""

    def __init__(self, state: ReactiveState):
        self.state = state

    def apply(self, snapshot: Dict[str, Any]) -> Dict[str, Any]:
        """
        Write every value of `snapshot` into the state within a single replay
        batch. Flush listeners see `event.replay`, which is how automatic
        bookmarking knows not to capture the restore itself.

        Names of registered containers re-select the container. A selection the
        container does not offer leaves its default in place.

        Returns:
            The entries that were written.
        """
        containers = self.state.containers()
        inputs: Dict[str, Any] = {}
        selections: Dict[str, Any] = {}
        for name, value in snapshot.items():
            container = containers.get(name)
            if container is None:
                inputs[name] = value
            elif container.accepts(value):
                selections[name] = value
            else:
                logger.debug(
                    "Keeping default selection of %r; %r is not one of its choices",
                    name,
                    value,
                )

        # a listener that raises mid-replay must not leave a partial restore
        with self.state.transaction(), self.state.batch(replay=True):
            if inputs:
                self.state.update(inputs)
            for name, value in selections.items():
                self.state.select(name, value)
        return {**inputs, **selections}
