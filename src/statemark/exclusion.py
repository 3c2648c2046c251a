from typing import Any, Dict, FrozenSet, Iterable, Optional, Union


class ExclusionPolicy:
    """Input names that must never appear in a bookmark."""

    def __init__(self, names: Union[str, Iterable[str], None] = None):
        self._names: FrozenSet[str] = frozenset()
        if names is not None:
            self.exclude(names)

    @property
    def names(self) -> FrozenSet[str]:
        return self._names

    def exclude(self, names: Union[str, Iterable[str]]) -> "ExclusionPolicy":
        if isinstance(names, str):
            names = [names]
        # replace rather than mutate, so a frozen set handed to a running capture stays valid
        self._names = self._names | frozenset(names)
        return self

    def clear(self) -> None:
        self._names = frozenset()

    def apply(
        self, snapshot: Dict[str, Any], excluded: Optional[FrozenSet[str]] = None
    ) -> Dict[str, Any]:
        excluded = self._names if excluded is None else excluded
        return {k: v for k, v in snapshot.items() if k not in excluded}
