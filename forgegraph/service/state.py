from __future__ import annotations

import copy
from collections.abc import Mapping
from typing import Any, Dict, Iterator, Optional


class RunState(Mapping):
    """Immutable key-value record threaded through a run.

    Steps never mutate a RunState; they return a mapping that the engine
    merges on top of the previous state with :meth:`merge`. Keys written by
    earlier steps stay visible unless a later step overwrites them.
    """

    __slots__ = ("_data",)

    def __init__(self, data: Optional[Mapping[str, Any]] = None) -> None:
        self._data: Dict[str, Any] = copy.deepcopy(dict(data or {}))

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"RunState({self._data!r})"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, RunState):
            return self._data == other._data
        if isinstance(other, Mapping):
            return self._data == dict(other)
        return NotImplemented

    __hash__ = None  # type: ignore[assignment]

    def merge(self, update: Optional[Mapping[str, Any]]) -> "RunState":
        if not update:
            return RunState(self._data)
        merged = dict(self._data)
        merged.update(update)
        return RunState(merged)

    def to_dict(self) -> Dict[str, Any]:
        """Deep copy suitable for persistence snapshots."""
        return copy.deepcopy(self._data)
