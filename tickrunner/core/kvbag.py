from __future__ import annotations

import copy
import json
from typing import Any, Dict, Iterator, Optional, Union

_MISSING = object()


class KVBag:
    """
    JSON-serialisable key/value bag with dotted-path access.

    `bag.get("updateStatus.42")` walks nested dicts; `bag.set("a.b", 1)`
    creates the intermediate dicts. Used for a task's `params` (read-only
    input) and `storage` (the callback's own persisted state).
    """

    def __init__(self, data: Union[None, str, bytes, Dict[str, Any], "KVBag"] = None, *, readonly: bool = False):
        self._data: Dict[str, Any] = self._coerce(data)
        self._readonly = readonly

    @staticmethod
    def _coerce(data: Any) -> Dict[str, Any]:
        if data is None:
            return {}
        if isinstance(data, KVBag):
            return copy.deepcopy(data._data)
        if isinstance(data, (str, bytes)):
            text = data.decode("utf-8") if isinstance(data, bytes) else data
            if not text.strip():
                return {}
            loaded = json.loads(text)
            if not isinstance(loaded, dict):
                raise ValueError("KVBag JSON must be an object")
            return loaded
        if isinstance(data, dict):
            return copy.deepcopy(data)
        raise TypeError(f"Cannot build a KVBag from {type(data).__name__}")

    @classmethod
    def from_json(cls, text: Optional[str], *, readonly: bool = False) -> "KVBag":
        return cls(text, readonly=readonly)

    def to_json(self) -> str:
        return json.dumps(self._data, default=str, sort_keys=True)

    def to_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(self._data)

    @property
    def readonly(self) -> bool:
        return self._readonly

    def frozen(self) -> "KVBag":
        return KVBag(self, readonly=True)

    def _check_writable(self) -> None:
        if self._readonly:
            raise TypeError("This KVBag is read-only")

    def get(self, path: str, default: Any = None) -> Any:
        node: Any = self._data
        for part in path.split("."):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node

    def has(self, path: str) -> bool:
        return self.get(path, _MISSING) is not _MISSING

    def set(self, path: str, value: Any) -> None:
        self._check_writable()
        parts = path.split(".")
        node = self._data
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[parts[-1]] = value

    def remove(self, path: str) -> None:
        self._check_writable()
        parts = path.split(".")
        trail = [self._data]
        for part in parts[:-1]:
            node = trail[-1].get(part)
            if not isinstance(node, dict):
                return
            trail.append(node)
        trail[-1].pop(parts[-1], None)
        # drop parents left empty by the removal
        for parent, part in zip(reversed(trail[:-1]), reversed(parts[:-1])):
            if parent.get(part):
                break
            parent.pop(part, None)

    def clear(self) -> None:
        self._check_writable()
        self._data.clear()

    def __contains__(self, path: object) -> bool:
        return isinstance(path, str) and self.has(path)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._data))

    def __len__(self) -> int:
        return len(self._data)

    def __bool__(self) -> bool:
        return bool(self._data)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, KVBag):
            return self._data == other._data
        if isinstance(other, dict):
            return self._data == other
        return NotImplemented

    def __repr__(self) -> str:
        flag = ", readonly" if self._readonly else ""
        return f"KVBag({self._data!r}{flag})"
