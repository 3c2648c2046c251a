import base64
import datetime
import json
from typing import Any, Dict, Optional, Tuple
from urllib.parse import quote, unquote

import numpy as np

from statemark.errors import EncodingError
from statemark.util import CONFIG

# Section markers of a bookmark payload, e.g. `_inputs_&n=200&_values_&seed=4`
INPUTS_MARKER = "_inputs_"
VALUES_MARKER = "_values_"

Snapshot = Dict[str, Any]


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def to_json(data: Any, depth: int = 0, max_depth: Optional[int] = None) -> Any:
    """
    Convert a snapshot value into a JSON-compatible tree.

    Values without a JSON form (numpy arrays, bytes, dates) become tagged dicts
    of the form `{"__type__": ..., ...}` which `from_json` turns back into the
    original value.

    Raises:
        EncodingError: for values with no serialization mapping, such as
            functions, sets or open connections.
    """
    if max_depth is None:
        max_depth = CONFIG["max_depth"]
    if depth > max_depth:
        raise EncodingError(f"Value is nested deeper than {max_depth} levels")

    # Handle basic JSON-serializable types first since they're most common
    if data is None or isinstance(data, (str, bool, int, float)):
        return data

    # numpy scalars (np.float64, np.int32, np.bool_, ...)
    if isinstance(data, np.generic):
        return data.item()

    if isinstance(data, np.ndarray):
        if data.dtype == object:
            raise EncodingError("numpy arrays of dtype=object cannot be bookmarked")
        return {
            "__type__": "ndarray",
            "data": _b64(np.ascontiguousarray(data).tobytes()),
            "dtype": data.dtype.str,
            "shape": list(data.shape),
        }

    if isinstance(data, (bytes, bytearray, memoryview)):
        return {"__type__": "bytes", "data": _b64(bytes(data))}

    # datetime is a subclass of date, so check it first
    if isinstance(data, datetime.datetime):
        return {"__type__": "datetime", "value": data.isoformat()}
    if isinstance(data, datetime.date):
        return {"__type__": "date", "value": data.isoformat()}

    # Handle objects with custom serialization
    if hasattr(data, "for_json"):
        return to_json(data.for_json(), depth + 1, max_depth)

    if isinstance(data, dict):
        out = {}
        for k, v in data.items():
            if not isinstance(k, str):
                raise EncodingError(
                    f"Mapping keys must be strings, got {type(k).__name__}"
                )
            out[k] = to_json(v, depth + 1, max_depth)
        if "__type__" in out:
            # a plain dict that happens to use our tag key
            return {"__type__": "dict", "value": out}
        return out

    if isinstance(data, list):
        return [to_json(x, depth + 1, max_depth) for x in data]

    if isinstance(data, tuple):
        return {
            "__type__": "tuple",
            "value": [to_json(x, depth + 1, max_depth) for x in data],
        }

    if callable(data):
        raise EncodingError(f"Cannot bookmark callable {data!r}")

    raise EncodingError(f"Object of type {type(data).__name__} cannot be bookmarked")


def deserialize_tagged(data: dict) -> Any:
    """Rebuild a value from a tagged dict produced by `to_json`."""
    kind = data["__type__"]
    try:
        if kind == "ndarray":
            buffer = base64.b64decode(data["data"], validate=True)
            dtype = np.dtype(data.get("dtype", "float64"))
            shape = data.get("shape", [len(buffer) // dtype.itemsize])
            # copy so restored arrays are writeable
            return np.frombuffer(buffer, dtype=dtype).reshape(shape).copy()
        if kind == "bytes":
            return base64.b64decode(data["data"], validate=True)
        if kind == "datetime":
            return datetime.datetime.fromisoformat(data["value"])
        if kind == "date":
            return datetime.date.fromisoformat(data["value"])
        if kind == "tuple":
            return tuple(from_json(x) for x in data["value"])
        if kind == "dict":
            return {k: from_json(v) for k, v in data["value"].items()}
    except (KeyError, TypeError, ValueError) as e:
        raise EncodingError(f"Malformed {kind!r} entry: {e}") from e
    raise EncodingError(f"Unknown value tag: {kind!r}")


def from_json(data: Any) -> Any:
    """Inverse of `to_json`."""
    if isinstance(data, dict):
        if "__type__" in data:
            return deserialize_tagged(data)
        return {k: from_json(v) for k, v in data.items()}
    if isinstance(data, list):
        return [from_json(x) for x in data]
    return data


def _dumps(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def _encode_pairs(snapshot: Snapshot, max_depth: Optional[int]) -> list[str]:
    pairs = []
    for name, value in snapshot.items():
        if not isinstance(name, str) or not name:
            raise EncodingError(f"Input names must be non-empty strings, got {name!r}")
        if name in (INPUTS_MARKER, VALUES_MARKER):
            raise EncodingError(f"{name!r} is a reserved name")
        tree = to_json(value, 0, max_depth)
        # UnicodeEncodeError (lone surrogates in quote()) is a ValueError
        try:
            pairs.append(f"{quote(name, safe='')}={quote(_dumps(tree), safe='')}")
        except ValueError as e:
            raise EncodingError(f"Cannot encode input {name!r}: {e}") from e
    return pairs


def _decode_pairs(parts: list[str]) -> Snapshot:
    snapshot: Snapshot = {}
    for part in parts:
        name, sep, text = part.partition("=")
        if not sep:
            raise EncodingError(f"Malformed token component: {part!r}")
        try:
            name = unquote(name, errors="strict")
            text = unquote(text, errors="strict")
        except UnicodeDecodeError as e:
            raise EncodingError(f"Bad percent-escape in {part!r}") from e
        if not name:
            raise EncodingError(f"Empty input name in {part!r}")
        if name in snapshot:
            raise EncodingError(f"Duplicate input name {name!r}")
        try:
            tree = json.loads(text)
        except json.JSONDecodeError as e:
            raise EncodingError(f"Invalid value for {name!r}: {e}") from e
        snapshot[name] = from_json(tree)
    return snapshot


def _split(token: str) -> list[str]:
    return [part for part in token.split("&") if part]


def encode(snapshot: Snapshot, max_depth: Optional[int] = None) -> str:
    """
    Encode a snapshot as `name=<json>&name=<json>`, percent-escaped so the
    result can be placed in a URL query component as-is.
    """
    return "&".join(_encode_pairs(snapshot, max_depth))


def decode(token: str) -> Snapshot:
    if not isinstance(token, str):
        raise EncodingError(f"Token must be a string, got {type(token).__name__}")
    return _decode_pairs(_split(token))


def encode_bookmark(
    inputs: Snapshot, values: Optional[Snapshot] = None, max_depth: Optional[int] = None
) -> str:
    """
    Encode a full bookmark payload: the input snapshot plus any extra values
    contributed by on-bookmark callbacks.
    """
    parts = [INPUTS_MARKER, *_encode_pairs(inputs, max_depth)]
    if values:
        parts += [VALUES_MARKER, *_encode_pairs(values, max_depth)]
    return "&".join(parts)


def decode_bookmark(token: str) -> Tuple[Snapshot, Snapshot]:
    """
    Returns:
        (inputs, values). A token without section markers is read as inputs.
    """
    if not isinstance(token, str):
        raise EncodingError(f"Token must be a string, got {type(token).__name__}")
    sections: dict[str, list[str]] = {INPUTS_MARKER: [], VALUES_MARKER: []}
    current = INPUTS_MARKER
    seen = set()
    for part in _split(token):
        if part in sections:
            if part in seen:
                raise EncodingError(f"Section {part!r} appears twice")
            seen.add(part)
            current = part
            continue
        sections[current].append(part)
    return _decode_pairs(sections[INPUTS_MARKER]), _decode_pairs(sections[VALUES_MARKER])


class StateCodec:
    """Snapshot <-> token conversion with a fixed nesting limit."""

    def __init__(self, max_depth: Optional[int] = None):
        self.max_depth = CONFIG["max_depth"] if max_depth is None else max_depth

    def encode(self, snapshot: Snapshot) -> str:
        return encode(snapshot, self.max_depth)

    def decode(self, token: str) -> Snapshot:
        return decode(token)

    def encode_bookmark(
        self, inputs: Snapshot, values: Optional[Snapshot] = None
    ) -> str:
        return encode_bookmark(inputs, values, self.max_depth)

    def decode_bookmark(self, token: str) -> Tuple[Snapshot, Snapshot]:
        return decode_bookmark(token)
