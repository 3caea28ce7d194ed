"""Document query evaluation: filters, projections, sorting.

The store speaks a small Mongo-style dialect so callers can filter on
anything inside a credential without the store knowing its shape:

    {"credential.claim.id": "did:example:123"}          dotted-path equality
    {"credential.type": "EmailCredential"}              matches array members
    {"meta.created": {"$gte": 1420070400000}}           comparison operators
    {"$or": [{"issuer": h1}, {"issuer": h2}]}           boolean combinators

Supported operators: $eq $ne $gt $gte $lt $lte $in $nin $exists, and
$and / $or at the top level of a filter.

Projections are either inclusion (``{"credential.issuer": 1}``) or
exclusion (``{"meta": 0}``).  ``_id`` is kept unless excluded explicitly
and is the only key that may be excluded inside an inclusion projection.
``{"_id": 1}`` on its own returns nothing but ``_id``.

The in-memory backend evaluates everything here.  The SQL backend pushes
what it can into SQL and hands the remainder to these same functions, so
both backends agree on semantics.
"""

from __future__ import annotations

import copy
import json
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

Query = Mapping[str, Any]
Fields = Mapping[str, Any]


@dataclass(frozen=True, slots=True)
class FindOptions:
    """Options for find()/count().

    sort:  sequence of (dotted_path, 1 | -1), applied left to right
    skip:  number of matching documents to skip
    limit: maximum number of documents to return (None or 0: no limit)
    """

    sort: tuple[tuple[str, int], ...] = ()
    skip: int = 0
    limit: int | None = None

    def __post_init__(self) -> None:
        sort = tuple((str(path), int(direction)) for path, direction in self.sort)
        for path, direction in sort:
            if direction not in (1, -1):
                raise ValueError(f"sort direction for {path!r} must be 1 or -1")
        if self.skip < 0:
            raise ValueError("skip must be >= 0")
        if self.limit is not None and self.limit < 0:
            raise ValueError("limit must be >= 0")
        object.__setattr__(self, "sort", sort)


# ---------------------------------------------------------------------------
# Path resolution
# ---------------------------------------------------------------------------


def _resolve(value: Any, parts: Sequence[str]) -> list[Any]:
    """Return every value reachable at ``parts``, descending through arrays."""
    if not parts:
        return [value]
    head, rest = parts[0], parts[1:]
    if isinstance(value, Mapping):
        if head in value:
            return _resolve(value[head], rest)
        return []
    if isinstance(value, list):
        if head.isdigit():
            index = int(head)
            return _resolve(value[index], rest) if index < len(value) else []
        found: list[Any] = []
        for item in value:
            if isinstance(item, Mapping):
                found.extend(_resolve(item, parts))
        return found
    return []


def _candidates(resolved: Iterable[Any]) -> list[Any]:
    # An array matches a condition either as a whole or through any member.
    out: list[Any] = []
    for value in resolved:
        out.append(value)
        if isinstance(value, list):
            out.extend(value)
    return out


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------


def _equal(a: Any, b: Any) -> bool:
    # True == 1 in Python; not in a document database.
    if isinstance(a, bool) != isinstance(b, bool):
        return False
    return a == b


def _comparable(a: Any, b: Any) -> bool:
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool)
    if isinstance(a, (int, float)) and isinstance(b, (int, float)):
        return True
    return isinstance(a, str) and isinstance(b, str)


def _compare(op: str, candidates: list[Any], arg: Any) -> bool:
    for value in candidates:
        if not _comparable(value, arg):
            continue
        if op == "$gt" and value > arg:
            return True
        if op == "$gte" and value >= arg:
            return True
        if op == "$lt" and value < arg:
            return True
        if op == "$lte" and value <= arg:
            return True
    return False


def _any_equal(resolved: list[Any], expected: Any) -> bool:
    if expected is None and not resolved:
        return True
    return any(_equal(value, expected) for value in _candidates(resolved))


def _apply_operator(op: str, arg: Any, resolved: list[Any]) -> bool:
    if op == "$eq":
        return _any_equal(resolved, arg)
    if op == "$ne":
        return not _any_equal(resolved, arg)
    if op in ("$gt", "$gte", "$lt", "$lte"):
        return _compare(op, _candidates(resolved), arg)
    if op == "$in":
        return any(_any_equal(resolved, expected) for expected in arg)
    if op == "$nin":
        return not any(_any_equal(resolved, expected) for expected in arg)
    if op == "$exists":
        return bool(resolved) == bool(arg)
    raise ValueError(f"unsupported query operator {op!r}")


def _is_operator_block(condition: Any) -> bool:
    return (
        isinstance(condition, Mapping)
        and bool(condition)
        and all(isinstance(k, str) and k.startswith("$") for k in condition)
    )


def matches(document: Mapping[str, Any], query: Query | None) -> bool:
    """Return True if ``document`` satisfies ``query``."""
    if not query:
        return True
    for key, condition in query.items():
        if key == "$and":
            if not all(matches(document, q) for q in condition):
                return False
            continue
        if key == "$or":
            if not any(matches(document, q) for q in condition):
                return False
            continue
        if key.startswith("$"):
            raise ValueError(f"unsupported query operator {key!r}")

        resolved = _resolve(document, key.split("."))
        if _is_operator_block(condition):
            if not all(
                _apply_operator(op, arg, resolved) for op, arg in condition.items()
            ):
                return False
        elif not _any_equal(resolved, condition):
            return False
    return True


# ---------------------------------------------------------------------------
# Projection
# ---------------------------------------------------------------------------


def _is_inclusion(flag: Any) -> bool:
    return flag not in (0, False)


def projection_mode(fields: Fields | None) -> str | None:
    """Return "include", "exclude" or None (no projection besides _id)."""
    if not fields:
        return None
    flags = {_is_inclusion(v) for k, v in fields.items() if k != "_id"}
    if not flags:
        return None
    if len(flags) > 1:
        raise ValueError("projection cannot mix inclusion and exclusion")
    return "include" if flags.pop() else "exclude"


def _copy_path(src: Mapping[str, Any], dst: dict[str, Any], parts: Sequence[str]) -> None:
    head, rest = parts[0], parts[1:]
    if head not in src:
        return
    value = src[head]
    if not rest:
        dst[head] = copy.deepcopy(value)
    elif isinstance(value, Mapping):
        _copy_path(value, dst.setdefault(head, {}), rest)
    elif isinstance(value, list):
        members = [item for item in value if isinstance(item, Mapping)]
        existing = dst.setdefault(head, [{} for _ in members])
        for item, target in zip(members, existing):
            _copy_path(item, target, rest)


def _delete_path(doc: Any, parts: Sequence[str]) -> None:
    head, rest = parts[0], parts[1:]
    if isinstance(doc, dict):
        if not rest:
            doc.pop(head, None)
        elif head in doc:
            _delete_path(doc[head], rest)
    elif isinstance(doc, list):
        for item in doc:
            _delete_path(item, parts)


def project(document: Mapping[str, Any], fields: Fields | None) -> dict[str, Any]:
    """Return a copy of ``document`` shaped by ``fields``."""
    if not fields:
        return copy.deepcopy(dict(document))

    keep_id = _is_inclusion(fields.get("_id", 1))
    mode = projection_mode(fields)
    if mode is None and keep_id and "_id" in fields:
        # {"_id": 1} alone selects nothing but the id
        return {"_id": document["_id"]} if "_id" in document else {}

    if mode == "include":
        result: dict[str, Any] = {}
        if keep_id and "_id" in document:
            result["_id"] = document["_id"]
        for path, flag in fields.items():
            if path != "_id":
                _copy_path(document, result, path.split("."))
        return result

    result = copy.deepcopy(dict(document))
    if mode == "exclude":
        for path in fields:
            if path != "_id":
                _delete_path(result, path.split("."))
    if not keep_id:
        result.pop("_id", None)
    return result


# ---------------------------------------------------------------------------
# Sorting and windowing
# ---------------------------------------------------------------------------


def _sort_key(document: Mapping[str, Any], path: str) -> tuple[int, Any]:
    # Rank by type first so mixed-type fields still sort deterministically:
    # missing/null < numbers < strings < objects/arrays < booleans
    resolved = _resolve(document, path.split("."))
    if not resolved or resolved[0] is None:
        return (0, 0)
    value = resolved[0]
    if isinstance(value, bool):
        return (4, value)
    if isinstance(value, (int, float)):
        return (1, value)
    if isinstance(value, str):
        return (2, value)
    return (3, json.dumps(value, sort_keys=True, default=str))


def sort_documents(
    documents: list[dict[str, Any]], sort: Sequence[tuple[str, int]]
) -> list[dict[str, Any]]:
    """Stable multi-key sort; applies keys right to left."""
    for path, direction in reversed(sort):
        documents.sort(key=lambda d, p=path: _sort_key(d, p), reverse=direction < 0)
    return documents


def window(documents: list[Any], options: FindOptions) -> list[Any]:
    end = options.skip + options.limit if options.limit else None
    return documents[options.skip : end]
