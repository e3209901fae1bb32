"""Persisted collections layered over durable key/value slots."""

from __future__ import annotations

import copy
import json
import logging
import math
from typing import Any, Callable, Iterable, Mapping, NamedTuple, Protocol, Sequence

from .errors import NotFoundError, StorageError

logger = logging.getLogger(__name__)

Record = dict[str, Any]
Predicate = Callable[[Record], bool]


class Slots(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...


class Page(NamedTuple):
    page_items: list[Record]
    total_pages: int
    total_items: int
    page: int
    page_size: int


def load(
    slots: Slots,
    key: str,
    default: Sequence[Record],
    validator: Predicate | None = None,
) -> list[Record]:
    """Read the collection stored under ``key``.

    An absent slot, unparseable JSON or a non-list value all count as
    "absent": a copy of ``default`` is persisted and returned. Records the
    validator rejects are dropped.
    """

    raw = slots.get(key)
    items: Any = None
    if raw is not None:
        try:
            items = json.loads(raw)
        except ValueError:
            logger.warning("Slot %s holds unparseable data; restoring defaults", key)
    if not isinstance(items, list):
        if raw is not None and items is not None:
            logger.warning("Slot %s does not hold a collection; restoring defaults", key)
        items = copy.deepcopy(list(default))
        try:
            save(slots, key, items)
        except StorageError:
            logger.exception("Could not persist defaults for slot %s", key)
        return items
    if validator is not None:
        accepted = [item for item in items if validator(item)]
        if len(accepted) != len(items):
            logger.warning(
                "Dropped %d invalid record(s) from slot %s", len(items) - len(accepted), key
            )
        return accepted
    return items


def save(slots: Slots, key: str, items: Iterable[Record]) -> None:
    """Serialize and write the full collection, replacing what was there."""

    try:
        payload = json.dumps(list(items))
    except (TypeError, ValueError) as exc:
        raise StorageError(f"Could not serialize collection {key!r}: {exc}") from exc
    slots.set(key, payload)


def upsert_by_id(items: Sequence[Record], record: Record) -> list[Record]:
    replaced = False
    result = []
    for item in items:
        if item.get("id") == record["id"]:
            result.append(record)
            replaced = True
        else:
            result.append(item)
    if not replaced:
        result.append(record)
    return result


def remove_by_id(items: Sequence[Record], record_id: str) -> list[Record]:
    return [item for item in items if item.get("id") != record_id]


def find_by_id(items: Iterable[Record], record_id: str) -> Record | None:
    for item in items:
        if item.get("id") == record_id:
            return item
    return None


def filter_by(items: Iterable[Record], predicate: Predicate | None = None) -> list[Record]:
    if predicate is None:
        return list(items)
    return [item for item in items if predicate(item)]


def sort_by(
    items: Iterable[Record], key: Callable[[Record], Any], *, reverse: bool = False
) -> list[Record]:
    return sorted(items, key=key, reverse=reverse)


def paginate(items: Sequence[Record], page: int, page_size: int) -> Page:
    """Slice out one 1-based page.

    ``page`` is not clamped; a page outside ``1..total_pages`` is empty.
    """

    page_size = max(1, int(page_size))
    total_items = len(items)
    total_pages = math.ceil(total_items / page_size)
    if page < 1:
        page_items: list[Record] = []
    else:
        start = (page - 1) * page_size
        page_items = list(items[start : start + page_size])
    return Page(page_items, total_pages, total_items, page, page_size)


def clamp_page(page: int, total_pages: int) -> int:
    return min(max(1, page), max(1, total_pages))


def field_matches(**expected: Any) -> Predicate:
    """Build a predicate comparing record fields; empty or None values match anything."""

    wanted = {field: value for field, value in expected.items() if value not in (None, "")}

    def predicate(item: Record) -> bool:
        return all(item.get(field) == value for field, value in wanted.items())

    return predicate


def text_search(term: str | None, *fields: str) -> Predicate:
    """Case-insensitive substring search over ``fields``."""

    needle = (term or "").strip().lower()

    def predicate(item: Record) -> bool:
        if not needle:
            return True
        return any(needle in str(item.get(field) or "").lower() for field in fields)

    return predicate


def all_of(*predicates: Predicate) -> Predicate:
    def predicate(item: Record) -> bool:
        return all(check(item) for check in predicates)

    return predicate


class CollectionStore:
    """A collection bound to one slot.

    Writes are read-modify-write of the whole snapshot: the new collection
    is built in memory and written with a single ``set`` call, so a failed
    write leaves the previous snapshot in place. Nothing guards against a
    second writer on the same slot.
    """

    def __init__(
        self,
        slots: Slots,
        key: str,
        default: Sequence[Record] | Callable[[], Sequence[Record]] = (),
        validator: Predicate | None = None,
        label: str = "Record",
    ) -> None:
        self.slots = slots
        self.key = key
        self._default = default
        self.validator = validator
        self.label = label

    def default(self) -> list[Record]:
        source = self._default() if callable(self._default) else self._default
        return copy.deepcopy(list(source))

    def all(self) -> list[Record]:
        return load(self.slots, self.key, self.default(), self.validator)

    def replace(self, items: Iterable[Record]) -> list[Record]:
        items = list(items)
        save(self.slots, self.key, items)
        return items

    def get(self, record_id: str) -> Record:
        record = find_by_id(self.all(), record_id)
        if record is None:
            raise NotFoundError(f"{self.label} not found")
        return record

    def exists(self, record_id: str) -> bool:
        return find_by_id(self.all(), record_id) is not None

    def mutate(self, change: Callable[[list[Record]], list[Record]]) -> list[Record]:
        return self.replace(change(self.all()))

    def upsert(self, record: Record) -> Record:
        self.mutate(lambda items: upsert_by_id(items, record))
        return record

    def remove(self, record_id: str) -> list[Record]:
        return self.mutate(lambda items: remove_by_id(items, record_id))

    def query(
        self,
        predicate: Predicate | None = None,
        *,
        sort_key: Callable[[Record], Any] | None = None,
        reverse: bool = False,
    ) -> list[Record]:
        items = filter_by(self.all(), predicate)
        if sort_key is not None:
            items = sort_by(items, sort_key, reverse=reverse)
        return items


def load_value(slots: Slots, key: str, default: Mapping[str, Any] | None = None) -> dict:
    """Read a single JSON object slot (auth session, theme); corrupt data yields ``default``."""

    raw = slots.get(key)
    if raw is not None:
        try:
            value = json.loads(raw)
        except ValueError:
            logger.warning("Slot %s holds unparseable data; ignoring it", key)
        else:
            if isinstance(value, dict):
                return value
    return dict(default or {})


def save_value(slots: Slots, key: str, value: Mapping[str, Any]) -> None:
    try:
        payload = json.dumps(dict(value))
    except (TypeError, ValueError) as exc:
        raise StorageError(f"Could not serialize value {key!r}: {exc}") from exc
    slots.set(key, payload)
