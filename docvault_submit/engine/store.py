"""In-memory store of proposed field values for the record being edited.

The store is the "proposed" layer: it never talks to the network and knows
nothing about what the server holds. TransactionCoordinator owns the
"committed" layer and reloads the store from it after a commit or discard.

Every key maps to an ordered list of MetadataValue; a scalar field is a list
of at most one element. Repeatable fields additionally have a staging input
holding the next entry until append_to_list() moves it into the list.
Lists are reindexed after every structural change so places stay 0..n-1,
and a key whose list becomes empty is dropped.
"""

from __future__ import annotations

from docvault_submit.engine.model import MetadataValue, Snapshot, copy_snapshot, reindexed
from docvault_submit.engine.schema import FormSchema


def _blank(value: str | None) -> bool:
    return value is None or not value.strip()


class FieldValueStore:
    """Keyed store of proposed metadata values."""

    def __init__(self, schema: FormSchema | None = None, snapshot: Snapshot | None = None) -> None:
        self._schema = schema
        self._values: dict[str, list[MetadataValue]] = {}
        self._staging: dict[str, str] = {}
        if snapshot:
            self.load(snapshot)

    @property
    def schema(self) -> FormSchema | None:
        return self._schema

    def bind(self, schema: FormSchema) -> None:
        self._schema = schema

    def is_repeatable(self, key: str) -> bool:
        if self._schema is None:
            return False
        f = self._schema.find_field(key)
        return bool(f and f.repeatable)

    # ------------------------------------------------------------------
    # Bulk state
    # ------------------------------------------------------------------

    def load(self, snapshot: Snapshot) -> None:
        """Replace all proposed values with a copy of snapshot; clears staging."""
        self._values = copy_snapshot(snapshot)
        self._staging = {}

    def snapshot(self) -> Snapshot:
        return copy_snapshot(self._values)

    def keys(self) -> list[str]:
        return list(self._values)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, key: str) -> str | list[str] | None:
        """Scalar fields return the value (or None); repeatable fields return the list."""
        values = self._values.get(key, [])
        if self.is_repeatable(key):
            return [v.value for v in values]
        return values[0].value if values else None

    def values(self, key: str) -> list[MetadataValue]:
        return reindexed(self._values.get(key, []))

    def staged(self, key: str) -> str:
        return self._staging.get(key, "")

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def set(self, key: str, value: str | list[str] | None) -> None:
        """Set a field.

        A list replaces the whole value list. A string sets a scalar field,
        or the staging input of a repeatable field. None or a blank string
        clears a scalar field.
        """
        if isinstance(value, list):
            self._replace_all(key, value)
            return
        if self.is_repeatable(key):
            self.stage(key, value or "")
            return
        if _blank(value):
            self._values.pop(key, None)
            return
        current = self._values.get(key, [])
        if len(current) == 1 and current[0].value == value:
            return
        self._values[key] = [MetadataValue(value=value)]  # type: ignore[arg-type]

    def stage(self, key: str, value: str) -> None:
        self._staging[key] = value

    def append_to_list(self, key: str, value: str | None = None) -> MetadataValue | None:
        """Append value (or the staged input) to the list; clears staging.

        Returns the new element, or None when there was nothing to append.
        """
        if value is None:
            value = self._staging.get(key, "")
        self._staging.pop(key, None)
        if _blank(value):
            return None
        values = self._values.setdefault(key, [])
        entry = MetadataValue(value=value, place=len(values))  # type: ignore[arg-type]
        values.append(entry)
        return entry

    def remove_from_list(self, key: str, place: int) -> MetadataValue:
        """Remove the element at place and close the gap."""
        values = self._values.get(key, [])
        if not 0 <= place < len(values):
            raise IndexError(f"{key}: no value at place {place}")
        removed = values.pop(place)
        if values:
            self._values[key] = reindexed(values)
        else:
            del self._values[key]
        return removed

    def replace_in_list(self, key: str, place: int, value: str) -> None:
        values = self._values.get(key, [])
        if not 0 <= place < len(values):
            raise IndexError(f"{key}: no value at place {place}")
        if _blank(value):
            self.remove_from_list(key, place)
            return
        if values[place].value != value:
            values[place] = MetadataValue(value=value, place=place)

    def clear(self, key: str) -> None:
        self._values.pop(key, None)
        self._staging.pop(key, None)

    def _replace_all(self, key: str, new_values: list[str]) -> None:
        current = self._values.get(key, [])
        kept = [v for v in new_values if not _blank(v)]
        if not kept:
            self._values.pop(key, None)
            return
        out: list[MetadataValue] = []
        for i, v in enumerate(kept):
            if i < len(current) and current[i].value == v:
                out.append(current[i])
            else:
                out.append(MetadataValue(value=v))
        self._values[key] = reindexed(out)
