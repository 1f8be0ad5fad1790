"""Matching conditions and comparable record values.

A condition is a named tuple of field keys. Two records match under it
iff every key has a non-empty value on both and the values compare equal
after trimming and case folding. Keys resolve against the fixed comparison
fields first (accepting CRM property aliases such as ``firstname``), then
against the property bag.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping, Sequence
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from src.dedupe.core.errors import ValidationError
from src.dedupe.crm.field_mapping import FIELD_ALIASES
from src.dedupe.records.schemas import FieldCondition, RecordRead

COMPARISON_FIELDS: tuple[str, ...] = (
    "email",
    "phone",
    "first_name",
    "last_name",
    "organization",
)

# Applied in order; the first condition to claim a record wins.
DEFAULT_CONDITIONS: tuple[FieldCondition, ...] = (
    FieldCondition(name="same_email", fields=("email",)),
    FieldCondition(name="phone", fields=("phone",)),
    FieldCondition(name="first_last_name", fields=("first_name", "last_name")),
    FieldCondition(name="first_name_phone", fields=("first_name", "phone")),
    FieldCondition(
        name="first_last_name_company",
        fields=("first_name", "last_name", "organization"),
    ),
)

DEFAULTS_BY_NAME: dict[str, FieldCondition] = {c.name: c for c in DEFAULT_CONDITIONS}


def normalize(value: Any) -> str | None:
    """Comparable form of a value: trimmed, case-folded, None when empty."""
    if value is None:
        return None
    text = str(value).strip().casefold()
    return text or None


def _key(name: str) -> str:
    key = name.strip().casefold()
    return FIELD_ALIASES.get(key, key)


class PropertyBag(Mapping[str, str]):
    """Read-only map of a record's comparable values.

    Keys are case-insensitive; empty values are absent, so a lookup either
    yields a normalized non-empty string or raises KeyError.
    """

    def __init__(self, values: Mapping[str, Any]) -> None:
        self._values: dict[str, str] = {}
        for name, raw in values.items():
            value = normalize(raw)
            if value is not None:
                self._values[_key(name)] = value

    @classmethod
    def from_record(cls, record: RecordRead) -> PropertyBag:
        values: dict[str, Any] = dict(record.properties)
        # Fixed fields shadow bag entries with the same name
        for field in COMPARISON_FIELDS:
            values.pop(field, None)
        bag = cls(values)
        for field in COMPARISON_FIELDS:
            value = normalize(getattr(record, field))
            if value is not None:
                bag._values[field] = value
            else:
                bag._values.pop(field, None)
        return bag

    def __getitem__(self, name: str) -> str:
        return self._values[_key(name)]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def match_key(self, condition: FieldCondition) -> tuple[str, ...] | None:
        """Values of every field in ``condition``, or None if any is empty."""
        values = []
        for field in condition.fields:
            value = self.get(field)
            if value is None:
                return None
            values.append(value)
        return tuple(values)


def parse_conditions(
    raw: Sequence[str | Mapping[str, Any] | FieldCondition],
) -> list[FieldCondition]:
    """Validate caller-supplied field conditions.

    Each entry is either a condition object (``{"name": ..., "fields": [...]}``)
    or the name of one of the default strategies, e.g. ``"phone"``. Entries
    keep the order given, which is their claim priority.

    Raises:
        ValidationError: The list is empty, a condition is malformed, a name
            matches no default strategy, or two conditions share a name.
    """
    if not raw:
        raise ValidationError("At least one field condition is required")

    conditions: list[FieldCondition] = []
    for item in raw:
        if isinstance(item, FieldCondition):
            conditions.append(item)
            continue
        if isinstance(item, str):
            default = DEFAULTS_BY_NAME.get(item.strip())
            if default is None:
                raise ValidationError(
                    f"Unknown default condition {item!r}; "
                    f"expected one of {sorted(DEFAULTS_BY_NAME)}"
                )
            conditions.append(default)
            continue
        try:
            conditions.append(FieldCondition.model_validate(item))
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid field condition: {exc.errors()[0]['msg']}") from exc

    names = [c.name for c in conditions]
    if len(set(names)) != len(names):
        raise ValidationError("Field condition names must be unique")
    return conditions


def bag_fields(conditions: Iterable[FieldCondition]) -> list[str]:
    """Field keys that are neither comparison fields nor their CRM aliases."""
    keys: dict[str, None] = {}
    for condition in conditions:
        for field in condition.fields:
            if _key(field) not in COMPARISON_FIELDS:
                keys[field] = None
    return list(keys)


def check_fields(conditions: Iterable[FieldCondition], known: Iterable[str]) -> None:
    """Reject property-bag keys the CRM does not define.

    Raises:
        ValidationError: Lists every unknown key.
    """
    available = {name.strip().casefold() for name in known}
    unknown = [f for f in bag_fields(conditions) if f.strip().casefold() not in available]
    if unknown:
        raise ValidationError(f"Unknown CRM properties in field conditions: {unknown}")
