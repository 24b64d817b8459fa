"""
Grouping configuration - the ordered list of active grouping fields.

The order defines the hierarchy (first field = top level). At most
MAX_GROUPINGS fields, no duplicates. With no grouping the backend groups by date.
"""
import logging
from typing import Iterable, List, Optional, Sequence, Union

from offer_analytics.constants import DEFAULT_GROUPING_FIELD, GROUP_BY_OPTIONS, MAX_GROUPINGS, get_group_by_option
from offer_analytics.exceptions import GroupingConfigError
from offer_analytics.models.schemas import GroupingField

logger = logging.getLogger(__name__)


def resolve_grouping_field(value: Union[int, str, GroupingField]) -> GroupingField:
    """Resolve a catalogue id, a backend field name or a GroupingField."""
    if isinstance(value, GroupingField):
        return value
    if isinstance(value, int):
        option = get_group_by_option(option_id=value)
    else:
        option = get_group_by_option(field=value)
    if option is None:
        raise GroupingConfigError(f"Unknown grouping field: {value}", code='unknown_field')
    return GroupingField(**option)


def validate_grouping(fields: Sequence[GroupingField]) -> None:
    """Reject selections the backend must never see."""
    if len(fields) > MAX_GROUPINGS:
        raise GroupingConfigError(
            f"At most {MAX_GROUPINGS} grouping levels are allowed, got {len(fields)}",
            code='too_many_groupings',
            details={'max': MAX_GROUPINGS, 'count': len(fields)},
        )
    seen = set()
    for grouping_field in fields:
        if not grouping_field.field:
            raise GroupingConfigError("Grouping field name must not be empty", code='empty_field')
        if grouping_field.field in seen:
            raise GroupingConfigError(
                f"Grouping field '{grouping_field.field}' selected more than once",
                code='duplicate_grouping',
                details={'field': grouping_field.field},
            )
        seen.add(grouping_field.field)


class GroupingConfiguration:
    """Ordered, validated selection of grouping fields."""

    def __init__(self, fields: Optional[Iterable[Union[int, str, GroupingField]]] = None):
        resolved = [resolve_grouping_field(value) for value in (fields or [])]
        validate_grouping(resolved)
        self._fields: List[GroupingField] = resolved

    @classmethod
    def default(cls) -> 'GroupingConfiguration':
        return cls([DEFAULT_GROUPING_FIELD])

    @property
    def fields(self) -> List[GroupingField]:
        return list(self._fields)

    @property
    def field_names(self) -> List[str]:
        return [grouping_field.field for grouping_field in self._fields]

    @property
    def depth(self) -> int:
        return len(self._fields)

    def label_at(self, depth: int) -> str:
        """Level header label for rows at `depth`."""
        if 0 <= depth < len(self._fields):
            return self._fields[depth].label
        return ''

    def title(self, base: str = 'Analytics Report') -> str:
        if not self._fields:
            return base
        return f"{base} by {' > '.join(grouping_field.label for grouping_field in self._fields)}"

    def available_options(self) -> List[GroupingField]:
        """Catalogue options not yet selected."""
        selected = set(self.field_names)
        return [GroupingField(**option) for option in GROUP_BY_OPTIONS if option['field'] not in selected]

    def add(self, value: Union[int, str, GroupingField]) -> 'GroupingConfiguration':
        """New configuration with the field appended; a full or duplicate add is ignored."""
        grouping_field = resolve_grouping_field(value)
        if len(self._fields) >= MAX_GROUPINGS or grouping_field.field in self.field_names:
            logger.debug(f"Ignoring grouping add for '{grouping_field.field}'")
            return self
        return GroupingConfiguration(self._fields + [grouping_field])

    def remove(self, value: Union[int, str, GroupingField]) -> 'GroupingConfiguration':
        grouping_field = resolve_grouping_field(value)
        return GroupingConfiguration([f for f in self._fields if f.field != grouping_field.field])

    def move(self, from_index: int, to_index: int) -> 'GroupingConfiguration':
        """New configuration with one level moved (drag-and-drop reorder)."""
        if from_index == to_index:
            return self
        if not (0 <= from_index < len(self._fields)) or not (0 <= to_index < len(self._fields)):
            raise GroupingConfigError(
                f"Grouping index out of range: {from_index} -> {to_index}",
                code='index_out_of_range',
            )
        fields = list(self._fields)
        moved = fields.pop(from_index)
        fields.insert(to_index, moved)
        return GroupingConfiguration(fields)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, GroupingConfiguration):
            return NotImplemented
        return self.field_names == other.field_names

    def __hash__(self) -> int:
        return hash(tuple(self.field_names))

    def __repr__(self) -> str:
        return f"GroupingConfiguration({self.field_names!r})"
