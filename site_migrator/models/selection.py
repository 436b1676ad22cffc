"""
Content selection models for the Site Migrator.

This module turns loosely-typed request parameters into an immutable
``ContentSelection`` describing which posts, settings keys and widget
groups a migration job acts on. Malformed entries are dropped rather
than rejected so that a partially valid request still migrates what it
can.
"""

from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Set, Tuple

from pydantic import BaseModel, ConfigDict, Field

from site_migrator.core.exceptions import ValidationError
from site_migrator.utils.helpers import absint, sanitize_key, sanitize_option_key


POST_TYPES_FIELDS = ("export_post_types", "post_types")
OPTION_KEYS_FIELD = "options_keys"
WIDGET_GROUPS_FIELD = "widget_groups"


def ids_field_for(content_type: str) -> str:
    """Name of the request field carrying ids for a content type."""
    return f"selected_{content_type}_ids"


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set, frozenset)):
        return list(value)
    return [value]


class ContentSelection(BaseModel):
    """Immutable set of items, settings keys and widget groups for a job."""
    model_config = ConfigDict(frozen=True)

    items: FrozenSet[Tuple[str, int]] = Field(default_factory=frozenset)
    option_keys: FrozenSet[str] = Field(default_factory=frozenset)
    widget_groups: FrozenSet[str] = Field(default_factory=frozenset)

    @property
    def content_types(self) -> List[str]:
        return sorted({content_type for content_type, _ in self.items})

    @property
    def is_empty(self) -> bool:
        return not (self.items or self.option_keys or self.widget_groups)

    def ids_for(self, content_type: str) -> List[int]:
        """Selected ids of one content type, ascending."""
        return sorted(item_id for item_type, item_id in self.items if item_type == content_type)

    def includes(self, content_type: str, item_id: int) -> bool:
        return (content_type, item_id) in self.items

    def with_items(self, items: Iterable[Tuple[str, int]]) -> "ContentSelection":
        """A copy of this selection with extra items added."""
        return self.model_copy(update={"items": self.items | frozenset(items)})

    def to_dict(self) -> Dict[str, Any]:
        """Stable, JSON-friendly representation."""
        return {
            "items": [[content_type, item_id] for content_type, item_id in sorted(self.items)],
            "option_keys": sorted(self.option_keys),
            "widget_groups": sorted(self.widget_groups),
        }

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "ContentSelection":
        if not data:
            return cls()
        return cls(
            items=frozenset((str(t), int(i)) for t, i in data.get("items", [])),
            option_keys=frozenset(data.get("option_keys", [])),
            widget_groups=frozenset(data.get("widget_groups", [])),
        )


class SelectionBuilder:
    """Accumulates selection entries and freezes them into a ContentSelection."""

    def __init__(self):
        self._items: Set[Tuple[str, int]] = set()
        self._option_keys: Set[str] = set()
        self._widget_groups: Set[str] = set()

    def add_item(self, content_type: Any, item_id: Any) -> bool:
        """Add one (type, id) pair; returns False when either part is invalid."""
        clean_type = sanitize_key(content_type)
        clean_id = absint(item_id)
        if clean_type is None or clean_id is None:
            return False
        self._items.add((clean_type, clean_id))
        return True

    def add_option(self, key: Any) -> bool:
        clean_key = sanitize_option_key(key)
        if clean_key is None:
            return False
        self._option_keys.add(clean_key)
        return True

    def add_widget_group(self, name: Any) -> bool:
        clean_name = sanitize_key(name)
        if clean_name is None:
            return False
        self._widget_groups.add(clean_name)
        return True

    def freeze(self) -> ContentSelection:
        return ContentSelection(
            items=frozenset(self._items),
            option_keys=frozenset(self._option_keys),
            widget_groups=frozenset(self._widget_groups),
        )

    @staticmethod
    def _post_types(raw_params: Mapping[str, Any]) -> Iterable[Tuple[Any, str]]:
        seen: Set[str] = set()
        for field_name in POST_TYPES_FIELDS:
            for raw_type in _as_list(raw_params.get(field_name)):
                clean_type = sanitize_key(raw_type)
                if clean_type and clean_type not in seen:
                    seen.add(clean_type)
                    yield raw_type, clean_type

    @classmethod
    def build(cls, raw_params: Any) -> ContentSelection:
        """
        Parse raw request parameters into a ContentSelection.

        Args:
            raw_params: Request mapping with ``export_post_types`` (or
                ``post_types``), ``selected_<type>_ids``, ``options_keys``
                and ``widget_groups`` fields, all optional

        Returns:
            Frozen selection

        Raises:
            ValidationError: If raw_params is not a mapping
        """
        if not isinstance(raw_params, Mapping):
            raise ValidationError(
                f"Selection parameters must be a mapping, got {type(raw_params).__name__}"
            )

        builder = cls()
        for raw_type, content_type in cls._post_types(raw_params):
            ids_value = raw_params.get(ids_field_for(content_type))
            if ids_value is None and isinstance(raw_type, str):
                ids_value = raw_params.get(ids_field_for(raw_type))
            for item_id in _as_list(ids_value):
                builder.add_item(content_type, item_id)

        for key in _as_list(raw_params.get(OPTION_KEYS_FIELD)):
            builder.add_option(key)

        for group in _as_list(raw_params.get(WIDGET_GROUPS_FIELD)):
            builder.add_widget_group(group)

        return builder.freeze()


def build_selection(raw_params: Any) -> ContentSelection:
    """Shortcut for ``SelectionBuilder.build``."""
    return SelectionBuilder.build(raw_params)
