"""
Snapshot model.

A ``FormSnapshot`` is the immutable field inventory of a document at one
instant. ``capture`` is a pure function of an ``ElementNode`` tree; ``diff``
compares two snapshots to tell which fields were revealed, hidden or removed
by an action.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from .classifier import ConditionalRule, classify_document
from .driver import ElementNode
from .models import FieldDescriptor, GroupRef, OptionSet
from .options import direct_options

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FormSnapshot:
    fields: Tuple[FieldDescriptor, ...]
    revision: int
    settled: bool = False
    location: str = ''
    ambiguous: Tuple[str, ...] = ()
    document: Optional[ElementNode] = field(default=None, compare=False, repr=False)

    def __iter__(self) -> Iterator[FieldDescriptor]:
        return iter(self.fields)

    def __len__(self) -> int:
        return len(self.fields)

    def get(self, field_id: str) -> Optional[FieldDescriptor]:
        for descriptor in self.fields:
            if descriptor.id == field_id:
                return descriptor
        return None

    @property
    def ids(self) -> Tuple[str, ...]:
        return tuple(f.id for f in self.fields)

    @property
    def visible_fields(self) -> Tuple[FieldDescriptor, ...]:
        return tuple(f for f in self.fields if f.visible)

    def group(self, key: str) -> List[FieldDescriptor]:
        return [f for f in self.fields if f.group and f.group.key == key]

    def structure(self) -> Tuple[Tuple[str, str, bool, bool], ...]:
        """The parts of the inventory that must be identical for an unchanged document."""
        return tuple((f.id, f.kind.value, f.required, f.visible) for f in self.fields)

    def same_structure(self, other: "FormSnapshot") -> bool:
        return self.structure() == other.structure()

    def with_options(self, option_sets: Mapping[str, OptionSet]) -> "FormSnapshot":
        """Return a copy with resolved option sets attached to matching fields."""
        fields = tuple(
            replace(f, options=option_sets[f.id]) if f.id in option_sets else f
            for f in self.fields
        )
        return replace(self, fields=fields)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'revision': self.revision,
            'settled': self.settled,
            'location': self.location,
            'total_fields': len(self.fields),
            'required_fields': sum(1 for f in self.fields if f.required and f.visible),
            'fields': [f.to_dict() for f in self.fields],
        }


@dataclass(frozen=True)
class SnapshotDiff:
    appeared: Tuple[str, ...] = ()
    disappeared: Tuple[str, ...] = ()
    removed: Tuple[str, ...] = ()
    changed_required: Tuple[str, ...] = ()
    changed_options: Tuple[str, ...] = ()

    @property
    def changes_visibility(self) -> bool:
        return bool(self.appeared or self.disappeared)

    @property
    def is_empty(self) -> bool:
        return not (self.appeared or self.disappeared or self.removed
                    or self.changed_required or self.changed_options)


def _ensure_unique_ids(fields: Sequence[FieldDescriptor]) -> List[FieldDescriptor]:
    seen = set()
    unique = []
    for descriptor in fields:
        field_id = descriptor.id
        counter = 2
        while field_id in seen:
            field_id = f"{descriptor.id}_{counter}"
            counter += 1
        seen.add(field_id)
        unique.append(descriptor if field_id == descriptor.id else replace(descriptor, id=field_id))
    return unique


def compact_ordinals(fields: Sequence[FieldDescriptor]) -> List[FieldDescriptor]:
    """Renumber repeat-group ordinals contiguously from 1, preserving relative order."""
    mapping: Dict[str, Dict[int, int]] = {}
    for descriptor in fields:
        if descriptor.group is None:
            continue
        per_key = mapping.setdefault(descriptor.group.key, {})
        if descriptor.group.ordinal not in per_key:
            per_key[descriptor.group.ordinal] = len(per_key) + 1

    compacted = []
    for descriptor in fields:
        if descriptor.group is not None:
            ordinal = mapping[descriptor.group.key][descriptor.group.ordinal]
            if ordinal != descriptor.group.ordinal:
                descriptor = replace(descriptor, group=GroupRef(descriptor.group.key, ordinal))
        compacted.append(descriptor)
    return compacted


def capture(document: ElementNode, *, revision: int = 0, location: str = '',
            rules: Sequence[ConditionalRule] = ()) -> FormSnapshot:
    """Build the field inventory of ``document``. Never touches the live page."""
    fields, ambiguous = classify_document(document, rules)
    fields = compact_ordinals(_ensure_unique_ids(fields))

    with_direct = []
    for descriptor in fields:
        if descriptor.is_choice:
            node = document.find_by_path(descriptor.path)
            options = direct_options(descriptor, node, document) if node is not None else None
            if options is not None:
                descriptor = replace(descriptor, options=options)
        with_direct.append(descriptor)

    return FormSnapshot(
        fields=tuple(with_direct),
        revision=revision,
        location=location,
        ambiguous=tuple(ambiguous),
        document=document,
    )


class SnapshotCapturer:
    """Owns the revision counter so successive captures are strictly increasing."""

    def __init__(self, rules: Sequence[ConditionalRule] = ()):
        self.rules = tuple(rules)
        self.revision = 0

    def capture(self, document: ElementNode, location: str = '') -> FormSnapshot:
        self.revision += 1
        return capture(document, revision=self.revision, location=location, rules=self.rules)


def diff(prev: FormSnapshot, next_: FormSnapshot) -> SnapshotDiff:
    """Compare two snapshots field by field (ids in document order of the newer one)."""
    before = {f.id: f for f in prev.fields}
    after = {f.id: f for f in next_.fields}

    appeared = tuple(f.id for f in next_.fields if f.visible and not (f.id in before and before[f.id].visible))
    disappeared = tuple(f.id for f in prev.fields if f.visible and not (f.id in after and after[f.id].visible))
    removed = tuple(f.id for f in prev.fields if f.id not in after)

    changed_required = []
    changed_options = []
    for f in next_.fields:
        old = before.get(f.id)
        if old is None:
            continue
        if old.required != f.required:
            changed_required.append(f.id)
        if old.options is not None and f.options is not None and old.options.options != f.options.options:
            changed_options.append(f.id)

    result = SnapshotDiff(appeared, disappeared, removed, tuple(changed_required), tuple(changed_options))
    if not result.is_empty:
        logger.debug(f"Diff r{prev.revision}->r{next_.revision}: {result}")
    return result
