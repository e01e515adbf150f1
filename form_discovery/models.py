"""Field, option and constraint records shared by every engine component."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, Optional, Tuple


class FieldKind(str, Enum):
    TEXT = "text"
    EMAIL = "email"
    TEL = "tel"
    URL = "url"
    DATE = "date"
    MONTH = "month"
    NUMBER = "number"
    FILE = "file"
    TEXTAREA = "textarea"
    CHECKBOX = "checkbox"
    RADIO = "radio"
    SELECT_SINGLE = "select-single"
    SELECT_MULTI = "select-multi"
    CHOICE_CUSTOM = "choice-custom"

    @property
    def is_choice(self) -> bool:
        return self in CHOICE_KINDS


CHOICE_KINDS = frozenset({FieldKind.SELECT_SINGLE, FieldKind.SELECT_MULTI, FieldKind.CHOICE_CUSTOM})


class ResolutionState(str, Enum):
    UNRESOLVED = "unresolved"
    LOADING = "loading"
    RESOLVED = "resolved"
    FAILED = "failed"


@dataclass(frozen=True)
class Option:
    value: str
    label: str


@dataclass(frozen=True)
class OptionSet:
    """Ordered choice set of a choice field. Values are unique; first one wins."""

    options: Tuple[Option, ...] = ()
    state: ResolutionState = ResolutionState.UNRESOLVED
    strategy: Optional[str] = None

    def __post_init__(self):
        seen = set()
        unique = []
        for option in self.options:
            if option.value in seen:
                continue
            seen.add(option.value)
            unique.append(option)
        object.__setattr__(self, "options", tuple(unique))

    @classmethod
    def resolved(cls, options: Iterable[Option], strategy: str) -> "OptionSet":
        return cls(tuple(options), ResolutionState.RESOLVED, strategy)

    @classmethod
    def failed(cls, strategy: Optional[str] = None) -> "OptionSet":
        return cls((), ResolutionState.FAILED, strategy)

    @property
    def is_resolved(self) -> bool:
        return self.state == ResolutionState.RESOLVED

    @property
    def values(self) -> Tuple[str, ...]:
        return tuple(o.value for o in self.options)

    def find(self, raw: Any) -> Optional[Option]:
        """Match ``raw`` against option values first, then labels (case-insensitive)."""
        if raw is None:
            return None
        text = str(raw).strip()
        for option in self.options:
            if option.value == text:
                return option
        lowered = text.lower()
        for option in self.options:
            if option.label.lower() == lowered or option.value.lower() == lowered:
                return option
        return None

    def __iter__(self) -> Iterator[Option]:
        return iter(self.options)

    def __len__(self) -> int:
        return len(self.options)


@dataclass(frozen=True)
class GroupRef:
    """Repeat-group membership: which template, and which (1-based) instance."""

    key: str
    ordinal: int


@dataclass(frozen=True)
class FieldConstraints:
    pattern: Optional[str] = None
    min: Optional[str] = None
    max: Optional[str] = None
    accept: Tuple[str, ...] = ()
    max_length: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "pattern": self.pattern,
            "min": self.min,
            "max": self.max,
            "accept": list(self.accept) or None,
            "max_length": self.max_length,
        }
        return {k: v for k, v in data.items() if v is not None}


@dataclass(frozen=True)
class FieldDescriptor:
    """One fillable control as seen in one snapshot."""

    id: str
    kind: FieldKind
    required: bool
    visible: bool
    path: str
    name: Optional[str] = None
    label: str = ""
    group: Optional[GroupRef] = None
    local_id: Optional[str] = None
    constraints: FieldConstraints = field(default_factory=FieldConstraints)
    value: Any = ""
    source: Optional[str] = None    # id of a role-linked listbox
    carrier: Optional[str] = None   # path of the hidden value-carrier input
    options: Optional[OptionSet] = None

    @property
    def is_choice(self) -> bool:
        return self.kind.is_choice

    @property
    def accepts_raw_value(self) -> bool:
        """Choice fields backed by a hidden carrier input can take a raw value."""
        return not self.is_choice or self.carrier is not None

    @property
    def is_filled(self) -> bool:
        if self.kind in (FieldKind.CHECKBOX, FieldKind.RADIO):
            return bool(self.value)
        if isinstance(self.value, (tuple, list)):
            return len(self.value) > 0
        return self.value not in (None, "")

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            'id': self.id,
            'name': self.name or '',
            'label': self.label,
            'type': self.kind.value,
            'required': self.required,
            'visible': self.visible,
        }
        if self.group:
            data['group'] = {'key': self.group.key, 'ordinal': self.group.ordinal, 'local_id': self.local_id}
        constraints = self.constraints.to_dict()
        if constraints:
            data['constraints'] = constraints
        if self.options is not None:
            data['options'] = [{'text': o.label, 'value': o.value} for o in self.options]
            data['resolution_state'] = self.options.state.value
        if self.carrier:
            data['supports_custom_input'] = True
        return data
