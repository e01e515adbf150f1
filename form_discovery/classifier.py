"""
Field classifier.

Maps an element of an ``ElementNode`` tree to a typed ``FieldDescriptor`` or to
``None`` for decoration, buttons and other non-fields. Classification policy,
in priority order:

1. native form controls with a recognised type
2. ARIA listbox / combobox patterns
3. custom choice widgets: a clickable "select control" paired with a hidden
   value-carrier input
4. anything else is not a field

Elements that look interactive but cannot be typed raise
``ClassificationAmbiguous`` so the caller can log and skip them.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from .driver import ElementNode, is_effectively_visible
from .exceptions import ClassificationAmbiguous
from .models import FieldConstraints, FieldDescriptor, FieldKind, GroupRef
from .options import option_from_node

logger = logging.getLogger(__name__)

INPUT_KINDS = {
    '': FieldKind.TEXT,
    'text': FieldKind.TEXT,
    'search': FieldKind.TEXT,
    'password': FieldKind.TEXT,
    'email': FieldKind.EMAIL,
    'tel': FieldKind.TEL,
    'url': FieldKind.URL,
    'date': FieldKind.DATE,
    'month': FieldKind.MONTH,
    'number': FieldKind.NUMBER,
    'file': FieldKind.FILE,
    'checkbox': FieldKind.CHECKBOX,
    'radio': FieldKind.RADIO,
}
NON_FIELD_INPUT_TYPES = {'hidden', 'submit', 'button', 'reset', 'image'}
NATIVE_CONTROL_TAGS = {'input', 'select', 'textarea'}

# "select control" naming convention of custom dropdown widgets
WIDGET_NAME_TOKENS = ('select', 'dropdown', 'picker', 'combobox')
CONTROL_TOKENS = ('control', 'trigger', 'toggle', 'button', 'btn')

# exp[0][title], exp-1-title, exp_2_title
_INDEXED_NAME = re.compile(r'^(?P<prefix>[A-Za-z][\w]*?)(?:\[(?P<a>\d+)\]|[-_.](?P<b>\d+)(?=[-_.\[]|$))(?P<rest>.*)$')


@dataclass(frozen=True)
class ConditionalRule:
    """Fields inside ``container`` become required while ``trigger`` holds one of ``values``."""

    trigger: str
    values: Tuple[str, ...]
    container: str
    required: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConditionalRule":
        values = data.get('values', data.get('value', ()))
        if isinstance(values, str):
            values = (values,)
        return cls(
            trigger=data['trigger'],
            values=tuple(str(v) for v in values),
            container=data['container'],
            required=data.get('required', True),
        )

    def is_active(self, document: ElementNode) -> bool:
        current = trigger_value(document, self.trigger)
        wanted = {v.lower() for v in self.values}
        if isinstance(current, tuple):
            return any(str(v).lower() in wanted for v in current)
        if isinstance(current, bool):
            return str(current).lower() in wanted
        return current is not None and str(current).lower() in wanted


def clean_label(text: str) -> str:
    """Clean up label text."""
    # Remove asterisks and extra whitespace
    text = text.replace('*', '').strip()

    # Remove random hash IDs like "0444ca7a", "35410d3d", etc.
    text = re.sub(r'\s+[a-f0-9]{8}$', '', text)

    # Remove (required) markers
    text = re.sub(r'\s*\(required\)\s*', ' ', text)

    # Remove multiple spaces
    return re.sub(r'\s+', ' ', text).strip()


def humanize(attr: str) -> str:
    """Convert an ID/name to a readable label."""
    label = re.sub(r'[\[\]_\-.]+', ' ', attr).strip()
    return ' '.join(word.capitalize() for word in label.split())


def split_indexed_name(name: Optional[str]) -> Optional[Tuple[str, int, str]]:
    """Split ``exp[1][title]`` into ``('exp', 1, 'title')``; ``None`` if not indexed."""
    if not name:
        return None
    match = _INDEXED_NAME.match(name)
    if not match:
        return None
    index = int(match.group('a') if match.group('a') is not None else match.group('b'))
    local = re.sub(r'[\[\]]', ' ', match.group('rest')).strip(' -_.')
    local = re.sub(r'\s+', '.', local) or match.group('prefix')
    return match.group('prefix'), index, local


def _option_value(option: ElementNode) -> str:
    value = option.get('value')
    return value if value is not None else option.text_content().strip()


def read_value(node: ElementNode) -> Any:
    """Current value of a control as the document reports it.

    A select left on a placeholder option reads as empty.
    """
    if node.tag == 'input' and node.input_type in ('checkbox', 'radio'):
        return node.has('checked')
    if node.tag == 'select':
        options = [o for o in node.iter() if o.tag == 'option']
        selected = [o for o in options if o.has('selected')]
        if node.has('multiple'):
            return tuple(_option_value(o) for o in selected if option_from_node(o) is not None)
        current = selected[0] if selected else None
        if current is None and node.get('value') is not None:
            current = next((o for o in options if _option_value(o) == node.get('value')), None)
        if current is None and options:
            # Browsers show the first option when nothing is selected
            current = options[0]
        if current is None:
            return node.get('value', '')
        if option_from_node(current) is None:
            return ''
        return _option_value(current)
    return node.get('value', '')


def trigger_value(document: ElementNode, trigger: str) -> Any:
    """Value of a trigger field, addressed by element id or by control name."""
    node = document.find_by_id(trigger)
    if node is not None and not (node.tag == 'input' and node.input_type == 'radio'):
        return read_value(node)

    named = [n for n in document.iter() if n.tag in NATIVE_CONTROL_TAGS and n.get('name') == trigger]
    if not named and node is not None:
        named = [node]
    if not named:
        return None
    first = named[0]
    if first.tag == 'input' and first.input_type == 'radio':
        for radio in named:
            if radio.has('checked'):
                return radio.get('value', 'on')
        return ''
    if first.tag == 'input' and first.input_type == 'checkbox' and len(named) > 1:
        return tuple(cb.get('value', 'on') for cb in named if cb.has('checked'))
    return read_value(first)


def is_widget_control(node: ElementNode) -> bool:
    """Heuristic signature of a custom dropdown's clickable control."""
    if node.tag in NATIVE_CONTROL_TAGS:
        return False
    classes = node.classes
    for cls in classes:
        lowered = cls.lower()
        if any(t in lowered for t in WIDGET_NAME_TOKENS) and any(t in lowered for t in CONTROL_TOKENS):
            return True
    return (node.get('aria-haspopup') or '').lower() in ('listbox', 'true') and node.role in ('button', '')


class FieldClassifier:
    """Classifies the elements of one document; built fresh for every capture."""

    def __init__(self, document: ElementNode, rules: Sequence[ConditionalRule] = ()):
        self.document = document
        self.rules = tuple(rules)
        self.logger = logger

        self._labels_for: Dict[str, str] = {}
        self._excluded: Set[str] = set()
        self._carriers: Dict[str, str] = {}
        self._linked_listboxes: Set[str] = set()
        self._entries: Dict[str, GroupRef] = {}
        self._required_containers: Set[str] = set()

        self._index_labels()
        self._index_widgets()
        self._index_repeat_groups(document)
        self._index_rules()

    # ------------------------------------------------------------------
    # Document-wide indexes
    # ------------------------------------------------------------------

    def _index_labels(self):
        for node in self.document.iter():
            if node.tag == 'label' and node.get('for'):
                self._labels_for.setdefault(node.get('for'), node.text_content())

    def _index_widgets(self):
        """Find custom controls, their carriers, and everything that is part of a widget."""
        for node, ancestors in self.document.walk():
            role = node.role
            if role == 'listbox' or role == 'option':
                for inner in node.iter():
                    if inner is not node:
                        self._excluded.add(inner.path)
            if role == 'option':
                self._excluded.add(node.path)

            if role == 'combobox' or is_widget_control(node):
                for target in ((node.get('aria-controls') or '').split() + (node.get('aria-owns') or '').split()):
                    self._linked_listboxes.add(target)
                carrier = self._find_carrier(node, ancestors)
                if carrier is not None:
                    self._carriers[node.path] = carrier.path
                    self._excluded.add(carrier.path)
                if is_widget_control(node):
                    # The typing input inside a custom control is part of the widget
                    for inner in node.iter():
                        if inner is not node:
                            self._excluded.add(inner.path)

    def _find_carrier(self, control: ElementNode, ancestors: Tuple[ElementNode, ...]) -> Optional[ElementNode]:
        """Nearest hidden input in a scope that holds no other control."""
        for scope in reversed(ancestors[-3:]):
            controls = [n for n in scope.iter() if n.role == 'combobox' or is_widget_control(n)]
            # Nested combobox inputs inside this control do not count as other controls
            others = [n for n in controls if not control.contains(n)]
            if others:
                return None
            for candidate in scope.iter():
                if candidate.tag == 'input' and candidate.input_type == 'hidden':
                    return candidate
        return None

    def _index_repeat_groups(self, node: ElementNode):
        """Top-down: the outermost container whose controls all share one index is an entry.

        Sibling entries of one key must share a template signature (the sorted
        local names and kinds of their controls); the most common signature
        among the siblings is the template, and containers that differ from it
        are not counted.
        """
        candidates = []
        for child in node.children:
            entry = self._entry_signature(child)
            if entry is None:
                self._index_repeat_groups(child)
                continue
            candidates.append((child, entry))

        signatures: Dict[str, List[Tuple]] = {}
        for _, (key, signature) in candidates:
            signatures.setdefault(key, []).append(signature)

        ordinals: Dict[str, int] = {}
        for child, (key, signature) in candidates:
            seen = signatures[key]
            template = max(seen, key=seen.count)
            if signature != template:
                self.logger.debug(f"Container {child.path} does not match the '{key}' entry template")
                self._index_repeat_groups(child)
                continue
            ordinals[key] = ordinals.get(key, 0) + 1
            self._entries[child.path] = GroupRef(key=key, ordinal=ordinals[key])

    def _entry_signature(self, container: ElementNode) -> Optional[Tuple[str, Tuple]]:
        if container.tag in NATIVE_CONTROL_TAGS:
            return None
        prefixes = set()
        indexes = set()
        controls = []
        for node in container.iter():
            if node.tag not in NATIVE_CONTROL_TAGS or not node.get('name'):
                continue
            if node.tag == 'input' and node.input_type in NON_FIELD_INPUT_TYPES - {'hidden'}:
                continue
            parts = split_indexed_name(node.get('name'))
            if parts is None:
                return None
            prefixes.add(parts[0])
            indexes.add(parts[1])
            controls.append((parts[2].lower(), node.tag, node.input_type))
        if not controls or len(prefixes) != 1 or len(indexes) != 1:
            return None
        return prefixes.pop(), tuple(sorted(set(controls)))

    def _index_rules(self):
        for rule in self.rules:
            try:
                if rule.required and rule.is_active(self.document):
                    self._required_containers.add(rule.container)
            except Exception as e:
                self.logger.debug(f"Error evaluating conditional rule for {rule.container}: {e}")

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def classify(self, node: ElementNode, ancestors: Tuple[ElementNode, ...] = ()) -> Optional[FieldDescriptor]:
        """Return a descriptor for ``node`` or ``None`` if it is not a field."""
        if node.path in self._excluded:
            return None

        kind = self._native_kind(node)
        source = None
        if kind is None:
            kind, source = self._aria_kind(node)
        if kind is None and is_widget_control(node) and node.path in self._carriers:
            kind = FieldKind.CHOICE_CUSTOM
        if kind is None:
            self._check_affordance(node)
            return None

        return self._describe(node, ancestors, kind, source)

    def classify_all(self) -> Tuple[List[FieldDescriptor], List[str]]:
        """Classify every element; returns descriptors and the paths of ambiguous elements."""
        fields: List[FieldDescriptor] = []
        ambiguous: List[str] = []
        for node, ancestors in self.document.walk():
            try:
                descriptor = self.classify(node, ancestors)
            except ClassificationAmbiguous as e:
                self.logger.info(f"Skipping ambiguous element: {e}")
                ambiguous.append(node.path)
                continue
            if descriptor is not None:
                fields.append(descriptor)
        return fields, ambiguous

    def _native_kind(self, node: ElementNode) -> Optional[FieldKind]:
        if node.tag == 'textarea':
            return FieldKind.TEXTAREA
        if node.tag == 'select':
            return FieldKind.SELECT_MULTI if node.has('multiple') else FieldKind.SELECT_SINGLE
        if node.tag != 'input':
            return None

        input_type = node.input_type
        if input_type in NON_FIELD_INPUT_TYPES:
            return None
        if input_type not in INPUT_KINDS:
            raise ClassificationAmbiguous(node.path, f"unrecognised input type '{input_type}'")
        if node.role == 'combobox' and self._linked_target(node):
            # Typeahead inputs that drive a listbox are choice fields
            return None
        return INPUT_KINDS[input_type]

    def _linked_target(self, node: ElementNode) -> Optional[str]:
        for attr in ('aria-controls', 'aria-owns'):
            value = (node.get(attr) or '').split()
            if value:
                return value[0]
        return None

    def _aria_kind(self, node: ElementNode) -> Tuple[Optional[FieldKind], Optional[str]]:
        role = node.role
        if role == 'listbox':
            if node.get('id') in self._linked_listboxes:
                return None, None
            multi = (node.get('aria-multiselectable') or '').lower() == 'true'
            return (FieldKind.SELECT_MULTI if multi else FieldKind.SELECT_SINGLE), node.get('id')
        if role == 'combobox':
            target = self._linked_target(node)
            if target or (node.get('aria-haspopup') or '').lower() == 'listbox':
                return FieldKind.SELECT_SINGLE, target
            if node.path in self._carriers:
                return FieldKind.CHOICE_CUSTOM, None
            raise ClassificationAmbiguous(node.path, "combobox without a linked listbox or value carrier")
        if (node.get('aria-haspopup') or '').lower() == 'listbox' and node.path not in self._carriers:
            return FieldKind.SELECT_SINGLE, self._linked_target(node)
        if role == 'checkbox' or role == 'switch':
            return FieldKind.CHECKBOX, None
        if role == 'radio':
            return FieldKind.RADIO, None
        return None, None

    def _check_affordance(self, node: ElementNode):
        if (node.get('contenteditable') or '').lower() in ('', 'true') and node.has('contenteditable'):
            raise ClassificationAmbiguous(node.path, "contenteditable region")
        if node.role in ('textbox', 'searchbox', 'spinbutton'):
            raise ClassificationAmbiguous(node.path, f"role '{node.role}' without a native control")

    def _describe(self, node: ElementNode, ancestors: Tuple[ElementNode, ...], kind: FieldKind,
                  source: Optional[str]) -> FieldDescriptor:
        name = node.get('name')
        raw_label = self._raw_label(node, ancestors)
        label = clean_label(raw_label) if raw_label else ''
        if not label and (node.get('id') or name):
            label = humanize(node.get('id') or name)

        group, local_id = self._group_of(node, ancestors)
        carrier = self._carriers.get(node.path)
        value = read_value(node)
        if carrier is not None:
            carrier_node = self.document.find_by_path(carrier)
            value = carrier_node.get('value', '') if carrier_node else ''
        elif node.role == 'listbox':
            value = tuple(
                o.get('data-value') or o.get('value') or o.text_content().strip()
                for o in node.iter() if o.role == 'option' and (o.get('aria-selected') or '') == 'true'
            )
            if kind == FieldKind.SELECT_SINGLE:
                value = value[0] if value else ''

        return FieldDescriptor(
            id=node.get('id') or name or node.path,
            kind=kind,
            required=self._is_required(node, ancestors, raw_label),
            visible=is_effectively_visible(node, ancestors),
            path=node.path,
            name=name,
            label=label,
            group=group,
            local_id=local_id,
            constraints=self._constraints(node),
            value=value,
            source=source,
            carrier=carrier,
        )

    def _raw_label(self, node: ElementNode, ancestors: Tuple[ElementNode, ...]) -> str:
        # Method 1: Traditional label[for="id"]
        element_id = node.get('id')
        if element_id and self._labels_for.get(element_id):
            return self._labels_for[element_id]

        # Method 2: Wrapping label
        for ancestor in reversed(ancestors):
            if ancestor.tag == 'label':
                return ancestor.text_content()

        # Method 3: ARIA naming
        if node.get('aria-label'):
            return node.get('aria-label')
        labelled_by = (node.get('aria-labelledby') or '').split()
        if labelled_by:
            texts = [n.text_content() for n in (self.document.find_by_id(i) for i in labelled_by) if n is not None]
            if texts:
                return ' '.join(texts)

        return node.get('placeholder') or ''

    def _is_required(self, node: ElementNode, ancestors: Tuple[ElementNode, ...], raw_label: str) -> bool:
        """Determine if a field is required in the document as it is right now."""
        if node.has('required') or (node.get('aria-required') or '').lower() == 'true':
            return True
        if raw_label and '*' in raw_label:
            return True

        for i, ancestor in enumerate(ancestors):
            group_required = (
                (ancestor.get('aria-required') or '').lower() == 'true'
                or (ancestor.get('data-required') or '').lower() == 'true'
                or (ancestor.get('id') in self._required_containers)
            )
            if group_required and is_effectively_visible(ancestor, ancestors[:i]):
                return True
        return False

    def _group_of(self, node: ElementNode, ancestors: Tuple[ElementNode, ...]) -> Tuple[Optional[GroupRef], Optional[str]]:
        for ancestor in reversed(ancestors):
            group = self._entries.get(ancestor.path)
            if group is None:
                continue
            parts = split_indexed_name(node.get('name')) or split_indexed_name(node.get('id'))
            local_id = parts[2] if parts else (node.get('name') or node.get('id') or node.tag)
            return group, local_id
        return None, None

    def _constraints(self, node: ElementNode) -> FieldConstraints:
        accept = tuple(a.strip() for a in (node.get('accept') or '').split(',') if a.strip())
        max_length = node.get('maxlength')
        return FieldConstraints(
            pattern=node.get('pattern'),
            min=node.get('min'),
            max=node.get('max'),
            accept=accept,
            max_length=int(max_length) if max_length and max_length.isdigit() else None,
        )


def classify_document(document: ElementNode, rules: Sequence[ConditionalRule] = ()) -> Tuple[List[FieldDescriptor], List[str]]:
    """Classify every element of ``document``."""
    return FieldClassifier(document, rules).classify_all()
