"""
In-memory document implementing the ``Driver`` protocol.

Elements are mutable ``FakeElement`` objects; ``read_structure`` serialises
them into ``ElementNode`` trees with the same ``:nth-child`` paths the
Playwright driver produces. Clicks and value changes are recorded, and
callbacks (optionally delayed) simulate the page's own scripting.
"""

import asyncio
from typing import Any, Callable, Dict, List, Optional, Tuple

from form_discovery.driver import OUTSIDE, ElementNode


def _attr_name(key: str) -> str:
    return key.rstrip('_').replace('_', '-')


class FakeElement:
    def __init__(self, tag: str, attrs: Optional[Dict[str, str]] = None, text: str = '',
                 children=(), visible: bool = True):
        self.tag = tag
        self.attrs = dict(attrs or {})
        self.text = text
        self.visible = visible
        self.parent: Optional["FakeElement"] = None
        self.children: List["FakeElement"] = []
        self.on_click: Optional[Callable[[], None]] = None
        self.on_change: Optional[Callable[[Any], None]] = None
        for child in children:
            self.append(child)

    def append(self, child: "FakeElement") -> "FakeElement":
        child.parent = self
        self.children.append(child)
        return child

    def remove(self, child: "FakeElement") -> None:
        self.children.remove(child)
        child.parent = None

    def clear(self) -> None:
        for child in list(self.children):
            self.remove(child)

    def iter(self):
        yield self
        for child in self.children:
            yield from child.iter()

    def find(self, element_id: str) -> Optional["FakeElement"]:
        for node in self.iter():
            if node.attrs.get('id') == element_id:
                return node
        return None

    def find_all(self, **attrs) -> List["FakeElement"]:
        wanted = {_attr_name(k): v for k, v in attrs.items()}
        return [n for n in self.iter() if all(n.attrs.get(k) == v for k, v in wanted.items())]


def el(tag: str, *children, text: str = '', visible: bool = True, **attrs) -> FakeElement:
    """``el('input', type='text', name='email', class_='x', aria_label='Email')``."""
    return FakeElement(tag, {_attr_name(k): str(v) for k, v in attrs.items()}, text, children, visible)


class FakeDocument:
    """A live document the engine can only see through the ``Driver`` methods."""

    def __init__(self, *children: FakeElement, location: str = 'https://example.com/apply'):
        self.body = FakeElement('body', children=children)
        self.html = FakeElement('html', children=[FakeElement('head'), self.body])
        self.location = location
        self.clicks: List[str] = []
        self.values: List[Tuple[str, Any]] = []
        self.reads = 0
        self.outside_handlers: List[Callable[[], None]] = []
        self._by_path: Dict[str, FakeElement] = {}

    # Page scripting ----------------------------------------------------

    def later(self, delay_ms: float, action: Callable[[], None]) -> None:
        asyncio.get_running_loop().call_later(delay_ms / 1000, action)

    def find(self, element_id: str) -> Optional[FakeElement]:
        return self.html.find(element_id)

    # Serialisation -----------------------------------------------------

    def _value_of(self, element: FakeElement) -> str:
        if element.tag == 'select':
            options = [o for o in element.iter() if o.tag == 'option']
            for option in options:
                if 'selected' in option.attrs:
                    return option.attrs.get('value', option.text)
            return options[0].attrs.get('value', options[0].text) if options else ''
        return element.attrs.get('value', '')

    def _build(self, element: FakeElement, path: str) -> ElementNode:
        children = []
        for index, child in enumerate(element.children, 1):
            if child.tag == 'head':
                continue
            children.append(self._build(child, f"{path} > {child.tag}:nth-child({index})"))
        attrs = dict(element.attrs)
        if element.tag in ('input', 'select', 'textarea'):
            attrs['value'] = self._value_of(element)
        visible = element.visible and not (element.tag == 'input' and attrs.get('type') == 'hidden')
        self._by_path[path] = element
        return ElementNode(
            tag=element.tag, attrs=attrs, text=element.text, visible=visible,
            children=tuple(children), path=path,
        )

    def snapshot_tree(self) -> ElementNode:
        self._by_path = {}
        return self._build(self.html, 'html')

    def element_at(self, path: str) -> FakeElement:
        self.snapshot_tree()
        if path not in self._by_path:
            raise LookupError(f"No element at {path}")
        return self._by_path[path]

    def path_of(self, element: FakeElement) -> str:
        self.snapshot_tree()
        for path, candidate in self._by_path.items():
            if candidate is element:
                return path
        raise LookupError(f"Element {element.tag} is not attached")

    # Driver protocol ---------------------------------------------------

    async def read_structure(self) -> ElementNode:
        self.reads += 1
        return self.snapshot_tree()

    async def dispatch_click(self, target: str) -> None:
        self.clicks.append(target)
        if target == OUTSIDE:
            for handler in list(self.outside_handlers):
                handler()
            return
        element = self.element_at(target)
        if element.on_click is not None:
            element.on_click()

    async def set_value(self, target: str, value: Any) -> None:
        self.values.append((target, value))
        element = self.element_at(target)
        input_type = element.attrs.get('type', '')

        if element.tag == 'select':
            wanted = {str(v) for v in value} if isinstance(value, (list, tuple)) else {str(value)}
            for option in element.iter():
                if option.tag != 'option':
                    continue
                if option.attrs.get('value', option.text) in wanted:
                    option.attrs['selected'] = ''
                else:
                    option.attrs.pop('selected', None)
        elif input_type in ('checkbox', 'radio'):
            if input_type == 'radio' and value:
                for other in self.html.find_all(type='radio', name=element.attrs.get('name', '')):
                    other.attrs.pop('checked', None)
            if value:
                element.attrs['checked'] = ''
            else:
                element.attrs.pop('checked', None)
        else:
            element.attrs['value'] = str(value)

        if element.on_change is not None:
            element.on_change(value)

    async def current_location(self) -> str:
        return self.location


# ----------------------------------------------------------------------
# Widget builders
# ----------------------------------------------------------------------

def custom_select(field_id: str, name: str, label: str, control_class: str = 'custom-select__control') -> FakeElement:
    """A clickable "select control" with a hidden value-carrier input next to it."""
    return el(
        'div',
        el('div', text='Select...', id=field_id, class_=control_class, aria_label=label),
        el('input', type='hidden', name=name),
        class_='custom-select',
    )


def portal_options(doc: FakeDocument, widget: FakeElement, portal_root: FakeElement,
                   options: List[Tuple[str, str]], delay_ms: float = 150,
                   list_class: str = 'menu-list') -> None:
    """Clicking the widget's control renders options into ``portal_root`` after ``delay_ms``."""
    control = widget.children[0]

    def render():
        portal_root.append(el(
            'div',
            *[el('div', text=label, class_='menu-item', data_value=value) for value, label in options],
            class_=list_class,
        ))

    control.on_click = lambda: doc.later(delay_ms, render)


def close_portal_on_outside_click(doc: FakeDocument, portal_root: FakeElement) -> None:
    doc.outside_handlers.append(portal_root.clear)


def local_options(doc: FakeDocument, widget: FakeElement, options_for: Callable[[], List[Tuple[str, str]]],
                  delay_ms: float = 80) -> None:
    """Clicking the control renders an option list inside the widget itself."""
    control = widget.children[0]

    def render():
        widget.append(el(
            'ul',
            *[el('li', text=label, data_value=value) for value, label in options_for()],
            class_='picker-options',
        ))

    def close():
        for child in list(widget.children):
            if child.tag == 'ul':
                widget.remove(child)

    control.on_click = lambda: doc.later(delay_ms, render)
    doc.outside_handlers.append(close)
