"""
Driver seam between the engine and a live document.

The engine never touches the document except through a ``Driver``: it reads an
immutable ``ElementNode`` tree and dispatches clicks and value changes by the
structural ``path`` of a node. ``PlaywrightDriver`` implements the seam over a
Playwright page; tests use an in-memory fake.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Protocol, Tuple

from playwright.async_api import Page, async_playwright
from undetected_playwright import stealth_async

from .config import build_config

logger = logging.getLogger(__name__)

# Click target meaning "somewhere outside every widget", used to close overlays
OUTSIDE = "::outside"


@dataclass(frozen=True)
class ElementNode:
    """One element of the document at one instant."""

    tag: str
    attrs: Dict[str, str] = field(default_factory=dict)
    text: str = ""
    visible: bool = True
    children: Tuple["ElementNode", ...] = ()
    path: str = ""

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self.attrs.get(name, default)

    def has(self, name: str) -> bool:
        return name in self.attrs

    @property
    def role(self) -> str:
        return (self.attrs.get("role") or "").lower()

    @property
    def classes(self) -> List[str]:
        return (self.attrs.get("class") or "").split()

    @property
    def input_type(self) -> str:
        return (self.attrs.get("type") or "").lower()

    def iter(self) -> Iterator["ElementNode"]:
        """Depth-first, document-order iteration including this node."""
        yield self
        for child in self.children:
            yield from child.iter()

    def walk(self, ancestors: Tuple["ElementNode", ...] = ()) -> Iterator[Tuple["ElementNode", Tuple["ElementNode", ...]]]:
        """Like ``iter`` but yields ``(node, ancestors)`` pairs, nearest ancestor last."""
        yield self, ancestors
        for child in self.children:
            yield from child.walk(ancestors + (self,))

    def text_content(self) -> str:
        parts = [self.text] if self.text else []
        for child in self.children:
            child_text = child.text_content()
            if child_text:
                parts.append(child_text)
        return " ".join(parts)

    def find_by_id(self, element_id: str) -> Optional["ElementNode"]:
        for node in self.iter():
            if node.attrs.get("id") == element_id:
                return node
        return None

    def find_by_path(self, path: str) -> Optional["ElementNode"]:
        for node in self.iter():
            if node.path == path:
                return node
        return None

    def contains(self, other: "ElementNode") -> bool:
        """True when ``other`` is this node or one of its descendants."""
        return other.path == self.path or other.path.startswith(self.path + " > ")

    def signature(self) -> tuple:
        """Structural signature used to detect any change between polls."""
        return (
            self.tag,
            tuple(sorted(self.attrs.items())),
            self.text,
            self.visible,
            tuple(child.signature() for child in self.children),
        )


def is_effectively_visible(node: ElementNode, ancestors: Tuple[ElementNode, ...]) -> bool:
    """An element is visible only if it and all of its ancestors are."""
    return node.visible and all(a.visible for a in ancestors)


def element_from_dict(data: Dict[str, Any]) -> ElementNode:
    """Build an ``ElementNode`` tree from the structure script's JSON output."""
    return ElementNode(
        tag=data.get("tag", "").lower(),
        attrs={k: ("" if v is None else str(v)) for k, v in (data.get("attrs") or {}).items()},
        text=(data.get("text") or "").strip(),
        visible=bool(data.get("visible", True)),
        children=tuple(element_from_dict(c) for c in data.get("children") or ()),
        path=data.get("path", ""),
    )


class Driver(Protocol):
    """Primitives the engine needs from the browser/automation layer."""

    async def read_structure(self) -> ElementNode:
        """Return the current document as an immutable element tree."""
        ...

    async def dispatch_click(self, target: str) -> None:
        """Click the element at ``target`` (a node path) or ``OUTSIDE``."""
        ...

    async def set_value(self, target: str, value: Any) -> None:
        """Set the value of the control at ``target``."""
        ...

    async def current_location(self) -> str:
        """Return the current URL."""
        ...


# Serialises the live DOM. Paths use :nth-child so they double as CSS selectors.
_STRUCTURE_JS = """
() => {
  const SKIP = new Set(['script', 'style', 'noscript', 'template', 'svg', 'head']);
  const ownText = (el) => Array.from(el.childNodes)
    .filter(n => n.nodeType === Node.TEXT_NODE)
    .map(n => n.textContent)
    .join(' ')
    .replace(/\\s+/g, ' ')
    .trim()
    .slice(0, 300);
  const isVisible = (el) => {
    if (el.hidden) return false;
    if (el.tagName.toLowerCase() === 'input' && (el.getAttribute('type') || '').toLowerCase() === 'hidden') return false;
    const style = window.getComputedStyle(el);
    return !(style.display === 'none' || style.visibility === 'hidden');
  };
  const attrsOf = (el) => {
    const attrs = {};
    for (const a of Array.from(el.attributes)) attrs[a.name] = a.value;
    const tag = el.tagName.toLowerCase();
    if (tag === 'input' || tag === 'textarea' || tag === 'select') {
      attrs['value'] = el.value == null ? '' : String(el.value);
    }
    if (tag === 'input') {
      if (el.checked) attrs['checked'] = ''; else delete attrs['checked'];
    }
    if (tag === 'option') {
      if (el.selected) attrs['selected'] = ''; else delete attrs['selected'];
    }
    return attrs;
  };
  const build = (el, path) => {
    const children = [];
    let index = 0;
    for (const child of Array.from(el.children)) {
      index += 1;
      const tag = child.tagName.toLowerCase();
      if (SKIP.has(tag)) continue;
      children.push(build(child, `${path} > ${tag}:nth-child(${index})`));
    }
    return {
      tag: el.tagName.toLowerCase(),
      attrs: attrsOf(el),
      text: ownText(el),
      visible: isVisible(el),
      path,
      children,
    };
  };
  return build(document.documentElement, 'html');
}
"""

_SET_HIDDEN_VALUE_JS = """
(el, value) => {
  el.value = value;
  el.dispatchEvent(new Event('input', { bubbles: true }));
  el.dispatchEvent(new Event('change', { bubbles: true }));
}
"""


class PlaywrightDriver:
    """``Driver`` implementation over a Playwright async ``Page``."""

    def __init__(self, page: Page, config=None):
        self.page = page
        self.config = build_config(config)
        self.logger = logger
        self.timeouts = self.config["timeouts"]

    @classmethod
    @asynccontextmanager
    async def launch(cls, config=None):
        """Launch a stealth Chromium page and yield a driver bound to it."""
        config = build_config(config)
        browser_config = config["browser"]
        async with async_playwright() as p:
            browser = await p.chromium.launch(
                headless=browser_config["headless"],
                args=[
                    '--disable-blink-features=AutomationControlled',
                    '--disable-dev-shm-usage',
                    '--no-sandbox',
                    '--disable-setuid-sandbox',
                ]
            )
            context = await browser.new_context(
                viewport=browser_config["viewport"],
                user_agent=browser_config["user_agent"],
                extra_http_headers={'Accept-Language': 'en-US,en;q=0.9'}
            )
            page = await context.new_page()

            # Apply stealth mode to make the browser undetectable
            await stealth_async(page)
            driver = cls(page, config)
            driver._attach_debug_listeners()
            try:
                yield driver
            finally:
                try:
                    await context.close()
                    await browser.close()
                except Exception as e:
                    logger.debug(f"Error during browser cleanup: {e}")

    def _attach_debug_listeners(self):
        try:
            self.page.on('console', lambda msg: self.logger.debug(f"[console:{msg.type}] {msg.text}"))
            self.page.on('pageerror', lambda exc: self.logger.error(f"[pageerror] {exc}"))
            self.page.on('framenavigated', lambda frame: self.logger.debug(f"[framenavigated] url={frame.url}"))
        except Exception as e:
            self.logger.debug(f"Failed to attach debug listeners: {e}")

    async def navigate(self, url: str, max_retries: int = 3) -> None:
        """Navigate to ``url``, retrying transient failures."""
        for attempt in range(max_retries):
            try:
                response = await self.page.goto(url, timeout=self.timeouts['navigation'], wait_until='domcontentloaded')
                if response:
                    self.logger.info(f"Navigation response status: {response.status}")
                return
            except Exception as e:
                self.logger.warning(f"Navigation attempt {attempt + 1}/{max_retries} failed: {e}")
                if attempt == max_retries - 1:
                    raise

    async def read_structure(self) -> ElementNode:
        data = await self.page.evaluate(_STRUCTURE_JS)
        return element_from_dict(data)

    async def dispatch_click(self, target: str) -> None:
        if target == OUTSIDE:
            try:
                await self.page.keyboard.press('Escape')
            except Exception as e:
                self.logger.debug(f"Escape press failed: {e}")
            # Click elsewhere on the page as well; Escape alone leaves some menus open
            await self.page.mouse.click(5, 5)
            return

        locator = self.page.locator(target).first
        try:
            await locator.click(timeout=self.timeouts['interaction'])
        except Exception as e:
            # Covered or zero-sized custom controls still accept a DOM click
            self.logger.debug(f"Direct click failed for {target}, using JavaScript click: {e}")
            await locator.evaluate('el => el.click()')

    async def set_value(self, target: str, value: Any) -> None:
        locator = self.page.locator(target).first
        info = await locator.evaluate(
            "el => ({tag: el.tagName.toLowerCase(), type: (el.getAttribute('type') || '').toLowerCase()})"
        )
        tag, input_type = info['tag'], info['type']

        if tag == 'select':
            values = value if isinstance(value, (list, tuple)) else [str(value)]
            await locator.select_option(value=[str(v) for v in values])
        elif input_type in ('checkbox', 'radio'):
            await locator.set_checked(bool(value), timeout=self.timeouts['interaction'])
        elif input_type == 'file':
            await locator.set_input_files(value)
        elif input_type == 'hidden':
            await locator.evaluate(_SET_HIDDEN_VALUE_JS, str(value))
        else:
            await locator.fill(str(value), timeout=self.timeouts['interaction'])

    async def current_location(self) -> str:
        return self.page.url
