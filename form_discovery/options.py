"""
Option resolver.

Extracts the choice set of a classified choice field. Dropdown rendering is
heterogeneous, so resolution is a chain of strategies tried in a fixed order,
each a plain async function ``(field, ctx) -> OptionSet | NOT_APPLICABLE``:

- ``direct``: options already in the document (native select, expanded listbox)
- ``triggered-local``: options render next to the control after an open click
- ``triggered-portal``: options render into a detached overlay container

Only one overlay may be open at a time; resolution is serialised.
"""

import asyncio
import logging
from dataclasses import dataclass, field as dataclass_field
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Set, Tuple

from .config import build_config
from .driver import OUTSIDE, ElementNode, is_effectively_visible
from .exceptions import OverlayStateError, StabilityTimeout
from .models import FieldDescriptor, Option, OptionSet, ResolutionState

logger = logging.getLogger(__name__)

PLACEHOLDER_TEXTS = {
    '', 'select...', 'select', 'choose...', 'choose', 'select an option', 'select one',
    'choose one', 'please select', 'please select...', '--', '-',
}
OPTION_LIST_TOKENS = ('menu', 'listbox', 'options', 'dropdown', 'popover', 'popup', 'list')
OPTION_TOKENS = ('option',)


class _NotApplicable:
    def __repr__(self):
        return 'NOT_APPLICABLE'


NOT_APPLICABLE = _NotApplicable()


@dataclass(frozen=True)
class OptionDependency:
    """``field``'s options depend on the value of ``trigger``."""

    field: str
    trigger: str


# ----------------------------------------------------------------------
# Reading options out of an element tree
# ----------------------------------------------------------------------

def option_from_node(node: ElementNode) -> Optional[Option]:
    """Extract ``{value, label}``, preferring value, then data-value, then text."""
    text = node.text_content().strip()
    label = text or (node.get('aria-label') or '').strip()

    value = None
    for attr in ('value', 'data-value', 'data-option-value'):
        candidate = node.get(attr)
        if candidate is not None and candidate.strip() != '':
            value = candidate.strip()
            break

    if value is None:
        if label.lower() in PLACEHOLDER_TEXTS:
            return None
        value = label
    elif label.lower() in PLACEHOLDER_TEXTS and value.lower() in PLACEHOLDER_TEXTS:
        return None

    return Option(value=value, label=label or value)


def _options_of(nodes: Sequence[ElementNode]) -> List[Option]:
    options = []
    for node in nodes:
        option = option_from_node(node)
        if option is not None:
            options.append(option)
    return options


def option_nodes(container: ElementNode) -> List[ElementNode]:
    """Option-like elements inside ``container``."""
    inner = [n for n in container.iter() if n is not container]
    nodes = [n for n in inner if n.role == 'option' or n.tag == 'option']
    if nodes:
        return nodes

    nodes = [
        n for n in inner
        if n.has('data-value') or n.has('data-option-value')
        or any(token in cls.lower() for cls in n.classes for token in OPTION_TOKENS)
    ]
    # Keep the innermost matches; wrappers such as "option-group" hold the real options
    nodes = [n for n in nodes if not any(o is not n and n.contains(o) for o in nodes)]
    if nodes:
        return nodes
    return [n for n in inner if n.tag == 'li']


def visible_nodes(document: ElementNode, scope: ElementNode) -> Set[str]:
    """Paths of effectively visible nodes inside ``scope``."""
    return {
        node.path for node, ancestors in document.walk()
        if scope.contains(node) and is_effectively_visible(node, ancestors)
    }


def ancestors_of(document: ElementNode, path: str) -> Tuple[ElementNode, ...]:
    for node, ancestors in document.walk():
        if node.path == path:
            return ancestors
    return ()


def looks_like_option_list(node: ElementNode) -> bool:
    if node.tag in ('select', 'body', 'html', 'form'):
        return False
    if node.role == 'listbox':
        return True
    return any(token in cls.lower() for cls in node.classes for token in OPTION_LIST_TOKENS)


def direct_options(field: FieldDescriptor, node: ElementNode, document: ElementNode) -> Optional[OptionSet]:
    """Options readable without any interaction, or ``None``."""
    if node.tag == 'select':
        options = _options_of([n for n in node.iter() if n.tag == 'option'])
        return OptionSet.resolved(options, 'direct') if options else None

    listbox = node if node.role == 'listbox' else (document.find_by_id(field.source) if field.source else None)
    if listbox is None:
        return None
    visible = visible_nodes(document, listbox)
    if listbox.path not in visible:
        return None
    options = _options_of([n for n in option_nodes(listbox) if n.path in visible])
    return OptionSet.resolved(options, 'direct') if options else None


# ----------------------------------------------------------------------
# Strategy chain
# ----------------------------------------------------------------------

@dataclass
class ResolutionContext:
    """Shared state of one pass through the strategy chain."""

    resolver: "OptionResolver"
    field: FieldDescriptor
    node: ElementNode
    document: ElementNode
    timeout: float
    baseline: Set[str] = dataclass_field(default_factory=set)
    opened: bool = False
    timed_out: bool = False

    async def open(self) -> None:
        if self.opened:
            return
        self.baseline = self.resolver.option_list_paths(self.document)
        await self.resolver.open(self.field)
        self.opened = True

    def local_scopes(self, document: ElementNode) -> List[ElementNode]:
        return self.resolver.local_scopes(self.field, document)

    def local_options(self, document: ElementNode) -> List[Option]:
        options: List[Option] = []
        for scope in self.local_scopes(document):
            visible = visible_nodes(document, scope)
            options = _options_of([n for n in option_nodes(scope) if n.path in visible])
            if options:
                break
        return options

    def portal(self, document: ElementNode) -> Optional[ElementNode]:
        scopes = self.local_scopes(document)
        candidates = []
        for node, ancestors in document.walk():
            if node.path in self.baseline or not looks_like_option_list(node):
                continue
            if any(scope.contains(node) for scope in scopes):
                continue
            if not is_effectively_visible(node, ancestors) or not option_nodes(node):
                continue
            candidates.append(node)
        # Innermost container wins over wrappers that merely contain it
        candidates = [c for c in candidates if not any(o is not c and c.contains(o) for o in candidates)]
        return candidates[0] if candidates else None

    def ready(self, snapshot) -> bool:
        document = snapshot.document
        return bool(self.local_options(document)) or self.portal(document) is not None


Strategy = Callable[[FieldDescriptor, ResolutionContext], Awaitable[object]]


async def direct_strategy(field: FieldDescriptor, ctx: ResolutionContext):
    options = direct_options(field, ctx.node, ctx.document)
    return options if options is not None else NOT_APPLICABLE


async def triggered_local_strategy(field: FieldDescriptor, ctx: ResolutionContext):
    await ctx.open()
    try:
        snapshot = await ctx.resolver.watcher.await_settled(predicate=ctx.ready, timeout=ctx.timeout)
    except StabilityTimeout:
        ctx.timed_out = True
        return NOT_APPLICABLE
    ctx.document = snapshot.document

    options = ctx.local_options(snapshot.document)
    if options:
        return OptionSet.resolved(options, 'triggered-local')
    return NOT_APPLICABLE


async def triggered_portal_strategy(field: FieldDescriptor, ctx: ResolutionContext):
    if ctx.timed_out:
        return NOT_APPLICABLE
    if not ctx.opened:
        await ctx.open()
        try:
            snapshot = await ctx.resolver.watcher.await_settled(predicate=ctx.ready, timeout=ctx.timeout)
        except StabilityTimeout:
            return NOT_APPLICABLE
        ctx.document = snapshot.document

    container = ctx.portal(ctx.document)
    if container is None:
        return NOT_APPLICABLE
    visible = visible_nodes(ctx.document, container)
    options = _options_of([n for n in option_nodes(container) if n.path in visible])
    if not options:
        return NOT_APPLICABLE
    logger.debug(f"Read {len(options)} portal options for {field.id} from {container.path}")
    return OptionSet.resolved(options, 'triggered-portal')


DEFAULT_STRATEGIES: Tuple[Tuple[str, Strategy], ...] = (
    ('direct', direct_strategy),
    ('triggered-local', triggered_local_strategy),
    ('triggered-portal', triggered_portal_strategy),
)


class OptionResolver:
    """Resolves and caches option sets; owns the single open overlay."""

    def __init__(self, driver, watcher, config=None, strategies: Sequence[Tuple[str, Strategy]] = DEFAULT_STRATEGIES,
                 dependencies: Sequence[OptionDependency] = ()):
        self.driver = driver
        self.watcher = watcher
        self.config = build_config(config)
        self.strategies = tuple(strategies)
        self.logger = logger

        self.timeout = self.config['timeouts']['option_resolution']
        self.close_timeout = self.config['timeouts']['overlay_close']
        self.max_retries = self.config['limits']['max_retries']

        self.cache: Dict[str, OptionSet] = {}
        self.dependencies: Dict[str, List[str]] = {}
        for dependency in dependencies:
            self.add_dependency(dependency)

        self._lock = asyncio.Lock()
        self._open_field: Optional[str] = None

    # Overlay discipline -------------------------------------------------

    @property
    def open_field(self) -> Optional[str]:
        return self._open_field

    async def open(self, field: FieldDescriptor) -> None:
        """Dispatch the open interaction for ``field``'s control."""
        if self._open_field is not None:
            raise OverlayStateError(
                f"Cannot open {field.id} while {self._open_field} is still open",
                open_field=self._open_field, requested=field.id,
            )
        self._open_field = field.id
        await self.driver.dispatch_click(field.path)

    async def close(self, baseline: Optional[Set[str]] = None) -> None:
        """Click outside and wait until only the option lists in ``baseline`` remain."""
        if self._open_field is None:
            return
        field_id = self._open_field
        baseline = baseline or set()
        try:
            await self.driver.dispatch_click(OUTSIDE)

            def closed(snapshot) -> bool:
                return self.option_list_paths(snapshot.document) <= baseline

            try:
                await self.watcher.await_settled(predicate=closed, timeout=self.close_timeout)
            except StabilityTimeout:
                self.logger.warning(f"Overlay for {field_id} did not close within {self.close_timeout}ms")
        finally:
            self._open_field = None

    def option_list_paths(self, document: ElementNode) -> Set[str]:
        """Paths of visible option-list containers that currently hold options."""
        paths = set()
        for node, ancestors in document.walk():
            if looks_like_option_list(node) and is_effectively_visible(node, ancestors):
                visible = visible_nodes(document, node)
                if any(n.path in visible for n in option_nodes(node)):
                    paths.add(node.path)
        return paths

    def local_scopes(self, field: FieldDescriptor, document: ElementNode) -> List[ElementNode]:
        """Where options of ``field`` appear when they render next to the control."""
        scopes: List[ElementNode] = []
        if field.source:
            linked = document.find_by_id(field.source)
            if linked is not None:
                scopes.append(linked)
        node = document.find_by_path(field.path)
        if node is None:
            return scopes
        ancestors = ancestors_of(document, field.path)
        if field.carrier:
            for ancestor in reversed(ancestors):
                if ancestor.path != 'html' and field.carrier.startswith(ancestor.path + ' > '):
                    scopes.append(ancestor)
                    break
        elif ancestors and node.tag != 'select':
            scopes.append(ancestors[-1])
        scopes.append(node)
        return scopes

    # Resolution ---------------------------------------------------------

    async def resolve(self, field: FieldDescriptor) -> OptionSet:
        """Return the option set of a choice field, resolving it if needed."""
        if not field.is_choice:
            raise ValueError(f"Field {field.id} of kind {field.kind.value} has no option set")

        async with self._lock:
            cached = self.cache.get(field.id)
            if cached is not None and cached.is_resolved:
                return cached

            self.cache[field.id] = OptionSet(state=ResolutionState.LOADING)
            attempts = self.max_retries + 1
            for attempt in range(1, attempts + 1):
                result = await self._run_chain(field)
                if result.is_resolved:
                    self.logger.info(f"Resolved {len(result)} options for {field.id} via {result.strategy}")
                    self.cache[field.id] = result
                    return result
                if attempt < attempts:
                    self.logger.warning(f"No options for {field.id}, retrying ({attempt}/{attempts - 1})")

            self.logger.warning(f"Option resolution failed for {field.id}")
            failed = OptionSet.failed()
            self.cache[field.id] = failed
            return failed

    async def _run_chain(self, field: FieldDescriptor) -> OptionSet:
        document = await self.driver.read_structure()
        node = document.find_by_path(field.path)
        if node is None:
            self.logger.debug(f"Control of {field.id} is no longer in the document")
            return OptionSet.failed()

        ctx = ResolutionContext(self, field, node, document, self.timeout)
        try:
            for name, strategy in self.strategies:
                result = await strategy(field, ctx)
                if result is not NOT_APPLICABLE:
                    return result
                self.logger.debug(f"Strategy {name} not applicable for {field.id}")
        finally:
            if ctx.opened:
                await self.close(ctx.baseline)
        return OptionSet.failed()

    async def select(self, field: FieldDescriptor, option: Option) -> bool:
        """Pick ``option`` in an overlay widget by opening it and clicking the option element."""
        async with self._lock:
            document = await self.driver.read_structure()
            node = document.find_by_path(field.path)
            if node is None:
                return False
            ctx = ResolutionContext(self, field, node, document, self.timeout)
            try:
                await ctx.open()
                try:
                    snapshot = await self.watcher.await_settled(predicate=ctx.ready, timeout=self.timeout)
                except StabilityTimeout:
                    return False
                current = snapshot.document
                scopes = ctx.local_scopes(current)
                portal = ctx.portal(current)
                if portal is not None:
                    scopes.append(portal)
                for scope in scopes:
                    for candidate in option_nodes(scope):
                        extracted = option_from_node(candidate)
                        if extracted is not None and extracted.value == option.value:
                            await self.driver.dispatch_click(candidate.path)
                            return True
                return False
            finally:
                if ctx.opened:
                    await self.close(ctx.baseline)

    # Dependencies -------------------------------------------------------

    def add_dependency(self, dependency: OptionDependency) -> None:
        self.dependencies.setdefault(dependency.trigger, []).append(dependency.field)

    def invalidate(self, field_id: str) -> None:
        if field_id in self.cache:
            self.cache[field_id] = OptionSet(state=ResolutionState.UNRESOLVED)

    def on_value_changed(self, trigger_id: str) -> List[str]:
        """Reset every option set that depends on ``trigger_id``; returns their ids."""
        dependents = self.dependencies.get(trigger_id, [])
        for field_id in dependents:
            self.logger.info(f"Trigger {trigger_id} changed, invalidating options of {field_id}")
            self.invalidate(field_id)
        return list(dependents)
