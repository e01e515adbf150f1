"""
Form session.

Orchestrates discovery, filling, submission and confirmation over the
lifetime of one application attempt::

    Discovering -> Filling -> Submitting -> AwaitingConfirmation -> Confirmed
         ^            |                                           \\-> Abandoned
         +------------+  (a value change revealed or hid fields)

Every wait goes through the ``StabilityWatcher``; every option set comes from
the ``OptionResolver``; every page interaction goes through the ``Driver``.
"""

import inspect
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from .classifier import ConditionalRule
from .config import build_config
from .driver import Driver, ElementNode, is_effectively_visible
from .exceptions import (
    FormDiscoveryError,
    OptionResolutionFailed,
    RequiredFieldUnfillable,
    SessionStateError,
    StabilityTimeout,
    SubmissionNotConfirmed,
)
from .models import FieldDescriptor, FieldKind, OptionSet
from .options import OptionDependency, OptionResolver
from .snapshot import FormSnapshot, SnapshotCapturer, diff
from .stability import Predicate, StabilityWatcher, at_least_one_field

logger = logging.getLogger(__name__)

DEFAULT_SUCCESS_PHRASES = (
    'thank you',
    'application submitted',
    'successfully submitted',
    'application received',
)

SUBMIT_TEXTS = ('submit', 'apply', 'send application', 'send')


class SessionPhase(str, Enum):
    DISCOVERING = "discovering"
    FILLING = "filling"
    SUBMITTING = "submitting"
    AWAITING_CONFIRMATION = "awaiting-confirmation"
    CONFIRMED = "confirmed"
    ABANDONED = "abandoned"


class SessionStatus(str, Enum):
    IN_PROGRESS = "in-progress"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    ABANDONED = "abandoned"


@dataclass
class SessionState:
    page_id: str = "page-1"
    history: Dict[str, List[FormSnapshot]] = field(default_factory=dict)
    status: SessionStatus = SessionStatus.IN_PROGRESS
    phase: SessionPhase = SessionPhase.DISCOVERING
    reason: Optional[Dict[str, Any]] = None
    rediscovery_count: int = 0
    stale_resolutions: int = 0
    filled: List[str] = field(default_factory=list)
    unfilled_required: List[str] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in (SessionStatus.CONFIRMED, SessionStatus.ABANDONED)

    @property
    def snapshot(self) -> Optional[FormSnapshot]:
        snapshots = self.history.get(self.page_id)
        return snapshots[-1] if snapshots else None

    def record(self, snapshot: FormSnapshot) -> None:
        self.history.setdefault(self.page_id, []).append(snapshot)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'page_id': self.page_id,
            'status': self.status.value,
            'phase': self.phase.value,
            'reason': self.reason,
            'pages': {page: len(snapshots) for page, snapshots in self.history.items()},
            'rediscovery_count': self.rediscovery_count,
            'stale_resolutions': self.stale_resolutions,
            'filled': list(self.filled),
            'unfilled_required': list(self.unfilled_required),
        }


@dataclass(frozen=True)
class ConfirmationSignature:
    """
    Recognised-success test for one target site.

    A site signature is the predicate and/or ``url_pattern``. Without either,
    a success phrase that was not on the page before submitting, or any
    navigation away from the submit location, counts as confirmation.
    """

    url_pattern: Optional[str] = None
    predicate: Optional[Callable[[FormSnapshot], bool]] = None
    success_phrases: Tuple[str, ...] = DEFAULT_SUCCESS_PHRASES

    def matches(self, snapshot: FormSnapshot, initial_location: str = '', initial_text: str = '') -> bool:
        if self.predicate is not None or self.url_pattern:
            if self.predicate is not None and self.predicate(snapshot):
                return True
            return bool(self.url_pattern) and re.search(self.url_pattern, snapshot.location or '') is not None

        text = page_text(snapshot)
        before = initial_text.lower()
        if any(text.count(p.lower()) > before.count(p.lower()) for p in self.success_phrases):
            return True
        if initial_location:
            return bool(snapshot.location) and snapshot.location != initial_location
        return False


def page_text(snapshot: Optional[FormSnapshot]) -> str:
    """Lowercased text of the snapshot's document."""
    if snapshot is None or snapshot.document is None:
        return ''
    return snapshot.document.text_content().lower()


def find_submit_control(document: ElementNode) -> Optional[str]:
    """Path of the first visible submit control, or ``None``."""
    fallback = None
    for node, ancestors in document.walk():
        if not is_effectively_visible(node, ancestors):
            continue
        if node.tag in ('button', 'input') and node.input_type == 'submit':
            return node.path
        if node.tag == 'button' or node.role == 'button':
            text = (node.text_content() or node.get('aria-label') or '').strip().lower()
            if fallback is None and any(t in text for t in SUBMIT_TEXTS):
                fallback = node.path
    return fallback


def _to_reason(reason: Union[str, Dict[str, Any], FormDiscoveryError, None]) -> Dict[str, Any]:
    if isinstance(reason, FormDiscoveryError):
        return reason.to_dict()
    if isinstance(reason, dict):
        return dict(reason)
    return {'error': 'abandoned', 'message': reason or 'abandoned by caller'}


class FormSession:
    """One application attempt against one live document."""

    def __init__(self, driver: Driver, agent=None, confirmation: Optional[ConfirmationSignature] = None,
                 config=None, rules: Sequence[ConditionalRule] = (),
                 dependencies: Sequence[OptionDependency] = (), page_id: str = "page-1"):
        self.driver = driver
        self.agent = agent
        self.confirmation = confirmation or ConfirmationSignature()
        self.config = build_config(config)
        self.logger = logger

        self.capturer = SnapshotCapturer(rules)
        self.watcher = StabilityWatcher(driver, self.capturer, self.config)
        self.resolver = OptionResolver(driver, self.watcher, self.config, dependencies=dependencies)
        self.state = SessionState(page_id=page_id)

        self.max_rediscovery = self.config['limits']['max_rediscovery']
        self.max_retries = self.config['limits']['max_retries']
        self.max_confirmation_attempts = self.config['limits']['max_confirmation_attempts']
        self.confirmation_timeout = self.config['timeouts']['confirmation']
        self.closed = False

    async def __aenter__(self) -> "FormSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc is not None and not self.state.is_terminal:
            self.abandon(exc if isinstance(exc, FormDiscoveryError) else f"{type(exc).__name__}: {exc}")
        self.close()

    @property
    def snapshot(self) -> Optional[FormSnapshot]:
        return self.state.snapshot

    def _require(self, *phases: SessionPhase) -> None:
        if self.closed or self.state.is_terminal:
            raise SessionStateError(
                f"Session is {self.state.status.value}", status=self.state.status.value
            )
        if phases and self.state.phase not in phases:
            raise SessionStateError(
                f"Operation not allowed in phase {self.state.phase.value}", phase=self.state.phase.value
            )

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    async def discover(self, predicate: Optional[Predicate] = at_least_one_field,
                       timeout: Optional[float] = None) -> FormSnapshot:
        """Wait for a settled document and return its inventory with options resolved."""
        self._require(SessionPhase.DISCOVERING, SessionPhase.FILLING)
        self.state.phase = SessionPhase.DISCOVERING

        snapshot = await self.watcher.settle(predicate, timeout)
        snapshot = await self._resolve_options(snapshot)
        self.state.record(snapshot)
        self.logger.info(
            f"Discovered {len(snapshot.visible_fields)} visible fields on {self.state.page_id} "
            f"(revision {snapshot.revision})"
        )
        return snapshot

    def _with_cached_options(self, snapshot: FormSnapshot) -> FormSnapshot:
        cached = {
            f.id: self.resolver.cache[f.id] for f in snapshot.fields
            if f.is_choice and f.options is None and f.id in self.resolver.cache
        }
        return snapshot.with_options(cached) if cached else snapshot

    async def _resolve_options(self, snapshot: FormSnapshot) -> FormSnapshot:
        snapshot = self._with_cached_options(snapshot)
        resolved: Dict[str, OptionSet] = {}
        for descriptor in snapshot.fields:
            if not descriptor.is_choice or not descriptor.visible:
                continue
            if descriptor.options is not None and descriptor.options.is_resolved:
                continue
            result = await self._resolve_current(descriptor)
            if result is not None:
                resolved[result[0]] = result[1]
        if not resolved:
            return snapshot

        # Opening and closing widgets may have changed the document
        try:
            current = await self.watcher.settle(None)
        except StabilityTimeout as e:
            self.logger.warning(f"Document still changing after option resolution: {e}")
            current = e.snapshot or snapshot
        return self._with_cached_options(current).with_options(resolved)

    async def _resolve_current(self, descriptor: FieldDescriptor) -> Optional[Tuple[str, OptionSet]]:
        """
        Resolve options and check the field still is what it was.

        A result is discarded when the field's path or repeat-group ordinal
        changed while resolution was in flight; the field is then re-resolved
        against its fresh descriptor.
        """
        for _ in range(self.max_retries + 1):
            options = await self.resolver.resolve(descriptor)
            current = await self.watcher.poll()
            fresh = current.get(descriptor.id)
            if fresh is None:
                self.logger.info(f"Field {descriptor.id} disappeared during option resolution")
                self.resolver.invalidate(descriptor.id)
                return None
            if fresh.path == descriptor.path and fresh.group == descriptor.group:
                return descriptor.id, options

            self.logger.info(
                f"Discarding stale options for {descriptor.id}: "
                f"{descriptor.group} at {descriptor.path} is now {fresh.group} at {fresh.path}"
            )
            self.state.stale_resolutions += 1
            self.resolver.invalidate(descriptor.id)
            descriptor = fresh
        return descriptor.id, OptionSet.failed()

    # ------------------------------------------------------------------
    # Filling
    # ------------------------------------------------------------------

    async def _ask(self, agent, descriptor: FieldDescriptor) -> Any:
        value = agent.value_for(descriptor)
        if inspect.isawaitable(value):
            value = await value
        return value

    async def fill(self, agent=None) -> FormSnapshot:
        """Ask the agent once per visible field and apply the answers."""
        agent = agent or self.agent
        if agent is None:
            raise SessionStateError("No agent to ask for values")
        self._require(SessionPhase.DISCOVERING, SessionPhase.FILLING)

        snapshot = self.snapshot or await self.discover()
        self.state.phase = SessionPhase.FILLING
        asked = set()

        while True:
            pending = [f for f in snapshot.visible_fields if f.id not in asked]
            if not pending:
                break
            descriptor = pending[0]
            asked.add(descriptor.id)

            value = await self._ask(agent, descriptor)
            if value is None:
                self.logger.debug(f"No value for {descriptor.id}")
                continue

            if not await self._apply(descriptor, value, snapshot):
                continue
            if descriptor.id not in self.state.filled:
                self.state.filled.append(descriptor.id)

            invalidated = self.resolver.on_value_changed(descriptor.id)
            if descriptor.name and descriptor.name != descriptor.id:
                invalidated += self.resolver.on_value_changed(descriptor.name)
            after = self._with_cached_options(await self.watcher.settle(None))
            delta = diff(snapshot, after)

            if delta.changes_visibility or invalidated:
                if self.state.rediscovery_count >= self.max_rediscovery:
                    self.logger.warning(
                        f"Re-discovery limit ({self.max_rediscovery}) reached, keeping revision {after.revision}"
                    )
                    snapshot = after
                else:
                    self.state.rediscovery_count += 1
                    self.state.phase = SessionPhase.DISCOVERING
                    self.logger.info(
                        f"Value of {descriptor.id} changed the form: appeared={list(delta.appeared)} "
                        f"disappeared={list(delta.disappeared)}, re-discovering"
                    )
                    snapshot = await self._resolve_options(after)
                    self.state.phase = SessionPhase.FILLING
                    asked.difference_update(invalidated)
            else:
                snapshot = after
            self.state.record(snapshot)

        self.state.unfilled_required = self.unfilled_required(snapshot)
        return snapshot

    async def _apply(self, descriptor: FieldDescriptor, value: Any, snapshot: FormSnapshot) -> bool:
        """Dispatch the value change for one field; False when nothing was done."""
        node = snapshot.document.find_by_path(descriptor.path) if snapshot.document is not None else None
        native = node is not None and node.tag in ('input', 'select', 'textarea')

        if descriptor.kind == FieldKind.CHECKBOX:
            desired = bool(value)
            if desired == bool(descriptor.value):
                return False
            if native:
                await self.driver.set_value(descriptor.path, desired)
            else:
                await self.driver.dispatch_click(descriptor.path)
            return True

        if descriptor.kind == FieldKind.RADIO:
            own_value = node.get('value', 'on') if node is not None else 'on'
            wanted = value is True or str(value).strip() == own_value or (
                descriptor.label and str(value).strip().lower() == descriptor.label.lower()
            )
            if not wanted or descriptor.value:
                return False
            if native:
                await self.driver.set_value(descriptor.path, True)
            else:
                await self.driver.dispatch_click(descriptor.path)
            return True

        if descriptor.is_choice:
            return await self._apply_choice(descriptor, value, native)

        await self.driver.set_value(descriptor.path, value if descriptor.kind == FieldKind.FILE else str(value))
        return True

    async def _apply_choice(self, descriptor: FieldDescriptor, value: Any, native: bool) -> bool:
        raw_values = list(value) if isinstance(value, (list, tuple)) else [value]
        options = descriptor.options

        if options is None or not options.is_resolved:
            if descriptor.carrier:
                self.logger.info(f"Options of {descriptor.id} unavailable, writing raw value to its carrier")
                await self.driver.set_value(descriptor.carrier, str(raw_values[0]))
                return True
            error = OptionResolutionFailed(descriptor.id, reason="options unavailable and no raw value carrier")
            if descriptor.required:
                self.abandon(error)
                raise error
            self.logger.warning(f"Skipping unfillable choice field: {error}")
            return False

        chosen = [options.find(v) for v in raw_values]
        if any(option is None for option in chosen):
            missing = [v for v, option in zip(raw_values, chosen) if option is None]
            if descriptor.carrier:
                self.logger.info(f"Custom value {missing} for {descriptor.id}, writing it to the carrier")
                await self.driver.set_value(descriptor.carrier, str(raw_values[0]))
                return True
            self.logger.warning(f"No option of {descriptor.id} matches {missing}")
            return False

        if native:
            selected = [o.value for o in chosen]
            await self.driver.set_value(descriptor.path, selected if descriptor.kind == FieldKind.SELECT_MULTI else selected[0])
            return True
        if descriptor.carrier:
            await self.driver.set_value(descriptor.carrier, chosen[0].value)
            return True

        for option in chosen:
            if not await self.resolver.select(descriptor, option):
                self.logger.warning(f"Could not click option {option.value!r} of {descriptor.id}")
                return False
        return True

    def unfilled_required(self, snapshot: FormSnapshot) -> List[str]:
        """Ids of visible required fields with no value. A radio group counts once."""
        checked_groups = {f.name or f.id for f in snapshot.fields if f.kind == FieldKind.RADIO and f.value}
        seen_groups = set()
        missing = []
        for descriptor in snapshot.visible_fields:
            if not descriptor.required:
                continue
            if descriptor.kind == FieldKind.RADIO:
                group = descriptor.name or descriptor.id
                if group in checked_groups or group in seen_groups:
                    continue
                seen_groups.add(group)
            elif descriptor.is_filled:
                continue
            missing.append(descriptor.id)
        return missing

    async def _check_required(self) -> FormSnapshot:
        snapshot = self._with_cached_options(await self.watcher.settle(None))
        self.state.record(snapshot)
        missing = self.unfilled_required(snapshot)
        self.state.unfilled_required = missing
        if missing:
            error = RequiredFieldUnfillable(missing)
            self.abandon(error)
            raise error
        return snapshot

    # ------------------------------------------------------------------
    # Navigation and submission
    # ------------------------------------------------------------------

    async def navigate(self, target: str, page_id: Optional[str] = None) -> FormSnapshot:
        """Leave the current page through ``target`` and discover the next one."""
        self._require(SessionPhase.DISCOVERING, SessionPhase.FILLING)
        before = await self._check_required()

        await self.driver.dispatch_click(target)
        self.state.page_id = page_id or f"page-{len(self.state.history) + 1}"
        self.state.phase = SessionPhase.DISCOVERING
        self.state.rediscovery_count = 0
        self.resolver.cache.clear()
        self.logger.info(f"Navigated to {self.state.page_id}")

        def next_page(snapshot: FormSnapshot) -> bool:
            return at_least_one_field(snapshot) and (
                snapshot.location != before.location or snapshot.ids != before.ids
            )

        return await self.discover(next_page)

    async def submit(self, target: Optional[str] = None) -> FormSnapshot:
        """
        Submit the form and wait for the confirmation signature.

        Raises:
            RequiredFieldUnfillable: before anything is dispatched, if a visible
                required field has no value
            SubmissionNotConfirmed: if the signature never matched
        """
        self._require(SessionPhase.DISCOVERING, SessionPhase.FILLING)
        snapshot = await self._check_required()

        self.state.phase = SessionPhase.SUBMITTING
        target = target or find_submit_control(snapshot.document)
        if target is None:
            error = SessionStateError("No submit control found", phase=self.state.phase.value)
            self.abandon(error)
            raise error

        initial_location = snapshot.location
        initial_text = page_text(snapshot)
        last_location = initial_location
        for attempt in range(1, self.max_confirmation_attempts + 1):
            self.logger.info(f"Submitting via {target} (attempt {attempt}/{self.max_confirmation_attempts})")
            self.state.phase = SessionPhase.SUBMITTING
            await self.driver.dispatch_click(target)
            self.state.status = SessionStatus.SUBMITTED
            self.state.phase = SessionPhase.AWAITING_CONFIRMATION

            confirmed, last_location = await self._await_confirmation(
                initial_location, self.confirmation_timeout, initial_text)
            if confirmed is not None:
                return confirmed
            self.logger.warning(f"No confirmation after attempt {attempt}")

        error = SubmissionNotConfirmed(self.max_confirmation_attempts, last_location)
        self.abandon(error)
        raise error

    async def await_manual_submission(self, timeout: Optional[float] = None) -> FormSnapshot:
        """Wait for a person to submit the filled form in the browser."""
        self._require(SessionPhase.DISCOVERING, SessionPhase.FILLING)
        snapshot = self.snapshot or await self.discover()
        self.state.phase = SessionPhase.AWAITING_CONFIRMATION

        timeout = self.config['timeouts']['manual_submission'] if timeout is None else timeout
        confirmed, last_location = await self._await_confirmation(snapshot.location, timeout, page_text(snapshot))
        if confirmed is not None:
            return confirmed
        error = SubmissionNotConfirmed(0, last_location)
        self.abandon(error)
        raise error

    async def _await_confirmation(self, initial_location: str, timeout: float,
                                  initial_text: str = '') -> Tuple[Optional[FormSnapshot], str]:
        try:
            confirmed = await self.watcher.await_settled(
                predicate=lambda s: self.confirmation.matches(s, initial_location, initial_text),
                timeout=timeout,
            )
        except StabilityTimeout as e:
            if e.snapshot is None:
                return None, initial_location
            self.state.record(e.snapshot)
            return None, e.snapshot.location

        self.state.record(confirmed)
        self.state.status = SessionStatus.CONFIRMED
        self.state.phase = SessionPhase.CONFIRMED
        self.watcher.cancel()
        self.logger.info(f"Submission confirmed at {confirmed.location}")
        return confirmed, confirmed.location

    async def run(self, agent=None, submit_target: Optional[str] = None) -> SessionState:
        """Discover, fill and submit in one go."""
        if self.snapshot is None:
            await self.discover()
        await self.fill(agent)
        await self.submit(submit_target)
        return self.state

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def abandon(self, reason: Union[str, Dict[str, Any], FormDiscoveryError, None] = None) -> SessionState:
        """Stop the attempt; every poll of this session quiets promptly."""
        if not self.state.is_terminal:
            self.state.status = SessionStatus.ABANDONED
            self.state.phase = SessionPhase.ABANDONED
            self.state.reason = _to_reason(reason)
            self.logger.warning(f"Session abandoned: {self.state.reason}")
        self.watcher.cancel()
        return self.state

    def close(self) -> None:
        if self.closed:
            return
        if not self.state.is_terminal:
            self.state.status = SessionStatus.ABANDONED
            self.state.phase = SessionPhase.ABANDONED
            self.state.reason = {'error': 'session_closed', 'message': 'session closed before completion'}
            self.logger.info("Session closed before completion")
        self.watcher.cancel()
        self.closed = True
