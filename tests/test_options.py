"""Tests for the option resolver strategy chain."""

import asyncio

import pytest

from form_discovery.driver import OUTSIDE, ElementNode
from form_discovery.exceptions import OverlayStateError
from form_discovery.models import Option, OptionSet, ResolutionState
from form_discovery.options import OptionDependency, OptionResolver, option_from_node
from form_discovery.snapshot import SnapshotCapturer, capture
from form_discovery.stability import StabilityWatcher

from tests.fake_document import (
    FakeDocument,
    close_portal_on_outside_click,
    custom_select,
    el,
    local_options,
    portal_options,
)


def make_resolver(doc, config):
    watcher = StabilityWatcher(doc, SnapshotCapturer(), config)
    return OptionResolver(doc, watcher, config)


def portal_form(delay_ms=150, close_on_outside=True):
    portal_root = el('div', id='portal-root')
    country = custom_select('country', 'country', 'Country')
    language = custom_select('language', 'language', 'Language')
    doc = FakeDocument(el('form', country, language), portal_root)
    portal_options(doc, country, portal_root, [('ca', 'Canada'), ('mx', 'Mexico'), ('us', 'United States')],
                   delay_ms=delay_ms)
    portal_options(doc, language, portal_root, [('en', 'English'), ('fr', 'French')], delay_ms=delay_ms,
                   list_class='popover-list')
    if close_on_outside:
        close_portal_on_outside_click(doc, portal_root)
    return doc, portal_root


class TestDirectStrategy:

    @pytest.mark.asyncio
    async def test_native_select_resolves_without_interaction(self, fast_config):
        doc = FakeDocument(el(
            'select',
            el('option', text='Select...', value=''),
            el('option', text='Canada', value='ca'),
            el('option', text='Mexico', value='mx'),
            id='country', name='country',
        ))
        field = capture(await doc.read_structure()).get('country')
        # Already resolved at capture time
        assert field.options.is_resolved

        options = await make_resolver(doc, fast_config).resolve(field)

        assert options.strategy == 'direct'
        assert options.values == ('ca', 'mx')
        assert doc.clicks == []
        assert doc.values == []

    @pytest.mark.asyncio
    async def test_non_choice_field_is_rejected(self, fast_config):
        doc = FakeDocument(el('input', type='text', name='city'))
        field = capture(await doc.read_structure()).get('city')

        with pytest.raises(ValueError):
            await make_resolver(doc, fast_config).resolve(field)


class TestTriggeredStrategies:

    @pytest.mark.asyncio
    async def test_portal_options_arrive_after_delay(self, fast_config):
        """Resolution takes at least the render delay and stays within the bound."""
        doc, portal_root = portal_form(delay_ms=150)
        field = capture(await doc.read_structure()).get('country')
        resolver = make_resolver(doc, fast_config)

        loop = asyncio.get_running_loop()
        start = loop.time()
        options = await resolver.resolve(field)
        elapsed = loop.time() - start

        assert options.state == ResolutionState.RESOLVED
        assert options.strategy == 'triggered-portal'
        assert options.values == ('ca', 'mx', 'us')
        assert [o.label for o in options] == ['Canada', 'Mexico', 'United States']
        assert 0.15 <= elapsed < 0.15 + 1.0

        # The overlay was closed after reading
        assert doc.clicks == [field.path, OUTSIDE]
        assert portal_root.children == []
        assert resolver.open_field is None

    @pytest.mark.asyncio
    async def test_second_dropdown_sees_only_its_own_options(self, fast_config):
        doc, _ = portal_form()
        snapshot = capture(await doc.read_structure())
        resolver = make_resolver(doc, fast_config)

        country = await resolver.resolve(snapshot.get('country'))
        language = await resolver.resolve(snapshot.get('language'))

        assert country.values == ('ca', 'mx', 'us')
        assert language.values == ('en', 'fr')

    @pytest.mark.asyncio
    async def test_overlay_left_open_is_not_read_again(self, fast_config):
        """A list that survives the close click is part of the baseline for the next field."""
        doc, portal_root = portal_form(close_on_outside=False)
        snapshot = capture(await doc.read_structure())
        resolver = make_resolver(doc, fast_config)

        await resolver.resolve(snapshot.get('country'))
        assert len(portal_root.children) == 1

        language = await resolver.resolve(snapshot.get('language'))
        assert language.values == ('en', 'fr')

    @pytest.mark.asyncio
    async def test_local_options_render_inside_the_widget(self, fast_config):
        widget = custom_select('team', 'team', 'Team', control_class='team-picker-toggle')
        doc = FakeDocument(el('form', widget))
        local_options(doc, widget, lambda: [('eng', 'Engineering'), ('ops', 'Operations')])
        field = capture(await doc.read_structure()).get('team')

        options = await make_resolver(doc, fast_config).resolve(field)

        assert options.strategy == 'triggered-local'
        assert options.values == ('eng', 'ops')
        assert [child.tag for child in widget.children] == ['div', 'input']

    @pytest.mark.asyncio
    async def test_nothing_renders_then_resolution_fails(self, fast_config):
        fast_config['timeouts']['option_resolution'] = 200
        widget = custom_select('team', 'team', 'Team')
        doc = FakeDocument(el('form', widget))
        field = capture(await doc.read_structure()).get('team')
        resolver = make_resolver(doc, fast_config)

        options = await resolver.resolve(field)

        assert options.state == ResolutionState.FAILED
        assert len(options) == 0
        # One attempt plus one retry
        assert doc.clicks.count(field.path) == 2
        assert resolver.cache['team'].state == ResolutionState.FAILED

    @pytest.mark.asyncio
    async def test_resolved_options_are_cached(self, fast_config):
        doc, _ = portal_form()
        field = capture(await doc.read_structure()).get('country')
        resolver = make_resolver(doc, fast_config)

        first = await resolver.resolve(field)
        clicks = len(doc.clicks)
        second = await resolver.resolve(field)

        assert second is first
        assert len(doc.clicks) == clicks


class TestOverlayDiscipline:

    @pytest.mark.asyncio
    async def test_second_open_before_close_is_an_error(self, fast_config):
        doc, _ = portal_form()
        snapshot = capture(await doc.read_structure())
        resolver = make_resolver(doc, fast_config)

        await resolver.open(snapshot.get('country'))
        with pytest.raises(OverlayStateError):
            await resolver.open(snapshot.get('language'))

        await resolver.close()
        assert resolver.open_field is None
        await resolver.open(snapshot.get('language'))
        await resolver.close()


class TestDependencies:

    def test_trigger_change_invalidates_dependent_options(self, fast_config):
        resolver = OptionResolver(FakeDocument(), None, fast_config,
                                  dependencies=[OptionDependency(field='city', trigger='region')])
        resolver.cache['city'] = OptionSet.resolved([Option('ny', 'New York')], 'triggered-local')

        assert resolver.on_value_changed('region') == ['city']
        assert resolver.cache['city'].state == ResolutionState.UNRESOLVED
        assert resolver.on_value_changed('name') == []


class TestOptionExtraction:

    def test_value_attribute_wins_over_data_value_and_text(self):
        node = ElementNode('li', {'value': 'v1', 'data-value': 'd1'}, text='Label')
        assert option_from_node(node) == Option('v1', 'Label')

    def test_data_value_then_text(self):
        assert option_from_node(ElementNode('li', {'data-value': 'd1'}, text='Label')) == Option('d1', 'Label')
        assert option_from_node(ElementNode('li', {'data-option-value': 'o1'}, text='X')) == Option('o1', 'X')
        assert option_from_node(ElementNode('li', {}, text='  Plain  ')) == Option('Plain', 'Plain')

    def test_placeholders_are_skipped(self):
        assert option_from_node(ElementNode('option', {'value': ''}, text='Select...')) is None
        assert option_from_node(ElementNode('li', {}, text='Choose...')) is None

    def test_duplicate_values_keep_the_first(self):
        options = OptionSet.resolved([Option('a', 'A'), Option('a', 'Again'), Option('b', 'B')], 'direct')
        assert [o.label for o in options] == ['A', 'B']
