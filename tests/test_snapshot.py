"""Tests for snapshot capture, diffing and ordinal compaction."""

import pytest

from form_discovery.models import FieldDescriptor, FieldKind, GroupRef
from form_discovery.snapshot import SnapshotCapturer, capture, compact_ordinals, diff

from tests.fake_document import FakeDocument, el


def experience_form():
    entries = [
        el('div',
           el('input', type='text', name=f'exp[{i}][title]', value=title),
           el('input', type='text', name=f'exp[{i}][company]', value=company),
           class_='entry')
        for i, title, company in ((1, 'Engineer', 'Acme'), (2, 'Analyst', 'Globex'), (3, 'Intern', 'Initech'))
    ]
    return FakeDocument(el('div', *entries, id='experience')), entries


def conditional_form():
    details = el(
        'div',
        el('input', type='text', name='employer', required=''),
        el('input', type='text', name='role', required=''),
        el('input', type='month', name='start', required=''),
        id='details', visible=False,
    )
    trigger = el('select',
                 el('option', text='No', value='no'),
                 el('option', text='Yes', value='yes'),
                 id='employed', name='employed')
    trigger.on_change = lambda value: setattr(details, 'visible', value == 'yes')
    return FakeDocument(el('form', trigger, details)), trigger


class TestCapture:

    @pytest.mark.asyncio
    async def test_capture_is_idempotent(self):
        """Two captures with no mutation in between agree on everything but the revision."""
        doc, _ = experience_form()
        capturer = SnapshotCapturer()

        first = capturer.capture(await doc.read_structure())
        second = capturer.capture(await doc.read_structure())

        assert first.same_structure(second)
        assert first.ids == second.ids
        assert second.revision > first.revision
        assert diff(first, second).is_empty

    @pytest.mark.asyncio
    async def test_capture_does_not_touch_the_document(self):
        doc, _ = experience_form()
        capture(await doc.read_structure())

        assert doc.clicks == []
        assert doc.values == []

    @pytest.mark.asyncio
    async def test_duplicate_ids_are_made_unique(self):
        doc = FakeDocument(
            el('input', type='text', name='phone'),
            el('input', type='text', name='phone'),
        )
        snapshot = capture(await doc.read_structure())

        assert snapshot.ids == ('phone', 'phone_2')

    @pytest.mark.asyncio
    async def test_to_dict_counts_visible_required_fields(self):
        doc, _ = conditional_form()
        data = capture(await doc.read_structure()).to_dict()

        assert data['total_fields'] == 4
        assert data['required_fields'] == 0
        assert data['fields'][0]['options'][1] == {'text': 'Yes', 'value': 'yes'}


class TestDiff:

    @pytest.mark.asyncio
    async def test_reveal_then_hide(self):
        """Toggling the trigger reports the group as appeared, then as disappeared."""
        doc, trigger = conditional_form()
        capturer = SnapshotCapturer()
        group = ('employer', 'role', 'start')

        initial = capturer.capture(await doc.read_structure())
        await doc.set_value(doc.path_of(trigger), 'yes')
        revealed = capturer.capture(await doc.read_structure())
        await doc.set_value(doc.path_of(trigger), 'no')
        hidden = capturer.capture(await doc.read_structure())

        shown = diff(initial, revealed)
        assert shown.appeared == group
        assert shown.disappeared == ()
        assert shown.changes_visibility

        gone = diff(revealed, hidden)
        assert gone.disappeared == group
        assert gone.appeared == ()
        assert gone.removed == ()
        assert [f for f in hidden.visible_fields if f.id in group] == []

    @pytest.mark.asyncio
    async def test_removed_fields(self):
        doc, entries = experience_form()
        before = capture(await doc.read_structure())
        doc.find('experience').remove(entries[1])
        after = capture(await doc.read_structure())

        delta = diff(before, after)
        assert delta.removed == ('exp[2][title]', 'exp[2][company]')
        assert delta.disappeared == ('exp[2][title]', 'exp[2][company]')

    @pytest.mark.asyncio
    async def test_changed_required(self):
        doc = FakeDocument(el('input', type='text', name='city', id='city'))
        before = capture(await doc.read_structure())
        doc.find('city').attrs['aria-required'] = 'true'
        after = capture(await doc.read_structure())

        assert diff(before, after).changed_required == ('city',)


class TestRepeatGroupRenumbering:

    @pytest.mark.asyncio
    async def test_removing_middle_entry_compacts_ordinals(self):
        """{1,2,3} minus 2 leaves {1,2}, and each entry keeps its values."""
        doc, entries = experience_form()
        before = capture(await doc.read_structure())
        assert sorted({f.group.ordinal for f in before.fields}) == [1, 2, 3]

        doc.find('experience').remove(entries[1])
        after = capture(await doc.read_structure())

        assert sorted({f.group.ordinal for f in after.fields}) == [1, 2]
        assert after.get('exp[1][title]').group == GroupRef('exp', 1)
        assert after.get('exp[3][title]').group == GroupRef('exp', 2)
        assert after.get('exp[3][title]').value == 'Intern'
        assert after.get('exp[3][company]').value == 'Initech'
        assert after.get('exp[1][company]').value == 'Acme'


def test_compact_ordinals_preserves_relative_order():
    def field(field_id, ordinal):
        return FieldDescriptor(id=field_id, kind=FieldKind.TEXT, required=False, visible=True,
                               path=field_id, group=GroupRef('edu', ordinal))

    compacted = compact_ordinals([field('a', 2), field('b', 5), field('c', 5), field('d', 9)])

    assert [f.group.ordinal for f in compacted] == [1, 2, 2, 3]
