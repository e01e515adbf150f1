"""Tests for field and option records."""

from form_discovery.models import (
    FieldConstraints,
    FieldDescriptor,
    FieldKind,
    GroupRef,
    Option,
    OptionSet,
    ResolutionState,
)


def descriptor(**overrides):
    values = dict(id='email', kind=FieldKind.EMAIL, required=True, visible=True, path='html > body:nth-child(2) > input:nth-child(1)')
    values.update(overrides)
    return FieldDescriptor(**values)


class TestOptionSet:

    def test_find_matches_value_then_label(self):
        options = OptionSet.resolved([Option('us', 'United States'), Option('ca', 'Canada')], 'direct')

        assert options.find('ca') == Option('ca', 'Canada')
        assert options.find('united states') == Option('us', 'United States')
        assert options.find(' CA ') == Option('ca', 'Canada')
        assert options.find('Mexico') is None
        assert options.find(None) is None

    def test_failed_set_is_empty(self):
        failed = OptionSet.failed()
        assert failed.state == ResolutionState.FAILED
        assert not failed.is_resolved
        assert list(failed) == []

    def test_unresolved_by_default(self):
        assert OptionSet().state == ResolutionState.UNRESOLVED


class TestFieldDescriptor:

    def test_is_filled(self):
        assert not descriptor(value='').is_filled
        assert descriptor(value='a@b.c').is_filled
        assert not descriptor(kind=FieldKind.CHECKBOX, value=False).is_filled
        assert descriptor(kind=FieldKind.RADIO, value=True).is_filled
        assert not descriptor(kind=FieldKind.SELECT_MULTI, value=()).is_filled
        assert descriptor(kind=FieldKind.SELECT_MULTI, value=('a',)).is_filled

    def test_accepts_raw_value(self):
        assert descriptor().accepts_raw_value
        assert not descriptor(kind=FieldKind.SELECT_SINGLE).accepts_raw_value
        assert descriptor(kind=FieldKind.CHOICE_CUSTOM, carrier='html > input:nth-child(1)').accepts_raw_value

    def test_to_dict(self):
        field = descriptor(
            id='exp[1][level]',
            kind=FieldKind.CHOICE_CUSTOM,
            required=False,
            name='exp[1][level]',
            label='Level',
            group=GroupRef('exp', 1),
            local_id='level',
            carrier='html > input:nth-child(1)',
            options=OptionSet.resolved([Option('jr', 'Junior')], 'triggered-portal'),
        )
        data = field.to_dict()

        assert data['type'] == 'choice-custom'
        assert data['group'] == {'key': 'exp', 'ordinal': 1, 'local_id': 'level'}
        assert data['options'] == [{'text': 'Junior', 'value': 'jr'}]
        assert data['resolution_state'] == 'resolved'
        assert data['supports_custom_input'] is True
        assert 'constraints' not in data


def test_constraints_to_dict_drops_empty_entries():
    constraints = FieldConstraints(pattern='[0-9]+', accept=('.pdf',))
    assert constraints.to_dict() == {'pattern': '[0-9]+', 'accept': ['.pdf']}
    assert FieldConstraints().to_dict() == {}


def test_choice_kinds():
    assert FieldKind.SELECT_MULTI.is_choice
    assert FieldKind.CHOICE_CUSTOM.is_choice
    assert not FieldKind.TEXTAREA.is_choice
