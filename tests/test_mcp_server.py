"""Tests for the MCP tool surface."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from form_discovery import __version__, mcp_server
from form_discovery.exceptions import StabilityTimeout


@pytest.fixture
def output_dir(tmp_path, monkeypatch):
    monkeypatch.setattr(mcp_server, 'OUTPUT_DIR', tmp_path)
    return tmp_path


def extracted(url):
    return {
        'url': url,
        'page_title': 'Apply',
        'timestamp': '2026-01-01T00:00:00',
        'total_fields': 2,
        'required_fields': 1,
        'ambiguous_elements': [],
        'fields': [],
        'user_input_template': [{'id': 'email', 'question': 'Email', 'value': '', 'required': True, 'type': 'email'}],
    }


class TestDiscoverFormFields:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kwargs", [
        {},
        {'url': 'ftp://example.com/form'},
        {'urls': [f'https://example.com/{i}' for i in range(6)]},
    ])
    async def test_invalid_input(self, kwargs):
        result = await mcp_server.discover_form_fields(**kwargs)

        assert result['status'] == 'error'
        assert result['results'] == []

    @pytest.mark.asyncio
    async def test_partial_success(self, output_dir):
        async def extract(url):
            if url.endswith('/broken'):
                raise StabilityTimeout(10000)
            return extracted(url)

        with patch.object(mcp_server, 'FormExtractor') as extractor_cls:
            extractor_cls.return_value.extract_form_data = AsyncMock(side_effect=extract)
            result = await mcp_server.discover_form_fields(
                urls=['https://example.com/apply', 'https://example.com/broken'],
            )

        assert result['status'] == 'partial'
        assert (result['succeeded'], result['failed']) == (1, 1)
        ok, failed = result['results']
        assert ok['user_input_template'][0]['id'] == 'email'
        assert ok['extracted_data_path'].startswith(str(output_dir))
        assert failed['error_details']['error'] == 'stability_timeout'


class TestFillForm:

    @pytest.mark.asyncio
    async def test_missing_keys(self):
        result = await mcp_server.fill_form({'url': 'https://example.com/apply'})

        assert result['status'] == 'error'
        assert 'user_input_template' in result['message']

    @pytest.mark.asyncio
    async def test_template_must_be_a_list(self):
        result = await mcp_server.fill_form({'url': 'https://example.com/apply', 'user_input_template': {}})
        assert result['status'] == 'error'

    @pytest.mark.asyncio
    async def test_submit_waits_for_the_result(self, output_dir):
        form_data = extracted('https://example.com/apply')
        form_data['user_input_template'][0]['value'] = 'ada@example.com'
        session = {'status': 'confirmed', 'filled': ['email']}

        with patch.object(mcp_server, 'FormFiller') as filler_cls:
            filler_cls.return_value.fill_form = AsyncMock(return_value=session)
            result = await mcp_server.fill_form(form_data, submit=True)

        assert result['status'] == 'confirmed'
        assert result['fields_to_fill'] == 1
        assert result['session'] == session
        assert mcp_server.form_filling_state['browser_active'] is False
        assert mcp_server.form_filling_state['last_result'] == session
        # The temporary input file is removed afterwards
        assert list(output_dir.glob('temp_form_data_*.json')) == []

    @pytest.mark.asyncio
    async def test_background_fill_is_held_until_done(self, output_dir):
        form_data = extracted('https://example.com/apply')
        release = asyncio.Event()

        async def fill_form(path, submit=False):
            await release.wait()
            return {'status': 'abandoned'}

        with patch.object(mcp_server, 'FormFiller') as filler_cls:
            filler_cls.return_value.fill_form = fill_form
            result = await mcp_server.fill_form(form_data)

            assert result['status'] == 'started'
            (task,) = mcp_server._background_tasks
            await asyncio.sleep(0)
            assert mcp_server.form_filling_state['browser_active'] is True

            release.set()
            await task

        assert mcp_server._background_tasks == set()
        assert mcp_server.form_filling_state['last_result'] == {'status': 'abandoned'}
        assert mcp_server.form_filling_state['browser_active'] is False


@pytest.mark.asyncio
async def test_health_check():
    result = await mcp_server.health_check()

    assert result['status'] == 'healthy'
    assert result['version'] == __version__
    assert set(result['tools_available']) == {'discover_form_fields', 'fill_form', 'health_check'}


def test_server_info_lists_tools():
    info = mcp_server.get_server_info()
    assert 'discover_form_fields' in info
    assert f'Version: {__version__}' in info
