#!/usr/bin/env python3
"""
Form Extractor - discover every fillable field of a live form and save it as JSON.

Output contains the field inventory (id, label, type, required, options) plus a
``user_input_template`` with empty values for the caller to fill in.
"""

import asyncio
import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from .classifier import ConditionalRule, humanize
from .config import build_config, load_config
from .driver import PlaywrightDriver
from .log_config import configure_logging
from .models import FieldDescriptor, FieldKind
from .options import OptionDependency
from .session import FormSession
from .snapshot import FormSnapshot

logger = logging.getLogger(__name__)


def generate_user_input_template(fields: Sequence[FieldDescriptor]) -> List[Dict[str, Any]]:
    """Generate a user input template with questions and empty values for user to fill."""
    template = []
    radio_groups: Dict[str, Dict[str, Any]] = {}

    for field in fields:
        if not field.visible:
            continue
        if field.kind == FieldKind.RADIO and field.name:
            # One question per radio group, its buttons are the options
            group_field = radio_groups.get(field.name)
            if group_field is None:
                group_field = radio_groups[field.name] = {
                    'id': field.name,
                    'question': humanize(field.name),
                    'value': '',
                    'required': field.required,
                    'type': field.kind.value,
                    'available_options': [],
                }
                if field.group is not None:
                    group_field['group'] = field.group.key
                    group_field['ordinal'] = field.group.ordinal
                template.append(group_field)
            group_field['required'] = group_field['required'] or field.required
            group_field['available_options'].append(field.label or field.id)
            continue

        template_field = {
            'id': field.id,
            'question': field.label,
            'value': '',
            'required': field.required,
            'type': field.kind.value,
        }
        if field.group is not None:
            template_field['group'] = field.group.key
            template_field['ordinal'] = field.group.ordinal

        # Add options for choice fields to help user choose
        if field.is_choice and field.options is not None and field.options.is_resolved:
            template_field['available_options'] = [o.label for o in field.options]
            if field.carrier:
                template_field['supports_custom_input'] = True
                template_field['note'] = 'You can type a custom value if your option is not listed.'
        elif field.is_choice:
            # For dropdowns without extracted options
            template_field['supports_custom_input'] = field.accepts_raw_value
            template_field['note'] = 'Type the value that matches your specific case.'

        if field.kind == FieldKind.FILE and field.constraints.accept:
            template_field['accepted_file_types'] = list(field.constraints.accept)

        template.append(template_field)

    return template


def build_form_data(url: str, snapshot: FormSnapshot, page_title: str = '') -> Dict[str, Any]:
    """Serialise one discovered inventory into the extractor's JSON shape."""
    data = snapshot.to_dict()
    data.update({
        'url': url,
        'page_title': page_title,
        'timestamp': datetime.now().isoformat(),
        'ambiguous_elements': list(snapshot.ambiguous),
        'user_input_template': generate_user_input_template(snapshot.fields),
    })
    return data


def save_form_data(form_data: Dict[str, Any], filename: Optional[str] = None, directory: Optional[Path] = None) -> Path:
    """Write ``form_data`` as JSON and return the file path."""
    if filename is None:
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
        filename = f"form_data_{timestamp}.json"
    path = Path(directory or '.') / filename
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(form_data, f, indent=2, ensure_ascii=False)
    return path


class FormExtractor:
    def __init__(self, config=None, rules: Sequence[ConditionalRule] = (),
                 dependencies: Sequence[OptionDependency] = ()):
        self.logger = logger
        self.config = build_config(config)
        self.rules = [r if isinstance(r, ConditionalRule) else ConditionalRule.from_dict(r) for r in rules]
        self.dependencies = list(dependencies)

    async def extract_form_data(self, url: str) -> Dict[str, Any]:
        """Open ``url``, wait for the form to settle and return its inventory."""
        async with PlaywrightDriver.launch(self.config) as driver:
            self.logger.info(f"Navigating to: {url}")
            await driver.navigate(url)

            try:
                page_title = await driver.page.title()
                self.logger.info(f"Page title: {page_title}")
            except Exception as e:
                self.logger.debug(f"Could not read page title: {e}")
                page_title = ''

            async with FormSession(driver, config=self.config, rules=self.rules,
                                   dependencies=self.dependencies) as session:
                snapshot = await session.discover()

            form_data = build_form_data(url, snapshot, page_title)
            self.logger.info(
                f"Extracted {form_data['total_fields']} fields "
                f"({form_data['required_fields']} required, {len(snapshot.ambiguous)} ambiguous)"
            )
            return form_data


async def main():
    if len(sys.argv) not in [2, 3]:
        print("Usage: form-discovery-extract <url> [config_file]")
        print("Example: form-discovery-extract https://example.com/apply config.json")
        sys.exit(1)

    configure_logging('form_extractor')
    url = sys.argv[1]
    config = load_config(sys.argv[2] if len(sys.argv) == 3 else None)
    extractor = FormExtractor(
        config,
        rules=config.get('conditional_rules', ()),
        dependencies=[OptionDependency(**d) for d in config.get('option_dependencies', ())],
    )

    try:
        form_data = await extractor.extract_form_data(url)
        path = save_form_data(form_data)

        print(f"Form data extracted and saved to {path}")
        print(f"Found {form_data['total_fields']} fields ({form_data['required_fields']} required)")
        print("\nFields Preview:")
        for i, field in enumerate(form_data['fields'][:5], 1):
            req_indicator = " *" if field.get('required') else ""
            options_info = f" ({len(field['options'])} options)" if field.get('options') else ""
            print(f"  {i}. {field['label']} ({field['type']}){req_indicator}{options_info}")

        if len(form_data['fields']) > 5:
            print(f"  ... and {len(form_data['fields']) - 5} more fields")

    except Exception as e:
        logger.error(f"Error extracting form data: {e}")
        sys.exit(1)


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
