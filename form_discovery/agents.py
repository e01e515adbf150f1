"""Agent collaborators: map discovered fields onto raw values."""

import json
import logging
import os
from typing import Any, Dict, List, Optional, Protocol

from .exceptions import FormDiscoveryError
from .models import FieldDescriptor, FieldKind

logger = logging.getLogger(__name__)

TRUTHY = {'true', 'yes', 'y', '1', 'on', 'checked', 'agree', 'i agree'}


class Agent(Protocol):
    """Value-mapping layer. ``value_for`` may be a plain or an async method."""

    def value_for(self, field: FieldDescriptor) -> Any:
        ...


class DictAgent:
    """Answers from a plain ``{field id: value}`` mapping."""

    def __init__(self, values: Dict[str, Any]):
        self.values = dict(values)

    def value_for(self, field: FieldDescriptor) -> Any:
        return self.values.get(field.id)


class TemplateAgent:
    """Answers from a filled ``user_input_template`` as written by the extractor."""

    def __init__(self, entries: List[Dict[str, Any]]):
        self.logger = logger
        self.entries = list(entries)
        self._by_id = {entry['id']: entry for entry in self.entries if entry.get('id')}
        self._by_question = {
            str(entry.get('question', '')).strip().lower(): entry
            for entry in self.entries if entry.get('question')
        }

    @classmethod
    def from_file(cls, json_file_path: str) -> "TemplateAgent":
        """Load and validate a filled form JSON file."""
        if not os.path.exists(json_file_path):
            raise FormDiscoveryError(f"JSON file not found: {json_file_path}", path=json_file_path)

        with open(json_file_path, 'r', encoding='utf-8') as f:
            try:
                data = json.load(f)
            except json.JSONDecodeError as e:
                raise FormDiscoveryError(f"Invalid JSON format: {e}", path=json_file_path) from e

        if 'user_input_template' not in data:
            raise FormDiscoveryError("Missing required key in JSON: user_input_template", path=json_file_path)

        agent = cls(data['user_input_template'])
        agent.form_data = data
        logger.info(f"Loaded {len(agent.entries)} template entries from {json_file_path}")
        return agent

    def _entry_for(self, field: FieldDescriptor) -> Optional[Dict[str, Any]]:
        entry = self._by_id.get(field.id)
        if entry is None and field.name:
            # Radio groups are written as one entry keyed by the group name
            entry = self._by_id.get(field.name)
        if entry is None and field.label:
            entry = self._by_question.get(field.label.strip().lower())
        return entry

    def value_for(self, field: FieldDescriptor) -> Any:
        entry = self._entry_for(field)
        if entry is None:
            return None

        value = entry.get('value')
        if value is None or (isinstance(value, str) and not value.strip()):
            if entry.get('required'):
                self.logger.warning(f"Required field is empty: {field.id}")
            return None

        if field.kind == FieldKind.CHECKBOX:
            return value if isinstance(value, bool) else str(value).strip().lower() in TRUTHY
        if field.kind == FieldKind.SELECT_MULTI and isinstance(value, str):
            return [part.strip() for part in value.split(',') if part.strip()]
        if isinstance(value, str):
            return value.strip()
        return value
