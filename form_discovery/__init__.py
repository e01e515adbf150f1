"""
Form Discovery Engine

Structural discovery of fillable fields on live, dynamically changing web
forms: native, ARIA and custom/portal-rendered controls, conditional and
repeating sections, and a session that fills and submits with confirmation.

Usage:
    pip install form-discovery-engine
    form-discovery-extract https://company.com/careers/apply
    form-discovery-mcp
"""

__version__ = "1.0.0"

from .agents import Agent, DictAgent, TemplateAgent
from .classifier import ConditionalRule, FieldClassifier, classify_document
from .config import DEFAULT_CONFIG, build_config, load_config
from .driver import OUTSIDE, Driver, ElementNode, PlaywrightDriver
from .exceptions import (
    ClassificationAmbiguous,
    FormDiscoveryError,
    OptionResolutionFailed,
    OverlayStateError,
    PollingCancelled,
    RequiredFieldUnfillable,
    SessionStateError,
    StabilityTimeout,
    SubmissionNotConfirmed,
)
from .form_extractor import FormExtractor
from .form_filler import FormFiller
from .models import FieldConstraints, FieldDescriptor, FieldKind, GroupRef, Option, OptionSet, ResolutionState
from .options import NOT_APPLICABLE, OptionDependency, OptionResolver
from .session import ConfirmationSignature, FormSession, SessionPhase, SessionState, SessionStatus
from .snapshot import FormSnapshot, SnapshotDiff, capture, diff
from .stability import StabilityWatcher

__all__ = [
    "Agent",
    "ClassificationAmbiguous",
    "ConditionalRule",
    "ConfirmationSignature",
    "DEFAULT_CONFIG",
    "DictAgent",
    "Driver",
    "ElementNode",
    "FieldClassifier",
    "FieldConstraints",
    "FieldDescriptor",
    "FieldKind",
    "FormDiscoveryError",
    "FormExtractor",
    "FormFiller",
    "FormSession",
    "FormSnapshot",
    "GroupRef",
    "NOT_APPLICABLE",
    "OUTSIDE",
    "Option",
    "OptionDependency",
    "OptionResolutionFailed",
    "OptionResolver",
    "OptionSet",
    "OverlayStateError",
    "PlaywrightDriver",
    "PollingCancelled",
    "RequiredFieldUnfillable",
    "ResolutionState",
    "SessionPhase",
    "SessionState",
    "SessionStateError",
    "SessionStatus",
    "SnapshotDiff",
    "StabilityTimeout",
    "StabilityWatcher",
    "SubmissionNotConfirmed",
    "TemplateAgent",
    "build_config",
    "capture",
    "classify_document",
    "diff",
    "load_config",
]
