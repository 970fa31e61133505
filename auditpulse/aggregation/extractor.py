"""
Display-string identifier extraction.

Audit display strings are free text and inconsistent across vendor releases.
Patterns are tried in order and the first match wins; "not found" is an
ordinary result (None), and a match is a best guess, never a unique key.

    "Changed custom field Discount__c on object Opportunity from ..."
    "Changed validation rule Require_Reason on object Case."
    "Created version 12 of flow Approve_Discount"
    "Activated flow Approve_Discount"
"""

import re
from dataclasses import dataclass
from typing import Callable, Optional


@dataclass(frozen=True)
class ExtractedIdentifier:
    """Identifiers needed for a follow-up metadata lookup."""
    name: str
    metadata_type: str
    object_name: Optional[str] = None
    version: Optional[int] = None

    @property
    def qualified_name(self) -> str:
        if self.object_name:
            return f"{self.object_name}.{self.name}"
        return self.name


def _field(m: re.Match) -> ExtractedIdentifier:
    # DeveloperName drops the custom suffix
    return ExtractedIdentifier(
        name=re.sub(r"__c$", "", m.group(1)),
        metadata_type="CustomField",
        object_name=m.group(2),
    )


def _validation_rule(m: re.Match) -> ExtractedIdentifier:
    return ExtractedIdentifier(
        name=m.group(1), metadata_type="ValidationRule", object_name=m.group(2)
    )


def _flow_version(m: re.Match) -> ExtractedIdentifier:
    return ExtractedIdentifier(
        name=m.group(2), metadata_type="FlowDefinition", version=int(m.group(1))
    )


def _flow(m: re.Match) -> ExtractedIdentifier:
    return ExtractedIdentifier(name=m.group(1), metadata_type="FlowDefinition")


def _permission_set(m: re.Match) -> ExtractedIdentifier:
    return ExtractedIdentifier(name=m.group(1), metadata_type="PermissionSet")


def _custom_object(m: re.Match) -> ExtractedIdentifier:
    return ExtractedIdentifier(name=m.group(1), metadata_type="CustomObject")


# Dotted names are allowed, a trailing sentence period is not
_NAME = r"([\w-]+(?:\.[\w-]+)*)"

_Rule = tuple[re.Pattern, Callable[[re.Match], ExtractedIdentifier]]

_PATTERNS: list[_Rule] = [
    (re.compile(rf"custom (?:formula )?field\s+{_NAME}\s+on object\s+{_NAME}", re.I), _field),
    (re.compile(rf"validation rule\s+{_NAME}\s+on object\s+{_NAME}", re.I), _validation_rule),
    (re.compile(rf"version\s+#?(\d+)\s+of\s+flow\s+{_NAME}", re.I), _flow_version),
    (re.compile(rf"\b(?:flow|interview)[:\s]+{_NAME}", re.I), _flow),
    (re.compile(rf"permission set\s+{_NAME}", re.I), _permission_set),
    (re.compile(rf"custom object\s*:?\s*{_NAME}", re.I), _custom_object),
]

_PATTERNS_BY_TYPE: dict[str, list[_Rule]] = {
    "CustomField": _PATTERNS[0:1],
    "ValidationRule": _PATTERNS[1:2],
    "FlowDefinition": _PATTERNS[2:4],
    "PermissionSet": _PATTERNS[4:5],
    "CustomObject": _PATTERNS[5:6],
}


def extract_identifier(
    display_text: str, metadata_type: Optional[str] = None
) -> Optional[ExtractedIdentifier]:
    """
    Return the first pattern match in display_text, or None.

    When metadata_type has patterns of its own only those are tried, so a
    permission change that mentions "Run Flow" is never read as a flow.
    Types without patterns (or no type) try every pattern in order.
    """
    if not display_text:
        return None
    patterns = _PATTERNS_BY_TYPE.get(metadata_type, _PATTERNS)
    for pattern, build in patterns:
        match = pattern.search(display_text)
        if match:
            return build(match)
    return None
