"""
Change Classifier — maps a raw event's action code to a change category.

Pure, total and deterministic. Matching is exact on the vendor action code
(contract-stable identifiers), never substring or case-folded. Each rule owns
a disjoint set of codes; adding a vendor code is a table edit.
"""

from typing import NamedTuple

from auditpulse.schemas import ChangeCategory, RawEvent


class ClassificationRule(NamedTuple):
    category: ChangeCategory
    action_codes: frozenset[str]


# ── Rule Table ─────────────────────────────────────────────────────────

CLASSIFICATION_RULES: tuple[ClassificationRule, ...] = (
    ClassificationRule(ChangeCategory.FLOW, frozenset({
        "ChangedFlow",
        "createdinteractiondefinition",
        "createdinteractiondefversion",
        "changedinteractiondefversion",
        "activatedinteractiondefversion",
        "deactivatedinteractiondefversion",
        "deletedinteractiondefversion",
    })),
    ClassificationRule(ChangeCategory.PERMISSION, frozenset({
        "PermSetCreate",
        "PermSetDelete",
        "PermSetAssign",
        "PermSetUnassign",
        "PermSetEnableUserPerm",
        "PermSetDisableUserPerm",
        "PermSetFlsChanged",
        "PermSetEntityPermChanged",
        "profilePermChangedCustom",
        "profileFlsChanged",
        "changedProfileAssignment",
    })),
    ClassificationRule(ChangeCategory.OBJECT, frozenset({
        "createdCustEnt",
        "changedCustEntLabel",
        "deletedCustEnt",
        "createdCF",
        "deletedCF",
        "changedCFLabel",
        "changedCFType",
    })),
    ClassificationRule(ChangeCategory.VALIDATION_RULE, frozenset({
        "newValidation",
        "changedValidationFormula",
        "changedValidationMessage",
        "changedValidationActive",
        "deletedValidation",
    })),
    ClassificationRule(ChangeCategory.FORMULA_FIELD, frozenset({
        "createdCFFormula",
        "changedCFFormula",
    })),
    ClassificationRule(ChangeCategory.METADATA, frozenset({
        "createdApexClass",
        "changedApexClass",
        "deletedApexClass",
        "createdApexTrigger",
        "changedApexTrigger",
        "deletedApexTrigger",
        "changedCustomLabel",
        "createdCustomMetadataType",
        "changedRemoteSiteSetting",
    })),
)

# Metadata type used in coalescing keys and metadata lookups
CATEGORY_METADATA_TYPES: dict[ChangeCategory, str] = {
    ChangeCategory.FLOW: "FlowDefinition",
    ChangeCategory.PERMISSION: "PermissionSet",
    ChangeCategory.OBJECT: "CustomObject",
    ChangeCategory.VALIDATION_RULE: "ValidationRule",
    ChangeCategory.FORMULA_FIELD: "CustomField",
    ChangeCategory.METADATA: "Metadata",
}


def _check_disjoint(rules: tuple[ClassificationRule, ...]) -> None:
    seen: dict[str, ChangeCategory] = {}
    for rule in rules:
        if rule.category == ChangeCategory.IGNORED:
            raise ValueError("Ignored is the fallthrough category, not a rule")
        for code in rule.action_codes:
            if code in seen:
                raise ValueError(
                    f"Action code '{code}' mapped to both "
                    f"{seen[code]} and {rule.category}"
                )
            seen[code] = rule.category


_check_disjoint(CLASSIFICATION_RULES)


def classify_action(action_code: str) -> ChangeCategory:
    """First rule whose code set contains action_code; Ignored otherwise."""
    for rule in CLASSIFICATION_RULES:
        if action_code in rule.action_codes:
            return rule.category
    return ChangeCategory.IGNORED


def classify(event: RawEvent) -> ChangeCategory:
    return classify_action(event.action_code)


def metadata_type_for(category: ChangeCategory) -> str:
    return CATEGORY_METADATA_TYPES.get(category, "Unknown")
