"""
Tests for display-string identifier extraction.

Covers:
- Field, validation rule, flow (with version), permission set, object
- Pattern order (first match wins), trailing punctuation
- Patterns scoped to the classified metadata type
- No match returns None
"""

from auditpulse.aggregation.extractor import extract_identifier


class TestExtractIdentifier:
    def test_custom_field_on_object(self):
        ident = extract_identifier(
            "Changed custom field Discount__c on object Opportunity from 10 to 20"
        )
        assert ident.name == "Discount"
        assert ident.object_name == "Opportunity"
        assert ident.metadata_type == "CustomField"
        assert ident.qualified_name == "Opportunity.Discount"

    def test_formula_field(self):
        ident = extract_identifier("Changed custom formula field Margin__c on object Quote")
        assert ident.qualified_name == "Quote.Margin"

    def test_validation_rule(self):
        ident = extract_identifier("Changed validation rule Require_Reason on object Case.")
        assert ident.metadata_type == "ValidationRule"
        assert ident.qualified_name == "Case.Require_Reason"

    def test_flow_version(self):
        ident = extract_identifier("Created version 12 of flow Approve_Discount")
        assert ident.name == "Approve_Discount"
        assert ident.version == 12
        assert ident.metadata_type == "FlowDefinition"

    def test_flow_version_with_hash(self):
        ident = extract_identifier("Activated version #4 of flow Route_Cases")
        assert ident.version == 4
        assert ident.name == "Route_Cases"

    def test_flow_without_version(self):
        ident = extract_identifier("Activated flow Approve_Discount")
        assert ident.name == "Approve_Discount"
        assert ident.version is None

    def test_permission_set(self):
        ident = extract_identifier("Permission set Sales_Ops: enabled Modify All Data")
        assert ident.name == "Sales_Ops"
        assert ident.metadata_type == "PermissionSet"

    def test_custom_object(self):
        ident = extract_identifier("Created custom object: Invoice__c")
        assert ident.name == "Invoice__c"
        assert ident.metadata_type == "CustomObject"

    def test_no_match(self):
        assert extract_identifier("Logged in as another user") is None

    def test_empty(self):
        assert extract_identifier("") is None

    def test_trailing_period_not_captured(self):
        ident = extract_identifier("Activated flow Approve_Discount.")
        assert ident.name == "Approve_Discount"

    def test_dotted_name_kept(self):
        ident = extract_identifier("Changed custom field Region__c on object ns.Account_Plan.")
        assert ident.object_name == "ns.Account_Plan"
        assert ident.qualified_name == "ns.Account_Plan.Region"


# ── Type-scoped Extraction ─────────────────────────────────────────────


class TestTypedExtraction:
    def test_permission_text_mentioning_flow(self):
        ident = extract_identifier(
            "Changed permission set Sales_Ops: enabled Run Flow access", "PermissionSet"
        )
        assert ident.name == "Sales_Ops"
        assert ident.metadata_type == "PermissionSet"

    def test_untyped_first_match_still_wins(self):
        ident = extract_identifier("Changed permission set Sales_Ops: enabled Run Flow access")
        assert ident.metadata_type == "FlowDefinition"

    def test_other_type_patterns_not_tried(self):
        assert extract_identifier("Activated flow Approve_Discount", "PermissionSet") is None

    def test_type_without_patterns_tries_all(self):
        ident = extract_identifier("Activated flow Approve_Discount", "Metadata")
        assert ident.name == "Approve_Discount"
