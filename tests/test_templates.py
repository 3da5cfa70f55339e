"""Unit tests for the template registry."""

import pytest

from stackset_rollout.stackset.models import TemplateRef
from stackset_rollout.stackset.templates import (
    DuplicateNameError,
    InvalidTemplateError,
    TemplateNotFoundError,
    TemplateRegistry,
)


BODY = "AWSTemplateFormatVersion: '2010-09-09'\nResources: {}\n"
NEW_BODY = "AWSTemplateFormatVersion: '2010-09-09'\nResources:\n  Topic:\n    Type: AWS::SNS::Topic\n"


class TestTemplateRegistry:
    """Test cases for TemplateRegistry class."""

    def setup_method(self):
        """Set up test fixtures."""
        self.registry = TemplateRegistry()

    def test_register_and_get(self):
        ref = self.registry.register("baseline", BODY, ["CAPABILITY_NAMED_IAM"], {"Env": "prod"})

        template = self.registry.get(ref)

        assert template.name == "baseline"
        assert template.body == BODY
        assert template.capabilities == ("CAPABILITY_NAMED_IAM",)
        assert template.parameters == {"Env": "prod"}
        assert ref.version == template.version

    def test_register_identical_content_is_idempotent(self):
        first = self.registry.register("baseline", BODY, ["CAPABILITY_IAM"])
        second = self.registry.register("baseline", BODY, ["CAPABILITY_IAM"])

        assert first == second
        assert self.registry.versions("baseline") == [first]

    def test_register_different_content_raises_duplicate_name(self):
        self.registry.register("baseline", BODY)

        with pytest.raises(DuplicateNameError, match="already registered"):
            self.registry.register("baseline", NEW_BODY)

    def test_register_with_update_keeps_old_versions(self):
        first = self.registry.register("baseline", BODY)
        second = self.registry.register("baseline", NEW_BODY, update=True)

        assert first != second
        assert self.registry.get(first).body == BODY
        assert self.registry.latest("baseline").body == NEW_BODY
        assert self.registry.versions("baseline") == [first, second]

    def test_register_unknown_capability(self):
        with pytest.raises(InvalidTemplateError, match="Unknown capabilities"):
            self.registry.register("baseline", BODY, ["CAPABILITY_EVERYTHING"])

    def test_register_empty_body(self):
        with pytest.raises(InvalidTemplateError, match="empty body"):
            self.registry.register("baseline", "   ")

    def test_get_unknown_ref(self):
        with pytest.raises(TemplateNotFoundError):
            self.registry.get(TemplateRef(name="missing", version="abc"))

    def test_latest_unknown_name(self):
        with pytest.raises(TemplateNotFoundError):
            self.registry.latest("missing")

    def test_register_file(self, tmp_path):
        path = tmp_path / "baseline.yaml"
        path.write_text(BODY, encoding="utf-8")

        ref = self.registry.register_file("baseline", path, ["CAPABILITY_IAM"])

        assert self.registry.get(ref).body == BODY

    def test_register_missing_file(self, tmp_path):
        with pytest.raises(InvalidTemplateError, match="Unable to read template file"):
            self.registry.register_file("baseline", tmp_path / "missing.yaml")
