"""
Contract tests for the MCP tool surface.

Each tool returns a JSON-ready dictionary: ``success`` is always present,
failures carry a stable error ``code`` and an actionable ``suggestion``,
and no tool raises for a caller mistake.
"""

import json

import pytest

import main
from specgate.config import PROJECT_ROOT_ENV


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch):
    """Keep the caller's SPECGATE_* settings and cached engines out of the tests."""
    for name in (
        PROJECT_ROOT_ENV,
        "SPECGATE_STORAGE_DIR",
        "SPECGATE_APPROVAL_PHASES",
        "SPECGATE_DEFAULT_AUTHOR",
        "SPECGATE_CACHE_TTL",
        "SPECGATE_LOCK_TIMEOUT",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(main, "_ENGINES", {})


@pytest.fixture
def root(tmp_path):
    return str(tmp_path)


class TestInitializeSpecContract:
    """Contract for initialize_spec."""

    def test_creates_spec(self, root):
        """
        Given: An empty project
        When: initialize_spec is called with a valid name
        Then: The spec is reported in the init phase with its next action
        """
        result = main.initialize_spec("user-auth", "User authentication", author="alice", root=root)

        assert result["success"] is True
        assert result["current_phase"] == "init"
        assert result["record"]["metadata"]["author"] == "alice"
        assert result["next_action"]["action"] == "Enter requirements phase"
        json.dumps(result)

    def test_duplicate(self, root):
        main.initialize_spec("user-auth", "User authentication", root=root)

        result = main.initialize_spec("user-auth", "Again", root=root)

        assert result["success"] is False
        assert result["code"] == "DUPLICATE_NAME"
        assert "get_spec_status" in result["suggestion"]

    def test_invalid_name(self, root):
        result = main.initialize_spec("../escape", "nope", root=root)

        assert result["success"] is False
        assert result["code"] == "INVALID_NAME"


class TestTransitionContract:
    """Contract for request_transition, record_approval and validate_phase_transition."""

    @pytest.fixture
    def in_requirements(self, root):
        main.initialize_spec("user-auth", "User authentication", root=root)
        main.request_transition("user-auth", "requirements", root=root)
        return root

    def test_approval_required_guidance(self, in_requirements):
        """
        Given: A spec in requirements without approval
        When: The design phase is requested
        Then: The failure names the approval tool to call
        """
        result = main.request_transition("user-auth", "design", root=in_requirements)

        assert result["success"] is False
        assert result["code"] == "APPROVAL_REQUIRED"
        assert result["error"] == "Approval required before entering design"
        assert "record_approval" in result["suggestion"]
        assert result["details"]["phase"] == "design"

    def test_approve_then_transition(self, in_requirements):
        approval = main.record_approval("user-auth", "design", "bob", "approved", root=in_requirements)
        assert approval["success"] is True
        assert approval["next_suggested_step"] == "request_transition"

        result = main.request_transition("user-auth", "design", actor="bob", root=in_requirements)

        assert result["success"] is True
        assert result["current_phase"] == "design"

    def test_rejection_suggests_new_review(self, in_requirements):
        result = main.record_approval("user-auth", "design", "bob", "rejected", comments="Vague", root=in_requirements)

        assert result["success"] is True
        assert result["approval"]["decision"] == "rejected"
        assert result["next_suggested_step"] == "record_approval"

    def test_invalid_decision(self, in_requirements):
        result = main.record_approval("user-auth", "design", "bob", "maybe", root=in_requirements)

        assert result["code"] == "INVALID_DECISION"

    def test_illegal_transition(self, in_requirements):
        result = main.request_transition("user-auth", "complete", root=in_requirements)

        assert result["success"] is False
        assert result["code"] == "ILLEGAL_TRANSITION"

    def test_validate_phase_transition(self, in_requirements):
        result = main.validate_phase_transition("user-auth", "design", root=in_requirements)

        assert result["success"] is True
        assert result["valid"] is False
        assert result["requires_approval"] is True

    def test_unknown_spec(self, root):
        result = main.request_transition("missing", "requirements", root=root)

        assert result["code"] == "NOT_FOUND"
        assert "initialize_spec" in result["suggestion"]


class TestProgressAndFilesContract:
    """Contract for update_phase_progress and update_file_refs."""

    def test_update_phase_progress(self, root):
        main.initialize_spec("user-auth", "User authentication", root=root)
        main.request_transition("user-auth", "requirements", root=root)

        result = main.update_phase_progress("user-auth", "requirements", True, root=root)

        assert result["success"] is True
        assert result["record"]["workflow"]["phases"]["requirements"]["status"] == "completed"
        assert result["next_action"]["approval_guidance"]

    def test_update_file_refs(self, root):
        main.initialize_spec("user-auth", "User authentication", root=root)

        result = main.update_file_refs(
            "user-auth",
            {"requirements": {"path": "specs/user-auth/requirements.md", "size": 10, "exists": True}},
            root=root,
        )

        assert result["success"] is True
        assert result["record"]["files"]["requirements"]["exists"] is True

    def test_update_file_refs_unknown_document(self, root):
        main.initialize_spec("user-auth", "User authentication", root=root)

        result = main.update_file_refs("user-auth", {"plan": {}}, root=root)

        assert result["code"] == "INVALID_DOCUMENT"


class TestReadToolsContract:
    """Contract for status, listing, history and guide tools."""

    def test_get_spec_status(self, root):
        main.initialize_spec("user-auth", "User authentication", root=root)

        result = main.get_spec_status("user-auth", root=root)

        assert result["success"] is True
        assert result["current_phase"] == "init"
        assert result["recent_events"][0]["action"] == "spec_initialized"

    def test_list_specs(self, root):
        assert main.list_specs(root=root)["count"] == 0

        main.initialize_spec("zeta", "Z", root=root)
        main.initialize_spec("alpha", "A", root=root)
        result = main.list_specs(root=root)

        assert [spec["name"] for spec in result["specs"]] == ["zeta", "alpha"]

    def test_get_workflow_history(self, root):
        main.initialize_spec("user-auth", "User authentication", root=root)
        main.request_transition("user-auth", "requirements", root=root)

        result = main.get_workflow_history("user-auth", limit=1, root=root)

        assert [event["action"] for event in result["events"]] == ["phase_transition"]

    def test_get_workflow_guide(self, root):
        guide = main.get_workflow_guide(root=root)

        assert len(guide["steps"]) == 5
        assert guide["steps"][2]["requires_approval"] is True

    def test_specs_resource(self, tmp_path, monkeypatch):
        monkeypatch.setenv(PROJECT_ROOT_ENV, str(tmp_path))
        main.initialize_spec("user-auth", "User authentication", root=str(tmp_path))

        text = main.resource_specs()

        assert "user-auth: User authentication" in text
        assert "Phase: init" in text

    def test_specs_resource_reports_corrupt_state(self, tmp_path, monkeypatch):
        """
        Given: A project whose state directory holds a damaged record
        When: The specs resource is read
        Then: It returns the error and a repair suggestion instead of raising
        """
        monkeypatch.setenv(PROJECT_ROOT_ENV, str(tmp_path))
        main.initialize_spec("user-auth", "User authentication", root=str(tmp_path))
        corrupt = tmp_path / ".specgate" / "state" / "spec-x.json"
        corrupt.write_text("{not json", encoding="utf-8")

        text = main.resource_specs()

        assert "not valid JSON" in text
        assert "Repair or restore the state file" in text
        assert "spec-x.json" in text


class TestRootResolution:
    """Contract for locating the project root."""

    def test_missing_root_is_rejected(self, tmp_path):
        with pytest.raises(ValueError, match="does not exist"):
            main.list_specs(root=str(tmp_path / "nowhere"))

    def test_root_from_environment(self, tmp_path, monkeypatch):
        monkeypatch.setenv(PROJECT_ROOT_ENV, str(tmp_path))
        main.initialize_spec("user-auth", "User authentication")

        assert (tmp_path / ".specgate" / "state" / "spec-user-auth.json").exists()

    def test_marker_directory_detection(self, tmp_path, monkeypatch):
        """A .specgate directory in a parent marks the project root."""
        (tmp_path / ".specgate").mkdir()
        nested = tmp_path / "src" / "pkg"
        nested.mkdir(parents=True)
        monkeypatch.chdir(nested)

        main.initialize_spec("user-auth", "User authentication")

        assert (tmp_path / ".specgate" / "state" / "spec-user-auth.json").exists()
