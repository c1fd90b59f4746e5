"""Tests for the challenge lifecycle controller.

These tests drive ChallengeController against MockGateway and assert both
the returned snapshot and the resulting remote state.
"""

from __future__ import annotations

import threading

import pytest
from ctfd_mock import MockGateway, make_challenge

from ctfd_operator.codec import InvariantViolation
from ctfd_operator.lifecycle import ChallengeController, describe_changes
from ctfd_operator.models import (
    ChallengeModel,
    ChallengeVisibility,
    FileModel,
    FlagModel,
    RequirementsBehavior,
    RequirementsModel,
)


@pytest.fixture
def controller(mock_gateway: MockGateway, fake_reader) -> ChallengeController:
    return ChallengeController(mock_gateway, file_reader=fake_reader)


@pytest.fixture
def full_challenge(file_contents: dict[str, bytes]) -> ChallengeModel:
    file_contents["/x/a.txt"] = b"alpha"
    file_contents["/x/b.txt"] = b"beta"
    return make_challenge(
        flag={"flag": "CTF{warm}"},
        tags=["web", "http"],
        topics=["sqli"],
        files=[
            {"name": "a.txt", "path": "/x/a.txt"},
            {"name": "b.txt", "path": "/x/b.txt"},
        ],
        requirements={"behavior": "anonymized", "prerequisites": [1]},
    )


class TestCreateAll:
    """Tests for ChallengeController.create_all()."""

    def test_creates_everything(
        self,
        controller: ChallengeController,
        mock_gateway: MockGateway,
        full_challenge: ChallengeModel,
    ) -> None:
        """Test that the challenge and every subresource are created."""
        result, diags = controller.create_all(full_challenge)

        assert not diags
        assert result is not None
        assert result.id is not None
        assert result.flag == full_challenge.flag
        assert result.tags == ["web", "http"]
        assert result.topics == ["sqli"]
        assert [f.name for f in result.files] == ["a.txt", "b.txt"]
        assert all(f.id is not None for f in result.files)
        assert result.requirements == full_challenge.requirements

        state = mock_gateway.state
        assert state.challenges[result.id]["requirements"] == {
            "prerequisites": [1],
            "anonymize": True,
        }
        assert state.tag_values(result.id) == ["web", "http"]
        assert state.topic_values(result.id) == ["sqli"]
        assert state.file_names(result.id) == ["a.txt", "b.txt"]
        assert len(state.flags_of(result.id)) == 1

    def test_creation_order(
        self,
        controller: ChallengeController,
        mock_gateway: MockGateway,
        full_challenge: ChallengeModel,
    ) -> None:
        """Test that the root comes first, then flag, tags, topics and files."""
        controller.create_all(full_challenge)

        kinds = [c.kind for c in mock_gateway.calls]
        assert kinds == ["challenge", "flag", "tag", "tag", "topic", "file", "file"]

    def test_root_failure_creates_nothing(
        self,
        controller: ChallengeController,
        mock_gateway: MockGateway,
        full_challenge: ChallengeModel,
    ) -> None:
        """Test that no subresource is attempted without the challenge."""
        mock_gateway.fail("create", "challenge")

        result, diags = controller.create_all(full_challenge)

        assert result is None
        assert len(diags.errors) == 1
        assert len(mock_gateway.calls) == 1

    def test_created_without_id_reports_possible_orphan(
        self,
        controller: ChallengeController,
        mock_gateway: MockGateway,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Test that a creation response without an ID warns about an untracked challenge."""
        monkeypatch.setattr(mock_gateway, "create_challenge", lambda payload: {"name": "x"})

        result, diags = controller.create_all(make_challenge(tags=["a"]))

        assert result is None
        assert len(diags.errors) == 1
        assert diags.errors[0].summary == "Unexpected API Response"
        assert "orphan" in diags.errors[0].detail
        assert mock_gateway.calls == []

    def test_sibling_kinds_continue(
        self,
        controller: ChallengeController,
        mock_gateway: MockGateway,
        full_challenge: ChallengeModel,
    ) -> None:
        """Test that a failing tag does not prevent topics and files."""
        mock_gateway.fail("create", "tag")

        result, diags = controller.create_all(full_challenge)

        assert result is not None
        assert result.tags == []
        assert result.topics == ["sqli"]
        assert len(result.files) == 2
        assert len(diags.errors) == 1

    def test_flag_failure_leaves_no_flag(
        self,
        controller: ChallengeController,
        mock_gateway: MockGateway,
        full_challenge: ChallengeModel,
    ) -> None:
        """Test that a flag that was not created is not recorded."""
        mock_gateway.fail("create", "flag")

        result, diags = controller.create_all(full_challenge)

        assert result is not None
        assert result.flag is None
        assert diags.has_error()


class TestUpdateAll:
    """Tests for ChallengeController.update_all()."""

    def test_unchanged_declaration_is_stable(
        self,
        controller: ChallengeController,
        mock_gateway: MockGateway,
        full_challenge: ChallengeModel,
    ) -> None:
        """Test that re-applying the same declaration keeps the remote content."""
        created, _ = controller.create_all(full_challenge)
        assert created is not None
        challenge_id = created.id
        mock_gateway.reset_calls()

        result, diags = controller.update_all(created, full_challenge)

        assert not diags
        assert result == created
        assert mock_gateway.state.tag_values(challenge_id) == ["web", "http"]
        assert mock_gateway.state.topic_values(challenge_id) == ["sqli"]
        assert mock_gateway.calls_for(kind="file") == []
        assert mock_gateway.calls_for(kind="flag") == []

    def test_tag_scenario(
        self,
        controller: ChallengeController,
        mock_gateway: MockGateway,
    ) -> None:
        """Test that removing one tag deletes all and recreates the rest."""
        created, _ = controller.create_all(make_challenge(tags=["web", "http"]))
        assert created is not None
        mock_gateway.reset_calls()

        result, _ = controller.update_all(created, make_challenge(tags=["web"]))

        assert len(mock_gateway.calls_for(verb="delete", kind="tag")) == 2
        creates = mock_gateway.calls_for(verb="create", kind="tag")
        assert [c.payload["value"] for c in creates] == ["web"]
        assert result.tags == ["web"]

    def test_file_scenario(
        self,
        controller: ChallengeController,
        mock_gateway: MockGateway,
        file_contents: dict[str, bytes],
    ) -> None:
        """Test that a moved file is deleted by its old id and uploaded again."""
        file_contents["/x/a.txt"] = b"x"
        file_contents["/y/a.txt"] = b"y"
        created, _ = controller.create_all(
            make_challenge(files=[{"name": "a", "path": "/x/a.txt"}])
        )
        assert created is not None
        old_id = created.files[0].id
        mock_gateway.reset_calls()

        result, diags = controller.update_all(
            created, make_challenge(files=[{"name": "a", "path": "/y/a.txt"}])
        )

        file_calls = mock_gateway.calls_for(kind="file")
        assert [(c.verb, c.target) for c in file_calls] == [
            ("delete", old_id),
            ("create", created.id),
        ]
        assert len(result.files) == 1
        assert result.files[0].id != old_id
        assert not diags

    def test_scalars_patched(
        self,
        controller: ChallengeController,
        mock_gateway: MockGateway,
    ) -> None:
        """Test that scalar attributes are sent and recorded."""
        created, _ = controller.create_all(make_challenge())
        assert created is not None

        result, diags = controller.update_all(
            created, make_challenge(value=250, state="visible", description="new")
        )

        assert not diags
        assert result.value == 250
        assert result.state == ChallengeVisibility.VISIBLE
        assert result.id == created.id
        record = mock_gateway.state.challenges[created.id]
        assert record["value"] == 250
        assert record["state"] == "visible"

    def test_scalar_failure_keeps_old(
        self,
        controller: ChallengeController,
        mock_gateway: MockGateway,
    ) -> None:
        """Test that a failed PATCH keeps old scalars but still reconciles subresources."""
        created, _ = controller.create_all(make_challenge())
        assert created is not None
        mock_gateway.fail("patch", "challenge", times=1)

        result, diags = controller.update_all(created, make_challenge(value=999, tags=["new"]))

        assert result.value == 100
        assert result.tags == ["new"]
        assert len(diags.errors) == 1

    def test_requirements_replaced(
        self,
        controller: ChallengeController,
        mock_gateway: MockGateway,
    ) -> None:
        """Test that requirements are replaced on update and cleared when removed."""
        created, _ = controller.create_all(make_challenge())
        assert created is not None

        updated, _ = controller.update_all(
            created, make_challenge(requirements={"prerequisites": [3]})
        )
        assert updated.requirements == RequirementsModel(
            behavior=RequirementsBehavior.HIDDEN, prerequisites=[3]
        )

        cleared, _ = controller.update_all(updated, make_challenge())
        assert cleared.requirements is None
        assert mock_gateway.state.challenges[created.id]["requirements"] == {
            "prerequisites": [],
            "anonymize": None,
        }

    def test_flag_change_is_warning(
        self,
        controller: ChallengeController,
        mock_gateway: MockGateway,
    ) -> None:
        """Test that a changed flag is reported and not applied."""
        created, _ = controller.create_all(make_challenge(flag={"flag": "old"}))
        assert created is not None

        result, diags = controller.update_all(created, make_challenge(flag={"flag": "new"}))

        assert result.flag == FlagModel(content="old")
        assert not diags.has_error()
        assert diags.warnings[0].summary == "Flag Not Updated"
        assert mock_gateway.state.flags_of(created.id)[0]["content"] == "old"

    def test_update_without_id_is_invariant_violation(
        self, controller: ChallengeController
    ) -> None:
        """Test that updating something never created fails fast."""
        with pytest.raises(InvariantViolation):
            controller.update_all(make_challenge(), make_challenge())


class TestDeleteAll:
    """Tests for ChallengeController.delete_all()."""

    def test_flag_deleted_before_challenge(
        self,
        controller: ChallengeController,
        mock_gateway: MockGateway,
    ) -> None:
        """Test the delete order and the cascade of other subresources."""
        created, _ = controller.create_all(make_challenge(flag={"flag": "x"}, tags=["a"]))
        assert created is not None
        mock_gateway.reset_calls()

        diags = controller.delete_all(created)

        assert not diags
        assert [(c.verb, c.kind) for c in mock_gateway.calls] == [
            ("delete", "flag"),
            ("delete", "challenge"),
        ]
        assert created.id not in mock_gateway.state.challenges
        assert mock_gateway.state.tag_values(created.id) == []

    def test_flag_failure_is_warning(
        self,
        controller: ChallengeController,
        mock_gateway: MockGateway,
    ) -> None:
        """Test that the challenge is deleted even when the flag delete fails."""
        created, _ = controller.create_all(make_challenge(flag={"flag": "x"}))
        assert created is not None
        mock_gateway.fail("delete", "flag")

        diags = controller.delete_all(created)

        assert len(diags) == 1
        assert len(diags.warnings) == 1
        assert not diags.has_error()
        assert created.id not in mock_gateway.state.challenges

    def test_no_flag_no_flag_call(
        self,
        controller: ChallengeController,
        mock_gateway: MockGateway,
    ) -> None:
        """Test that no flag delete is attempted without a known flag."""
        created, _ = controller.create_all(make_challenge())
        assert created is not None
        mock_gateway.reset_calls()

        controller.delete_all(created)

        assert [c.kind for c in mock_gateway.calls] == ["challenge"]

    def test_already_gone_is_warning(
        self,
        controller: ChallengeController,
        mock_gateway: MockGateway,
    ) -> None:
        """Test that deleting a vanished challenge only warns."""
        diags = controller.delete_all(make_challenge(id=41))

        assert not diags.has_error()
        assert diags.warnings[0].summary == "Challenge Not Found"

    def test_root_failure_is_error(
        self,
        controller: ChallengeController,
        mock_gateway: MockGateway,
    ) -> None:
        """Test that a failed challenge delete fails the pass."""
        created, _ = controller.create_all(make_challenge())
        assert created is not None
        mock_gateway.fail("delete", "challenge")

        diags = controller.delete_all(created)

        assert diags.has_error()
        assert created.id in mock_gateway.state.challenges


class TestReadAll:
    """Tests for ChallengeController.read_all()."""

    def test_refresh_matches_applied(
        self,
        controller: ChallengeController,
        full_challenge: ChallengeModel,
    ) -> None:
        """Test that reading back an applied challenge reproduces its snapshot."""
        created, _ = controller.create_all(full_challenge)
        assert created is not None

        result, diags = controller.read_all(created.id, created)

        assert not diags
        assert result == created

    def test_out_of_band_changes_visible(
        self,
        controller: ChallengeController,
        mock_gateway: MockGateway,
    ) -> None:
        """Test that remote edits show up in the refreshed snapshot."""
        created, _ = controller.create_all(make_challenge(tags=["a"]))
        assert created is not None
        mock_gateway.state.challenges[created.id]["value"] = 42
        mock_gateway.state.add_tag(created.id, "b")

        result, _ = controller.read_all(created.id, created)

        assert result.value == 42
        assert result.tags == ["a", "b"]

    def test_flag_kept_from_previous(
        self,
        controller: ChallengeController,
    ) -> None:
        """Test that the unreadable flag is never overwritten."""
        created, _ = controller.create_all(make_challenge(flag={"flag": "keep"}))
        assert created is not None

        result, _ = controller.read_all(created.id, created)

        assert result.flag == FlagModel(content="keep")

    def test_hidden_without_prerequisites_survives_refresh(
        self,
        controller: ChallengeController,
    ) -> None:
        """Test that declared empty hidden requirements read back unchanged."""
        declared = make_challenge(requirements={"behavior": "hidden", "prerequisites": []})
        created, _ = controller.create_all(declared)
        assert created is not None

        result, diags = controller.read_all(created.id, created)

        assert not diags
        assert result.requirements == RequirementsModel(
            behavior=RequirementsBehavior.HIDDEN, prerequisites=[]
        )
        assert describe_changes(result, declared) == []

    def test_cleared_requirements_not_reported_as_drift(
        self,
        controller: ChallengeController,
    ) -> None:
        """Test that cleared requirements read back as equivalent to none."""
        created, _ = controller.create_all(make_challenge(requirements={"prerequisites": [3]}))
        assert created is not None
        cleared, _ = controller.update_all(created, make_challenge())

        result, _ = controller.read_all(cleared.id, cleared)

        assert result.requirements == RequirementsModel(prerequisites=[])
        assert describe_changes(result, make_challenge()) == []

    def test_import(
        self,
        controller: ChallengeController,
        mock_gateway: MockGateway,
    ) -> None:
        """Test importing a challenge that was never applied."""
        challenge_id = mock_gateway.state.add_challenge(
            name="legacy",
            category="web",
            value=300,
            state="visible",
            requirements={"prerequisites": [5], "anonymize": None},
        )
        mock_gateway.state.add_tag(challenge_id, "old")
        mock_gateway.state.add_file(challenge_id, "dump.sql")

        result, diags = controller.read_all(challenge_id)

        assert not diags
        assert result is not None
        assert result.id == challenge_id
        assert result.name == "legacy"
        assert result.flag is None
        assert result.tags == ["old"]
        assert result.requirements == RequirementsModel(prerequisites=[5])
        assert [f.name for f in result.files] == ["dump.sql"]
        assert result.files[0].path is None

    def test_vanished_challenge(self, controller: ChallengeController) -> None:
        """Test that a deleted challenge reads as no snapshot with a warning."""
        result, diags = controller.read_all(77)

        assert result is None
        assert not diags.has_error()
        assert diags.warnings[0].summary == "Challenge Not Found"

    def test_failed_kind_keeps_previous(
        self,
        controller: ChallengeController,
        mock_gateway: MockGateway,
    ) -> None:
        """Test that one unreadable kind does not stop the others."""
        created, _ = controller.create_all(make_challenge(tags=["a"], topics=["t"]))
        assert created is not None
        mock_gateway.fail("list", "tag")
        mock_gateway.state.add_topic(created.id, "u")

        result, diags = controller.read_all(created.id, created)

        assert result.tags == ["a"]
        assert result.topics == ["t", "u"]
        assert len(diags.errors) == 1

    def test_invalid_anonymize_is_invariant_violation(
        self,
        controller: ChallengeController,
        mock_gateway: MockGateway,
    ) -> None:
        """Test that anonymize=false fails the read loudly."""
        challenge_id = mock_gateway.state.add_challenge(
            requirements={"prerequisites": [1], "anonymize": False}
        )

        with pytest.raises(InvariantViolation):
            controller.read_all(challenge_id)


class TestCancellation:
    """Tests for cooperative cancellation."""

    def test_stops_issuing_calls(
        self,
        mock_gateway: MockGateway,
        fake_reader,
        full_challenge: ChallengeModel,
    ) -> None:
        """Test that cancellation keeps committed entries and issues nothing more."""
        cancel = threading.Event()
        controller = ChallengeController(mock_gateway, file_reader=fake_reader, cancel_event=cancel)

        def cancel_after_first_tag(call) -> None:
            if call.kind == "tag":
                cancel.set()

        mock_gateway.on_call = cancel_after_first_tag

        result, diags = controller.create_all(full_challenge)

        assert result is not None
        assert result.id in mock_gateway.state.challenges
        assert result.flag == full_challenge.flag
        assert result.tags == ["web"]
        assert result.topics == []
        assert result.files == []
        assert diags.errors[-1].summary == "Reconciliation Cancelled"
        assert [c.kind for c in mock_gateway.calls] == ["challenge", "flag", "tag"]
        assert mock_gateway.state.tag_values(result.id) == ["web"]

    def test_cancel_before_start(
        self,
        controller: ChallengeController,
        mock_gateway: MockGateway,
    ) -> None:
        """Test that a cancelled controller issues no call at all."""
        controller.cancel()

        result, diags = controller.create_all(make_challenge())

        assert result is None
        assert diags.has_error()
        assert mock_gateway.calls == []


class TestDescribeChanges:
    """Tests for describe_changes()."""

    def test_new_challenge(self) -> None:
        """Test the plan for a challenge never applied."""
        new = make_challenge(files=[{"name": "a", "path": "a"}])

        assert describe_changes(None, new) == ["create challenge", "upload file a"]

    def test_up_to_date(self) -> None:
        """Test that an applied, unchanged challenge needs nothing."""
        applied = make_challenge(
            id=3,
            tags=["x"],
            files=[{"name": "a", "path": "a", "id": 9}],
        )
        new = make_challenge(tags=["x"], files=[{"name": "a", "path": "a"}])

        assert describe_changes(applied, new) == []

    def test_changes(self) -> None:
        """Test that every changed kind is listed."""
        applied = make_challenge(
            id=3,
            tags=["x"],
            flag={"flag": "a"},
            files=[
                FileModel(name="gone", path="g", id=1).model_dump(),
                FileModel(name="moved", path="m1", id=2).model_dump(),
            ],
        )
        new = make_challenge(
            value=5,
            tags=["y"],
            flag={"flag": "b"},
            requirements={"prerequisites": [1]},
            files=[{"name": "moved", "path": "m2"}, {"name": "fresh", "path": "f"}],
        )

        actions = describe_changes(applied, new)

        assert actions == [
            "update challenge attributes: value",
            "replace tags",
            "delete file gone",
            "replace file moved",
            "upload file fresh",
            "replace requirements",
            "ignore flag change (flags are only set at creation)",
        ]
