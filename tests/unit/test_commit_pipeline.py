"""Unit tests for the CommitPipeline component."""

import pytest

from portfolio_sync.exceptions import (
    ChangeValidationError,
    ConcurrentModificationError,
    RemoteRequestError,
)
from portfolio_sync.models.commit import CommitAuthor, CommitOptions
from portfolio_sync.models.file_change import ChangeOperation, FileChange
from portfolio_sync.services.commit_pipeline import CommitPipeline, validate_changes


def update(path, content=b"x"):
    return FileChange(path=path, operation=ChangeOperation.UPDATE, content=content)


def delete(path):
    return FileChange(path=path, operation=ChangeOperation.DELETE)


@pytest.fixture
def pipeline(github_client):
    return CommitPipeline(github_client, max_file_size=1024)


class TestValidateChanges:
    """Batch validation happens before any remote call."""

    @pytest.mark.parametrize("path", [
        "../etc/passwd",
        "content/../../secret",
        "/absolute/path.json",
        "a//b.json",
        "./data.json",
        "dir\\file.json",
        "nul\x00byte",
        "",
        "a" * 4097,
    ])
    def test_rejects_unsafe_paths(self, path):
        with pytest.raises(ChangeValidationError):
            validate_changes([update(path)], max_file_size=1024)

    def test_rejects_empty_batch(self):
        with pytest.raises(ChangeValidationError, match="nothing to commit"):
            validate_changes([], max_file_size=1024)

    def test_rejects_duplicate_paths(self):
        with pytest.raises(ChangeValidationError) as exc_info:
            validate_changes([update("a.json"), delete("a.json")], max_file_size=1024)
        assert exc_info.value.index == 1

    def test_rejects_missing_content(self):
        change = FileChange(path="a.json", operation=ChangeOperation.CREATE)
        with pytest.raises(ChangeValidationError, match="content is required"):
            validate_changes([change], max_file_size=1024)

    def test_rejects_delete_with_content(self):
        change = FileChange(path="a.json", operation=ChangeOperation.DELETE, content=b"x")
        with pytest.raises(ChangeValidationError):
            validate_changes([change], max_file_size=1024)

    def test_rejects_oversize_file(self):
        with pytest.raises(ChangeValidationError, match="size exceeds"):
            validate_changes([update("big.bin", b"x" * 11)], max_file_size=10)

    def test_accepts_nested_paths_and_empty_content(self):
        validate_changes(
            [update("content/projects/one.md", b""), delete("old.json")],
            max_file_size=1024,
        )


class TestCreateCommit:

    @pytest.mark.asyncio
    async def test_happy_path_commits_single_file(self, pipeline, fake_github):
        base = fake_github.head()

        result = await pipeline.create_commit(
            "octo", "portfolio", "main", [update("data.json", b'{"name": "Grace"}\n')], "Update data"
        )

        assert result.files_changed == 1
        assert result.parent_sha == base
        assert result.branch == "main"
        assert fake_github.head() == result.commit_sha
        assert fake_github.commits[result.commit_sha]["parents"] == [base]
        assert fake_github.files()["data.json"] == b'{"name": "Grace"}\n'
        assert result.html_url.endswith(result.commit_sha)

    @pytest.mark.asyncio
    async def test_multi_file_batch_is_one_commit(self, pipeline, fake_github):
        result = await pipeline.create_commit(
            "octo",
            "portfolio",
            "main",
            [
                update("data.json", b"{}"),
                FileChange(path="images/a.png", operation=ChangeOperation.CREATE, content=b"\x89PNG"),
            ],
            "Batch",
        )

        assert result.files_changed == 2
        assert fake_github.count("PATCH") == 1
        assert fake_github.files() == {"data.json": b"{}", "images/a.png": b"\x89PNG"}

    @pytest.mark.asyncio
    async def test_author_is_sent(self, pipeline, fake_github):
        options = CommitOptions(author=CommitAuthor(name="Ada", email="ada@example.com"))

        result = await pipeline.create_commit(
            "octo", "portfolio", "main", [update("data.json")], "Authored", options
        )

        assert fake_github.commits[result.commit_sha]["author"] == {
            "name": "Ada",
            "email": "ada@example.com",
        }

    @pytest.mark.asyncio
    async def test_validation_reject_makes_no_remote_call(self, pipeline, fake_github):
        with pytest.raises(ChangeValidationError):
            await pipeline.create_commit(
                "octo", "portfolio", "main", [update("../etc/passwd")], "Sneaky"
            )

        assert fake_github.requests == []

    @pytest.mark.asyncio
    async def test_non_fast_forward_raises_concurrent_modification(self, pipeline, fake_github):
        remote = {}

        def move_branch_first(request):
            if request.method == "PATCH" and not remote:
                remote["sha"] = fake_github.push_remote({"data.json": b"remote"})
            return None

        fake_github.overrides.append(move_branch_first)

        with pytest.raises(ConcurrentModificationError):
            await pipeline.create_commit("octo", "portfolio", "main", [update("data.json")], "Local")

        assert fake_github.head() == remote["sha"]
        assert fake_github.files()["data.json"] == b"remote"

    @pytest.mark.asyncio
    async def test_expected_head_mismatch_fails_before_writing(self, pipeline, fake_github):
        stale = fake_github.head()
        fake_github.push_remote({"data.json": b"remote"})

        with pytest.raises(ConcurrentModificationError) as exc_info:
            await pipeline.create_commit(
                "octo",
                "portfolio",
                "main",
                [update("data.json")],
                "Local",
                CommitOptions(expected_head_sha=stale),
            )

        assert exc_info.value.expected_sha == stale
        assert exc_info.value.actual_sha == fake_github.head()
        assert fake_github.mutating_requests == []

    @pytest.mark.asyncio
    async def test_failure_mid_pipeline_leaves_branch_unchanged(self, pipeline, fake_github):
        base = fake_github.head()
        fake_github.fail("POST", "/git/commits", 422, {"message": "Invalid tree"})

        with pytest.raises(RemoteRequestError):
            await pipeline.create_commit("octo", "portfolio", "main", [update("data.json")], "Fails")

        assert fake_github.head() == base
        assert fake_github.count("PATCH") == 0

    @pytest.mark.asyncio
    async def test_delete_of_missing_path_is_skipped(self, pipeline, fake_github):
        result = await pipeline.create_commit(
            "octo",
            "portfolio",
            "main",
            [delete("missing.json"), update("new.json", b"1")],
            "Mixed",
        )

        assert fake_github.files() == {"data.json": b'{"name": "Ada"}\n', "new.json": b"1"}
        assert result.files_changed == 2

    @pytest.mark.asyncio
    async def test_delete_existing_path(self, pipeline, fake_github):
        await pipeline.create_commit("octo", "portfolio", "main", [delete("data.json")], "Remove")

        assert fake_github.files() == {}

    @pytest.mark.asyncio
    async def test_delete_only_missing_paths_reuses_base_tree(self, pipeline, fake_github):
        base_tree = fake_github.tree_of(fake_github.head())

        result = await pipeline.create_commit(
            "octo", "portfolio", "main", [delete("missing.json")], "Nothing to remove"
        )

        assert result.tree_sha == base_tree
        assert fake_github.count("POST", "/git/trees") == 0

    @pytest.mark.asyncio
    async def test_backup_ref_created(self, pipeline, fake_github):
        base = fake_github.head()

        result = await pipeline.create_commit(
            "octo", "portfolio", "main", [update("data.json")], "Backed up",
            CommitOptions(create_backup=True),
        )

        assert result.backup_ref.startswith("backup-main-")
        assert fake_github.refs[result.backup_ref] == base

    @pytest.mark.asyncio
    async def test_backup_failure_is_not_fatal(self, pipeline, fake_github):
        fake_github.fail("POST", "/git/refs", 422, {"message": "Reference already exists"})

        result = await pipeline.create_commit(
            "octo", "portfolio", "main", [update("data.json")], "No backup",
            CommitOptions(create_backup=True),
        )

        assert result.backup_ref is None
        assert fake_github.head() == result.commit_sha

    @pytest.mark.asyncio
    async def test_does_not_mutate_input(self, pipeline):
        changes = [update("data.json", b"1")]
        snapshot = [change.model_copy() for change in changes]

        await pipeline.create_commit("octo", "portfolio", "main", changes, "Immutable")

        assert changes == snapshot


class TestPushChanges:

    @pytest.mark.asyncio
    async def test_opens_pull_request(self, pipeline, fake_github):
        fake_github.refs["draft"] = fake_github.head()

        result = await pipeline.push_changes(
            "octo", "portfolio", "draft", [update("data.json")], "Draft edit",
            CommitOptions(create_pull_request=True, pull_request_base="main"),
        )

        assert result.pull_request.number == 1
        assert result.pull_request.head == "draft"
        assert result.pull_request.base == "main"
        assert fake_github.pull_requests[0]["title"] == "Draft edit"

    @pytest.mark.asyncio
    async def test_pull_request_failure_keeps_commit(self, pipeline, fake_github):
        fake_github.refs["draft"] = fake_github.head()
        fake_github.fail("POST", "/pulls", 422, {"message": "A pull request already exists"})

        result = await pipeline.push_changes(
            "octo", "portfolio", "draft", [update("data.json")], "Draft edit",
            CommitOptions(create_pull_request=True),
        )

        assert result.pull_request is None
        assert fake_github.head("draft") == result.commit.commit_sha

    @pytest.mark.asyncio
    async def test_no_pull_request_into_same_branch(self, pipeline, fake_github):
        result = await pipeline.push_changes(
            "octo", "portfolio", "main", [update("data.json")], "Main edit",
            CommitOptions(create_pull_request=True, pull_request_base="main"),
        )

        assert result.pull_request is None
        assert fake_github.count("POST", "/pulls") == 0
