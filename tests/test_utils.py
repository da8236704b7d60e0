"""Tests for common utilities."""

from unittest.mock import patch

from deployctl.core.utils import backoff_delay, get_git_revision, merge_dicts


class TestGetGitRevision:
    """Tests for get_git_revision."""

    def test_missing_directory(self, tmp_path):
        with patch("deployctl.core.utils.subprocess.run") as run:
            assert get_git_revision(tmp_path / "missing") is None
        run.assert_not_called()

    def test_not_a_checkout(self, tmp_path):
        with patch("deployctl.core.utils.shutil.which", return_value="/usr/bin/git"), \
             patch("deployctl.core.utils.subprocess.run") as run:
            run.return_value.returncode = 128
            assert get_git_revision(tmp_path) is None

    def test_revision(self, tmp_path):
        with patch("deployctl.core.utils.shutil.which", return_value="/usr/bin/git"), \
             patch("deployctl.core.utils.subprocess.run") as run:
            run.return_value.returncode = 0
            run.return_value.stdout = "abc1234\n"
            assert get_git_revision(tmp_path) == "abc1234"
        assert run.call_args.kwargs["cwd"] == tmp_path

    def test_git_not_executable(self, tmp_path):
        with patch("deployctl.core.utils.shutil.which", return_value="/usr/bin/git"), \
             patch("deployctl.core.utils.subprocess.run", side_effect=PermissionError("git")):
            assert get_git_revision(tmp_path) is None

    def test_without_git(self, tmp_path):
        with patch("deployctl.core.utils.shutil.which", return_value=None):
            assert get_git_revision(tmp_path) is None


class TestBackoffDelay:
    """Tests for backoff_delay."""

    def test_grows_and_caps(self):
        assert [backoff_delay(n, 2, 2, 10) for n in range(4)] == [2, 4, 8, 10]


class TestMergeDicts:
    """Tests for merge_dicts."""

    def test_deep_merge(self):
        base = {"defaults": {"retry": {"max_attempts": 3}, "keep_releases": 5}}
        override = {"defaults": {"retry": {"max_attempts": 5}}}
        assert merge_dicts(base, override) == {"defaults": {"retry": {"max_attempts": 5}, "keep_releases": 5}}
