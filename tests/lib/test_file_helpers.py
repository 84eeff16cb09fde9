"""Unit tests for atomic writes, directory provisioning and YAML validation."""

import os
from datetime import date
from pathlib import Path

import pytest

from observe_deploy.errors import ContentValidationError, TransientToolError
from observe_deploy.lib.file_helpers import (
    apply_metadata,
    atomic_write,
    backup_path,
    ensure_directory,
    validate_yaml,
)


def _mode(path: Path) -> int:
    return path.stat().st_mode & 0o7777


class TestValidateYaml:
    def test_accepts_well_formed_yaml(self):
        validate_yaml("receivers:\n  otlp: {}\n", "otel-collector.yaml")

    def test_rejects_malformed_yaml(self):
        """Verify the error names the offending source."""
        with pytest.raises(ContentValidationError, match="logs.yaml is not valid YAML"):
            validate_yaml("receivers: [unclosed\n", "logs.yaml")

    def test_accepts_bytes(self):
        validate_yaml(b"a: 1\n", "bytes.yaml")


class TestAtomicWrite:
    """Test placing file contents atomically."""

    def test_creates_new_file(self, tmp_path):
        dest = tmp_path / "config.yaml"

        assert atomic_write(dest, b"a: 1\n", mode="0640") is True
        assert dest.read_bytes() == b"a: 1\n"
        assert _mode(dest) == 0o640

    def test_new_file_defaults_to_0644(self, tmp_path):
        dest = tmp_path / "config.yaml"

        atomic_write(dest, b"a: 1\n")

        assert _mode(dest) == 0o644

    def test_identical_content_is_unchanged(self, tmp_path):
        """Verify rewriting the same content with the same mode reports no change."""
        dest = tmp_path / "config.yaml"
        atomic_write(dest, b"a: 1\n", mode="0644")

        assert atomic_write(dest, b"a: 1\n", mode="0644") is False

    def test_mode_change_alone_is_a_change(self, tmp_path):
        dest = tmp_path / "config.yaml"
        atomic_write(dest, b"a: 1\n", mode="0644")

        assert atomic_write(dest, b"a: 1\n", mode="0600") is True
        assert _mode(dest) == 0o600

    def test_replacement_keeps_existing_mode(self, tmp_path):
        """Verify unspecified metadata is carried over from the replaced file."""
        dest = tmp_path / "config.yaml"
        dest.write_text("old: true\n")
        dest.chmod(0o600)

        assert atomic_write(dest, b"new: true\n") is True
        assert dest.read_text() == "new: true\n"
        assert _mode(dest) == 0o600

    def test_leaves_no_temporary_files(self, tmp_path):
        dest = tmp_path / "config.yaml"
        dest.write_text("old: true\n")

        atomic_write(dest, b"new: true\n")

        assert [path.name for path in tmp_path.iterdir()] == ["config.yaml"]

    def test_missing_directory_raises(self, tmp_path):
        with pytest.raises(OSError):  # noqa: PT011
            atomic_write(tmp_path / "missing" / "config.yaml", b"a: 1\n")


class TestEnsureDirectory:
    def test_creates_nested_directories(self, tmp_path):
        target = tmp_path / "etc" / "observe-agent" / "connections"

        assert ensure_directory(target, mode="0755") is True
        assert target.is_dir()
        assert _mode(target) == 0o755

    def test_existing_directory_is_unchanged(self, tmp_path):
        target = tmp_path / "observe-agent"
        ensure_directory(target, mode="0755")

        assert ensure_directory(target, mode="0755") is False

    def test_corrects_mode(self, tmp_path):
        target = tmp_path / "observe-agent"
        target.mkdir(mode=0o700)

        assert ensure_directory(target, mode="0755") is True
        assert _mode(target) == 0o755


def test_backup_path_uses_iso_date():
    path = Path("/etc/observe-agent/otel-collector.yaml")

    assert backup_path(path, date(2026, 10, 18)) == Path(
        "/etc/observe-agent/otel-collector.yaml.backup-2026-10-18"
    )


class TestOwnership:
    """Test comparing and correcting file ownership."""

    def test_unknown_owner_raises(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("a: 1\n")

        with pytest.raises(TransientToolError, match="Unknown user"):
            apply_metadata(path, owner="no-such-observe-user")

    def test_unknown_group_raises(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("a: 1\n")

        with pytest.raises(TransientToolError, match="Unknown group"):
            apply_metadata(path, group="no-such-observe-group")

    @pytest.mark.skipif(os.geteuid() != 0, reason="changing ownership needs root")
    def test_file_owned_by_unnamed_ids_is_corrected(self, tmp_path):
        """Verify a file owned by ids without a passwd entry is taken over."""
        path = tmp_path / "config.yaml"
        path.write_text("a: 1\n")
        os.chown(path, 54321, 54321)

        assert atomic_write(path, b"a: 1\n", owner="root", group="root") is True
        assert (path.stat().st_uid, path.stat().st_gid) == (0, 0)
