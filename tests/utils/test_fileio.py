"""Tests for crash-safe file helpers."""

import errno
import os
from unittest import mock

import pytest

from phasekeeper.utils.fileio import append_line, atomic_write_text, is_transient_os_error


class TestAtomicWrite:
    """Tests for atomic_write_text()."""

    def test_writes_new_file(self, tmp_path):
        target = tmp_path / "state.json"

        atomic_write_text(target, '{"ok": true}')

        assert target.read_text() == '{"ok": true}'
        assert not (tmp_path / "state.json.tmp").exists()

    def test_replaces_existing_content(self, tmp_path):
        target = tmp_path / "state.json"
        target.write_text("old")

        atomic_write_text(target, "new")

        assert target.read_text() == "new"

    def test_failed_verification_keeps_original(self, tmp_path):
        target = tmp_path / "state.json"
        target.write_text("old")

        def reject(path):
            raise ValueError("bad content")

        with pytest.raises(ValueError, match="bad content"):
            atomic_write_text(target, "new", verify=reject)

        assert target.read_text() == "old"
        assert not (tmp_path / "state.json.tmp").exists()

    def test_verify_sees_temporary_file(self, tmp_path):
        target = tmp_path / "state.json"
        seen = []

        atomic_write_text(target, "content", verify=lambda p: seen.append(p.read_text()))

        assert seen == ["content"]

    def test_crash_before_rename_keeps_original(self, tmp_path):
        target = tmp_path / "state.json"
        target.write_text("old")

        with mock.patch(
            "phasekeeper.utils.fileio.os.replace",
            side_effect=OSError(errno.EIO, "I/O error"),
        ):
            with pytest.raises(OSError):
                atomic_write_text(target, "new")

        assert target.read_text() == "old"
        assert not (tmp_path / "state.json.tmp").exists()

    def test_transient_error_is_retried(self, tmp_path):
        target = tmp_path / "state.json"
        real_replace = os.replace
        calls = []

        def flaky_replace(src, dst):
            calls.append(src)
            if len(calls) == 1:
                raise OSError(errno.EBUSY, "busy")
            return real_replace(src, dst)

        with mock.patch("phasekeeper.utils.fileio.os.replace", side_effect=flaky_replace):
            atomic_write_text(target, "content")

        assert len(calls) == 2
        assert target.read_text() == "content"

    def test_transient_classification(self):
        assert is_transient_os_error(OSError(errno.EAGAIN, "again"))
        assert not is_transient_os_error(OSError(errno.ENOSPC, "full"))
        assert not is_transient_os_error(ValueError("nope"))


class TestAppendLine:
    """Tests for append_line()."""

    def test_appends_lines(self, tmp_path):
        log = tmp_path / "audit.jsonl"

        append_line(log, '{"n": 1}')
        append_line(log, '{"n": 2}\n')

        assert log.read_text().splitlines() == ['{"n": 1}', '{"n": 2}']
