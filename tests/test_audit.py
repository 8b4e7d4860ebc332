"""Tests for the machine-local audit log."""

from __future__ import annotations

from pathlib import Path

import pytest

from skvault.audit import AuditEvent, audit_event, audit_path, read_audit_log


class TestAuditLog:
    def test_append_and_read(self, vault_home: Path) -> None:
        audit_event(vault_home, AuditEvent.INIT, "Vault initialized")
        audit_event(vault_home, AuditEvent.SYNC_PUSH, "Pushed 2 file(s)", metadata={"content_hash": "abc"})

        records = read_audit_log(vault_home)

        assert [r.event for r in records] == [AuditEvent.INIT, AuditEvent.SYNC_PUSH]
        assert records[1].data == {"content_hash": "abc"}
        assert records[0].at <= records[1].at
        assert audit_path(vault_home).parent.name == "local"

    def test_one_json_object_per_line(self, vault_home: Path) -> None:
        for _ in range(3):
            audit_event(vault_home, AuditEvent.COMMIT, "snapshot")
        lines = audit_path(vault_home).read_text().splitlines()
        assert len(lines) == 3
        assert all(line.startswith("{") and '"event":"COMMIT"' in line for line in lines)

    def test_filter_and_limit(self, vault_home: Path) -> None:
        for event in (AuditEvent.COMMIT, AuditEvent.SYNC_PUSH, AuditEvent.COMMIT, AuditEvent.SYNC_FAILED):
            audit_event(vault_home, event, event.value.lower())
        commits = read_audit_log(vault_home, events=[AuditEvent.COMMIT])
        assert len(commits) == 2
        assert [r.event for r in read_audit_log(vault_home, limit=1)] == [AuditEvent.SYNC_FAILED]

    def test_torn_line_skipped(self, vault_home: Path) -> None:
        audit_event(vault_home, AuditEvent.COMMIT, "first")
        with audit_path(vault_home).open("a") as f:
            f.write('{"event": "COMMIT", "det\n\n')
        audit_event(vault_home, AuditEvent.ROLLBACK, "second")
        assert [r.detail for r in read_audit_log(vault_home)] == ["first", "second"]

    def test_missing_log(self, tmp_path: Path) -> None:
        assert read_audit_log(tmp_path) == []

    def test_unknown_event_rejected(self, vault_home: Path) -> None:
        with pytest.raises(ValueError):
            audit_event(vault_home, "DELETE_EVERYTHING", "nope")
        assert not audit_path(vault_home).exists()
