"""Tests for the StoreService façade (fake codec, no git)."""

from __future__ import annotations

import errno
import os
import threading
from pathlib import Path
from unittest.mock import patch

import pytest

from conftest import FakeCodec
from skpass.audit import read_audit_log
from skpass.errors import AlreadyExists, ErrorKind
from skpass.models import ChangeKind, NodeKind, ResultStatus
from skpass.recipients import write_gpg_id
from skpass.secret import SecretView
from skpass.sync.models import SyncPhase


def _password(service, path: str) -> str:
    result = service.get(path)
    assert result.ok, result.message
    with result.secret as secret:
        return secret.password


# ---------------------------------------------------------------------------
# Round trips
# ---------------------------------------------------------------------------


class TestReadWrite:
    """write then get returns what was written."""

    @pytest.mark.parametrize("path", ["site", "email/work", "a/b/c/d", "with space/x y"])
    def test_roundtrip(self, service, path: str) -> None:
        result = service.write(path, "s3cret\nlogin: alice\n")
        assert result.ok
        got = service.get(path)
        assert got.ok
        with got.secret as secret:
            assert secret.text == "s3cret\nlogin: alice\n"
            assert secret.fields["login"] == "alice"

    def test_accepts_secret_view_and_bytes(self, service) -> None:
        with SecretView.from_parts("pw", ["url: x"]) as view:
            assert service.write("a", view).ok
        assert service.write("b", b"raw\n").ok
        assert _password(service, "a") == "pw"
        assert _password(service, "b") == "raw"

    def test_plaintext_not_on_disk(self, service, store_dir: Path) -> None:
        service.write("site", "very-secret-value")
        data = (store_dir / "site.gpg").read_bytes()
        assert b"very-secret-value" not in data

    def test_write_reports_added_then_modified(self, service) -> None:
        first = service.write("site", "one")
        second = service.write("site", "two")
        assert first.changes[0].kind == ChangeKind.ADDED
        assert second.changes[0].kind == ChangeKind.MODIFIED
        assert _password(service, "site") == "two"

    def test_insert_does_not_overwrite(self, service) -> None:
        service.insert("site", "one")
        result = service.insert("site", "two")
        assert result.status == ResultStatus.FAILED
        assert result.error == ErrorKind.ALREADY_EXISTS
        assert _password(service, "site") == "one"

    def test_write_over_folder_fails(self, service) -> None:
        service.write("email/work", "x")
        assert service.write("email", "x").error == ErrorKind.ALREADY_EXISTS

    def test_invalid_path(self, service) -> None:
        assert service.write("../outside", "x").error == ErrorKind.INVALID_PATH
        assert service.get("/etc/passwd").error == ErrorKind.INVALID_PATH

    def test_overlong_name_is_invalid(self, service) -> None:
        """Names the filesystem cannot hold fail as results, not exceptions."""
        assert service.write("a" * 300, "x\n").error == ErrorKind.INVALID_PATH
        assert service.get("b" * 300).error == ErrorKind.INVALID_PATH
        assert service.rename("c" * 300, "d").error == ErrorKind.INVALID_PATH
        assert service.write("e" * 251, "x\n").ok

    def test_filesystem_failure_is_a_result(self, service) -> None:
        full = OSError(errno.ENOSPC, "No space left on device")
        with patch("skpass.tree.tempfile.mkstemp", side_effect=full):
            result = service.write("site", "pw")
        assert result.status == ResultStatus.FAILED
        assert result.error == ErrorKind.STORE_ERROR
        assert "No space left" in result.message
        assert service.list().items == []

    def test_wiped_secret_is_refused(self, service) -> None:
        view = SecretView.from_parts("pw")
        view.wipe()
        result = service.write("site", view)
        assert result.status == ResultStatus.FAILED
        assert result.error == ErrorKind.STORE_ERROR

    def test_zero_timeout_is_passed_through(self, service, codec: FakeCodec) -> None:
        service.write("site", "pw")
        service.get("site", timeout=0)
        assert codec.last_timeout == 0
        service.get("site")
        assert codec.last_timeout == service.config.decrypt_timeout

    def test_get_missing(self, service) -> None:
        result = service.get("nope")
        assert result.error == ErrorKind.NOT_FOUND
        assert result.secret is None

    def test_submit_get(self, service) -> None:
        service.write("site", "pw")
        future = service.submit_get("site")
        result = future.result(timeout=5)
        assert result.ok
        assert result.secret.password == "pw"


class TestRecipients:
    """Each entry is encrypted for its folder's recipients."""

    def test_subfolder_recipients(self, service, store_dir: Path, codec: FakeCodec) -> None:
        write_gpg_id(store_dir / "team", ["R2"])
        service.write("team/db", "x")
        service.write("mine", "y")
        assert codec.recipients_of((store_dir / "team" / "db.gpg").read_bytes()) == ["R2"]
        assert codec.recipients_of((store_dir / "mine.gpg").read_bytes()) == ["R1"]

    def test_unknown_recipient(self, service, store_dir: Path) -> None:
        write_gpg_id(store_dir, ["R9"])
        result = service.write("site", "x")
        assert result.error == ErrorKind.RECIPIENT_UNAVAILABLE
        assert not (store_dir / "site.gpg").exists()

    def test_missing_gpg_id(self, service, store_dir: Path) -> None:
        (store_dir / ".gpg-id").unlink()
        assert service.write("site", "x").error == ErrorKind.RECIPIENT_UNAVAILABLE

    def test_key_unavailable(self, service, codec: FakeCodec) -> None:
        service.write("site", "x")
        codec.locked = True
        assert service.get("site").error == ErrorKind.KEY_UNAVAILABLE

    def test_corrupt_reported_not_repaired(self, service, store_dir: Path) -> None:
        (store_dir / "broken.gpg").write_bytes(b"\x00garbage")
        assert service.get("broken").error == ErrorKind.CORRUPT_CIPHERTEXT
        assert (store_dir / "broken.gpg").read_bytes() == b"\x00garbage"

    def test_symlink_unsupported(self, service, store_dir: Path) -> None:
        service.write("real", "x")
        os.symlink(store_dir / "real.gpg", store_dir / "alias.gpg")
        assert service.get("alias").error == ErrorKind.UNSUPPORTED_ENTRY_TYPE
        kinds = dict(service.list().pairs())
        assert kinds["alias"] == NodeKind.UNSUPPORTED
        found = {i.path: i.kind for i in service.search("al").items}
        assert found == {"alias": NodeKind.UNSUPPORTED}


# ---------------------------------------------------------------------------
# The email/work scenario
# ---------------------------------------------------------------------------


class TestScenario:
    """Store with email/work encrypted for R1."""

    @pytest.fixture
    def seeded(self, service):
        service.write("email/work", "correct horse\nuser: me@work\n")
        return service

    def test_get(self, seeded) -> None:
        assert _password(seeded, "email/work") == "correct horse"

    def test_rename_then_list(self, seeded) -> None:
        result = seeded.rename("email/work", "email/work-old")
        assert result.ok
        change = result.changes[0]
        assert (change.kind, change.old_path, change.path) == (ChangeKind.RENAMED, "email/work", "email/work-old")
        assert seeded.list("email").pairs() == [("work-old", NodeKind.ENTRY)]
        assert seeded.get("email/work").error == ErrorKind.NOT_FOUND
        assert _password(seeded, "email/work-old") == "correct horse"

    def test_delete_non_empty_folder(self, seeded, store_dir: Path) -> None:
        result = seeded.delete("email")
        assert result.status == ResultStatus.FAILED
        assert result.error == ErrorKind.NOT_EMPTY
        assert (store_dir / "email" / "work.gpg").exists()

    def test_delete_recursive(self, seeded, store_dir: Path) -> None:
        seeded.write("email/home", "x")
        result = seeded.delete("email", recursive=True)
        assert result.ok
        assert result.changes[0].is_folder
        assert sorted(c.path for c in result.changes[1:]) == ["email/home", "email/work"]
        assert not (store_dir / "email").exists()

    def test_rename_folder(self, seeded) -> None:
        result = seeded.rename("email", "mail")
        assert result.changes[0].is_folder
        assert seeded.tree.entries() == ["mail/work"]

    def test_rename_onto_existing(self, seeded) -> None:
        seeded.write("other", "x")
        assert seeded.rename("other", "email/work").error == ErrorKind.ALREADY_EXISTS
        assert _password(seeded, "email/work") == "correct horse"


# ---------------------------------------------------------------------------
# Metadata reads
# ---------------------------------------------------------------------------


class TestSearch:
    """Search never decrypts."""

    def test_entries_and_search(self, service, codec: FakeCodec) -> None:
        for path in ("email/work", "email/home", "bank/Work-Card"):
            service.write(path, "x")
        assert [i.path for i in service.entries().items] == ["bank/Work-Card", "email/home", "email/work"]
        assert [i.path for i in service.search("work").items] == ["bank/Work-Card", "email/work"]
        assert [i.path for i in service.search("email", "wo").items] == ["email/work"]
        assert codec.decrypt_calls == 0

    def test_list_root(self, service) -> None:
        service.write("b", "x")
        service.write("a/x", "x")
        result = service.list()
        assert result.pairs() == [("a", NodeKind.FOLDER), ("b", NodeKind.ENTRY)]

    def test_list_missing_folder(self, service) -> None:
        assert service.list("nope").error == ErrorKind.NOT_FOUND


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


class TestConcurrency:
    """Concurrent callers never see torn state."""

    def test_concurrent_writes_one_wins(self, service, store_dir: Path, codec: FakeCodec) -> None:
        codec.delay = 0.02
        values = [f"value-{i}" * 50 for i in range(6)]
        threads = [threading.Thread(target=service.write, args=("site", v)) for v in values]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert _password(service, "site") in values
        leftovers = [p.name for p in store_dir.iterdir() if p.name.startswith(".skpass-")]
        assert leftovers == []

    def test_reader_never_sees_partial_file(self, service, store_dir: Path) -> None:
        service.write("site", "a" * 1000)
        stop = threading.Event()
        errors = []

        def reader():
            while not stop.is_set():
                result = service.get("site")
                if not result.ok or result.secret.password not in ("a" * 1000, "b" * 1000):
                    errors.append(result.message)

        t = threading.Thread(target=reader)
        t.start()
        for i in range(30):
            service.write("site", ("a" if i % 2 else "b") * 1000)
        stop.set()
        t.join()
        assert errors == []

    def test_read_waits_only_for_synced_path(self, service) -> None:
        service.write("email/work", "x")
        service.write("bank", "y")
        with service.locks.applying(["email/work"]):
            pending = service.submit_get("email/work")
            assert service.get("bank").ok
            assert not pending.done()
        assert pending.result(timeout=5).ok

    def test_create_race_retried_once(self, service, monkeypatch: pytest.MonkeyPatch) -> None:
        """A path that looked free but was taken is re-checked once."""
        real_create = service.tree.create_entry
        calls = []

        def flaky(path, data):
            calls.append(path)
            if len(calls) == 1:
                raise AlreadyExists("raced")
            return real_create(path, data)

        monkeypatch.setattr(service.tree, "create_entry", flaky)
        assert service.insert("site", "x").ok
        assert len(calls) == 2

    def test_create_race_with_real_file(self, service, store_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """When the reload shows the path really is taken, insert fails."""

        def other_process_wins(path, data):
            (store_dir / "site.gpg").write_bytes(b"FAKE:R1\nb3RoZXI=")
            raise AlreadyExists("raced")

        monkeypatch.setattr(service.tree, "create_entry", other_process_wins)
        assert service.insert("site", "x").error == ErrorKind.ALREADY_EXISTS
        assert _password(service, "site") == "other"


# ---------------------------------------------------------------------------
# Notifications, audit, init
# ---------------------------------------------------------------------------


class TestNotifications:
    """Applied mutations are published and audited."""

    def test_events(self, service) -> None:
        events = []
        service.subscribe(events.append)
        service.write("a", "x")
        service.rename("a", "b")
        service.delete("b")
        service.delete("missing")
        kinds = [(e.origin, e.changes[0].kind) for e in events]
        assert kinds == [
            ("local", ChangeKind.ADDED),
            ("local", ChangeKind.RENAMED),
            ("local", ChangeKind.REMOVED),
        ]

    def test_events_carry_no_secrets(self, service) -> None:
        events = []
        service.subscribe(events.append)
        service.write("a", "topsecret")
        assert "topsecret" not in events[0].model_dump_json()

    def test_audit(self, service, home: Path) -> None:
        service.write("a", "topsecret")
        service.delete("a")
        entries = read_audit_log(home)
        assert [e.event_type for e in entries] == ["WRITE", "DELETE"]
        assert "topsecret" not in (home / "audit.log").read_text()

    def test_audit_disabled(self, service, home: Path) -> None:
        service.config.audit = False
        service.write("a", "x")
        assert read_audit_log(home) == []

    def test_sync_state_without_git(self, service) -> None:
        state = service.sync_state()
        assert state.phase == SyncPhase.IDLE
        assert state.head is None
        assert not service.cancel_sync()


class TestInit:
    """Recipient changes re-encrypt what they cover."""

    def test_init_subfolder_reencrypts(self, service, store_dir: Path, codec: FakeCodec) -> None:
        service.write("team/db", "pw")
        service.write("mine", "y")
        result = service.init_store(["R2"], path="team")
        assert result.ok
        assert [c.path for c in result.changes] == ["team/db"]
        assert codec.recipients_of((store_dir / "team" / "db.gpg").read_bytes()) == ["R2"]
        assert codec.recipients_of((store_dir / "mine.gpg").read_bytes()) == ["R1"]
        assert _password(service, "team/db") == "pw"

    def test_clearing_subfolder_inherits_again(self, service, store_dir: Path, codec: FakeCodec) -> None:
        service.init_store(["R2"], path="team")
        service.write("team/db", "pw")
        assert service.init_store([], path="team").ok
        assert not (store_dir / "team" / ".gpg-id").exists()
        assert codec.recipients_of((store_dir / "team" / "db.gpg").read_bytes()) == ["R1"]

    def test_root_needs_recipients(self, service) -> None:
        assert service.init_store([]).error == ErrorKind.INVALID_PATH

    def test_new_store(self, tmp_path: Path, codec: FakeCodec, home: Path) -> None:
        from skpass.config import StoreConfig
        from skpass.service import StoreService

        root = tmp_path / "fresh"
        with StoreService(config=StoreConfig(store_dir=root), codec=codec, home=home) as svc:
            assert svc.write("x", "y").error == ErrorKind.RECIPIENT_UNAVAILABLE
            assert svc.init_store(["R1"]).ok
            assert svc.write("x", "y").ok
        assert (root / ".gpg-id").read_text() == "R1\n"
