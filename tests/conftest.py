"""Shared test fixtures for skpass."""

from __future__ import annotations

import base64
import shutil
import subprocess
import threading
import time
from pathlib import Path
from typing import Optional

import pytest

from skpass.codec import EntryCodec
from skpass.config import StoreConfig
from skpass.errors import CorruptCiphertext, KeyUnavailable, RecipientUnavailable
from skpass.recipients import RecipientSet, write_gpg_id
from skpass.secret import SecretView
from skpass.service import StoreService

HAS_GIT = shutil.which("git") is not None

requires_git = pytest.mark.skipif(not HAS_GIT, reason="git binary not installed")


class FakeCodec(EntryCodec):
    """Reversible stand-in for gpg.

    Ciphertext is ``FAKE:<recipients>\\n<base64 plaintext>``, so tests
    can see who an entry was encrypted for without a key ring.
    """

    def __init__(self, known_keys=("R1", "R2"), delay: float = 0.0):
        self.known_keys = set(known_keys)
        self.delay = delay
        self.locked = False
        self.decrypt_calls = 0
        self.last_timeout: Optional[float] = None
        self._lock = threading.Lock()

    def encrypt(self, plaintext: bytes, recipients: RecipientSet) -> bytes:
        usable = [r for r in recipients if r in self.known_keys]
        if not usable:
            raise RecipientUnavailable(f"no public key for {', '.join(recipients)}")
        if self.delay:
            time.sleep(self.delay)
        header = "FAKE:" + ",".join(usable)
        return header.encode() + b"\n" + base64.b64encode(bytes(plaintext))

    def decrypt(self, ciphertext: bytes, timeout: Optional[float] = None) -> SecretView:
        with self._lock:
            self.decrypt_calls += 1
            self.last_timeout = timeout
        if not ciphertext.startswith(b"FAKE:"):
            raise CorruptCiphertext("not valid encrypted data")
        if self.locked:
            raise KeyUnavailable("private key unavailable")
        _, body = ciphertext.split(b"\n", 1)
        return SecretView(base64.b64decode(body))

    @staticmethod
    def recipients_of(ciphertext: bytes) -> list[str]:
        header = ciphertext.split(b"\n", 1)[0].decode()
        return header[len("FAKE:"):].split(",")


def git(cwd: Path, *args: str) -> str:
    """Run a git command for test setup and return its stdout."""
    result = subprocess.run(
        ["git", *args], cwd=str(cwd), capture_output=True, text=True, check=True
    )
    return result.stdout


@pytest.fixture(autouse=True)
def _isolate_store_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep a developer's pass environment out of the tests."""
    monkeypatch.delenv("PASSWORD_STORE_KEY", raising=False)
    monkeypatch.delenv("PASSWORD_STORE_DIR", raising=False)


@pytest.fixture
def codec() -> FakeCodec:
    return FakeCodec()


@pytest.fixture
def home(tmp_path: Path) -> Path:
    """Provide a temporary skpass home directory."""
    path = tmp_path / ".skpass"
    path.mkdir()
    return path


@pytest.fixture
def store_dir(tmp_path: Path) -> Path:
    """Provide an empty store whose recipient is R1."""
    path = tmp_path / "password-store"
    write_gpg_id(path, ["R1"])
    return path


@pytest.fixture
def config(store_dir: Path) -> StoreConfig:
    return StoreConfig(store_dir=store_dir, decrypt_timeout=5, network_timeout=30)


@pytest.fixture
def service(config: StoreConfig, codec: FakeCodec, home: Path):
    """A StoreService over the temporary store with the fake codec."""
    svc = StoreService(config=config, codec=codec, home=home)
    yield svc
    svc.close()


@pytest.fixture
def git_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Isolate git from the user's configuration."""
    gitconfig = tmp_path / "gitconfig"
    gitconfig.write_text(
        "[user]\n\tname = Test User\n\temail = test@example.org\n"
        "[init]\n\tdefaultBranch = main\n"
        "[commit]\n\tgpgsign = false\n"
    )
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", str(gitconfig))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.delenv("PASSWORD_STORE_KEY", raising=False)


@pytest.fixture
def remote_repo(tmp_path: Path, git_env) -> Path:
    """An empty bare repository acting as the shared remote."""
    bare = tmp_path / "remote.git"
    bare.mkdir()
    git(bare, "init", "--quiet", "--bare")
    git(bare, "symbolic-ref", "HEAD", "refs/heads/main")
    return bare


def make_service(tmp_path: Path, name: str, codec: FakeCodec) -> StoreService:
    root = tmp_path / name
    config = StoreConfig(store_dir=root, decrypt_timeout=5, network_timeout=30, push_retries=2)
    return StoreService(config=config, codec=codec, home=tmp_path / f".skpass-{name}")


@pytest.fixture
def peers(tmp_path: Path, remote_repo: Path, codec: FakeCodec):
    """Two stores, alice and bob, sharing one remote.

    alice initializes the store and pushes it; bob starts as a clone.
    """
    alice = make_service(tmp_path, "alice", codec)
    assert alice.init_store(["R1"], git=True).ok
    alice.repo.add_remote(str(remote_repo))
    assert alice.synchronize().ok

    bob = make_service(tmp_path, "bob", codec)
    assert bob.clone_store(str(remote_repo)).ok

    yield alice, bob
    alice.close()
    bob.close()
