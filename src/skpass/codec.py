"""
Entry codec -- turns plaintext into ciphertext and back.

The codec is a pure transformation: bytes in, bytes out. It knows
nothing about paths or the filesystem, writes nothing to disk and
never logs secret material.

GpgCodec drives the system ``gpg`` binary. Decryption may block on
the key agent's passphrase prompt, so every call carries a timeout;
an agent that never answers surfaces as KeyUnavailable instead of a
hung engine.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from abc import ABC, abstractmethod
from typing import Callable, Optional

from .config import PassphraseMethod
from .errors import CorruptCiphertext, KeyUnavailable, RecipientUnavailable, StoreError
from .recipients import RecipientSet
from .secret import SecretView

logger = logging.getLogger("skpass.codec")

# gpg status/diagnostic fragments, matched case-insensitively on stderr
_MISSING_PUBKEY = ("no public key", "unusable public key", "skipped: ", "no valid addressees")
_MISSING_SECKEY = ("no secret key", "bad passphrase", "no pinentry", "operation cancelled", "timeout")
_CORRUPT = (
    "no valid openpgp data",
    "invalid packet",
    "unexpected eof",
    "crc error",
    "packet(s) with unknown version",
    "decrypt_message failed: unknown system error",
    "invalid armor",
)


class EntryCodec(ABC):
    """Abstract encrypt/decrypt collaborator."""

    @abstractmethod
    def encrypt(self, plaintext: bytes, recipients: RecipientSet) -> bytes:
        """Encrypt plaintext for every identity in ``recipients``.

        Raises:
            RecipientUnavailable: No usable public key for the recipients.
        """

    @abstractmethod
    def decrypt(self, ciphertext: bytes, timeout: Optional[float] = None) -> SecretView:
        """Decrypt a blob into an owned SecretView.

        Raises:
            KeyUnavailable: Private key or passphrase not obtainable in time.
            CorruptCiphertext: The blob is not valid encrypted data.
        """

    def available(self) -> bool:
        return True


class GpgCodec(EntryCodec):
    """EntryCodec backed by the gpg command-line tool.

    Args:
        gpg_binary: Name or path of the gpg executable.
        armor: Produce ASCII-armored output instead of binary packets.
        passphrase_method: ``agent`` lets gpg-agent/pinentry ask the user;
            ``loopback`` feeds the passphrase from ``passphrase_provider``.
        passphrase_provider: Callable returning the passphrase for
            loopback mode. Called once per decryption.
        default_timeout: Seconds to wait when the caller gives none.
    """

    def __init__(
        self,
        gpg_binary: str = "gpg",
        armor: bool = False,
        passphrase_method: PassphraseMethod = PassphraseMethod.AGENT,
        passphrase_provider: Optional[Callable[[], str]] = None,
        default_timeout: float = 60.0,
    ):
        self.gpg_binary = gpg_binary
        self.armor = armor
        self.passphrase_method = passphrase_method
        self.passphrase_provider = passphrase_provider
        self.default_timeout = default_timeout

    def available(self) -> bool:
        return shutil.which(self.gpg_binary) is not None

    def encrypt(self, plaintext: bytes, recipients: RecipientSet) -> bytes:
        if not recipients:
            raise RecipientUnavailable("no recipients given")

        cmd = [
            self.gpg_binary, "--batch", "--yes", "--quiet",
            "--trust-model", "always", "--compress-algo", "none",
            "--encrypt",
        ]
        if self.armor:
            cmd.append("--armor")
        for identity in recipients:
            cmd += ["--recipient", identity]

        result = self._run(cmd, plaintext, self.default_timeout)
        if result.returncode != 0 or not result.stdout:
            stderr = _stderr(result)
            if _matches(stderr, _MISSING_PUBKEY):
                raise RecipientUnavailable(
                    f"no usable public key for {', '.join(recipients)}"
                )
            raise StoreError(f"gpg encryption failed: {_last_line(stderr)}")

        logger.debug("Encrypted %d bytes for %d recipient(s)", len(plaintext), len(recipients.identities))
        return result.stdout

    def decrypt(self, ciphertext: bytes, timeout: Optional[float] = None) -> SecretView:
        if not ciphertext:
            raise CorruptCiphertext("entry is empty")

        cmd = [self.gpg_binary, "--batch", "--yes", "--quiet", "--decrypt"]
        pass_fds: tuple[int, ...] = ()
        read_fd = write_fd = -1
        if self.passphrase_method == PassphraseMethod.LOOPBACK:
            if self.passphrase_provider is None:
                raise KeyUnavailable("loopback passphrase method needs a passphrase")
            read_fd, write_fd = os.pipe()
            secret = bytearray(self.passphrase_provider().encode("utf-8") + b"\n")
            try:
                os.write(write_fd, secret)
            finally:
                for i in range(len(secret)):
                    secret[i] = 0
                os.close(write_fd)
            cmd += ["--pinentry-mode", "loopback", "--passphrase-fd", str(read_fd)]
            pass_fds = (read_fd,)

        if timeout is None:
            timeout = self.default_timeout
        try:
            result = self._run(cmd, ciphertext, timeout, pass_fds)
        finally:
            if read_fd >= 0:
                os.close(read_fd)

        if result.returncode != 0:
            stderr = _stderr(result)
            if _matches(stderr, _CORRUPT):
                raise CorruptCiphertext(f"not valid encrypted data: {_last_line(stderr)}")
            if _matches(stderr, _MISSING_SECKEY):
                raise KeyUnavailable(f"private key unavailable: {_last_line(stderr)}")
            raise KeyUnavailable(f"gpg decryption failed: {_last_line(stderr)}")

        return SecretView(result.stdout)

    def _run(
        self,
        cmd: list[str],
        data: bytes,
        timeout: float,
        pass_fds: tuple[int, ...] = (),
    ) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                cmd,
                input=data,
                capture_output=True,
                check=False,
                timeout=timeout,
                pass_fds=pass_fds,
            )
        except subprocess.TimeoutExpired as exc:
            logger.warning("gpg did not answer within %.0fs", timeout)
            raise KeyUnavailable(f"key agent did not respond within {timeout:.0f}s") from exc
        except FileNotFoundError as exc:
            raise StoreError(f"gpg binary not found: {self.gpg_binary}") from exc


def _stderr(result: subprocess.CompletedProcess) -> str:
    raw = result.stderr or b""
    return raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw


def _matches(stderr: str, needles: tuple[str, ...]) -> bool:
    lowered = stderr.lower()
    return any(n in lowered for n in needles)


def _last_line(stderr: str) -> str:
    lines = [line for line in stderr.strip().splitlines() if line.strip()]
    return lines[-1] if lines else "unknown error"
