"""
Decrypted secret view -- the only place plaintext lives.

A pass entry is plain text: the first line is the password, every
following line is free-form metadata, commonly ``key: value`` pairs
such as ``login: alice`` or ``url: https://example.org``.

SecretView owns its bytes in a mutable buffer so they can be zeroed
when the caller is done. Python strings derived from it (password,
fields) cannot be scrubbed, so callers should keep them short-lived.
"""

from __future__ import annotations

from typing import Optional


class SecretView:
    """Owned, wipeable plaintext of one entry.

    Args:
        data: Decrypted bytes. The view copies them into its own buffer.
    """

    __slots__ = ("_buf", "_wiped")

    def __init__(self, data: bytes | bytearray = b""):
        self._buf = bytearray(data)
        self._wiped = False

    @classmethod
    def from_parts(cls, password: str, extra: Optional[list[str]] = None) -> "SecretView":
        """Build the plaintext layout pass expects: password, then extra lines."""
        lines = [password, *(extra or [])]
        return cls(("\n".join(lines) + "\n").encode("utf-8"))

    def __enter__(self) -> "SecretView":
        return self

    def __exit__(self, *exc: object) -> None:
        self.wipe()

    def __repr__(self) -> str:
        state = "wiped" if self._wiped else f"{len(self._buf)} bytes"
        return f"SecretView(<{state}>)"

    def __len__(self) -> int:
        return len(self._buf)

    @property
    def wiped(self) -> bool:
        return self._wiped

    def wipe(self) -> None:
        """Zero the buffer in place. Safe to call more than once."""
        for i in range(len(self._buf)):
            self._buf[i] = 0
        self._buf = bytearray()
        self._wiped = True

    def to_bytes(self) -> bytes:
        self._check()
        return bytes(self._buf)

    @property
    def text(self) -> str:
        self._check()
        return self._buf.decode("utf-8", errors="replace")

    @property
    def password(self) -> str:
        """First line of the secret."""
        return self.text.split("\n", 1)[0].rstrip("\r")

    @property
    def extra(self) -> list[str]:
        """Every line after the password, kept verbatim."""
        lines = self.text.splitlines()
        return lines[1:]

    @property
    def fields(self) -> dict[str, str]:
        """``key: value`` lines after the password; first occurrence wins."""
        result: dict[str, str] = {}
        for line in self.extra:
            key, sep, value = line.partition(":")
            key = key.strip()
            # otpauth://... and other URIs are not fields
            if not sep or not key or " " in key or value.startswith("//"):
                continue
            result.setdefault(key.lower(), value.strip())
        return result

    def _check(self) -> None:
        if self._wiped:
            raise ValueError("secret has been wiped")
