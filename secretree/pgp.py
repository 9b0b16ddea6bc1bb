"""PGP master keys that encrypt the data key by running the GnuPG binary."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, ClassVar

from secretree.gnupg import GpgError, gpg_exec, shorten_fingerprint
from secretree.metadata import MasterKey

log = logging.getLogger(__name__)

KEY_TYPE_IDENTIFIER = "pgp"
"""Identifier of PGP master keys, as used in decryption orders."""

PGP_TTL = timedelta(hours=24 * 30 * 6)
"""Age after which a PGP master key asks for rotation."""


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _stderr_text(error: GpgError) -> str:
    return error.stderr.decode("utf-8", "replace").strip()


@dataclass
class PgpMasterKey(MasterKey):
    """A PGP key, identified by its fingerprint, that stores the data key encrypted."""

    key_type: ClassVar[str] = KEY_TYPE_IDENTIFIER

    fingerprint: str
    encrypted_key: str = ""
    creation_date: datetime = field(default_factory=_utc_now)
    gnupg_home_dir: str = ""

    @classmethod
    def from_fingerprint(cls, fingerprint: str) -> "PgpMasterKey":
        """Create a key for ``fingerprint``; spaces in it are removed."""
        return cls(fingerprint=fingerprint.replace(" ", ""))

    def __str__(self) -> str:
        return self.fingerprint

    def encrypt(self, data_key: bytes) -> None:
        """Encrypt ``data_key`` for this key's fingerprint and store the armored result."""
        args = [
            "--no-default-recipient",
            "--yes",
            "--encrypt",
            "-a",
            "-r",
            self.fingerprint,
            "--trusted-key",
            shorten_fingerprint(self.fingerprint),
            "--no-encrypt-to",
        ]
        try:
            stdout, _ = gpg_exec(self.gnupg_home_dir or None, args, bytes(data_key))
        except GpgError as error:
            log.info("Encryption failed (fingerprint=%s)", self.fingerprint)
            raise GpgError(
                "could not encrypt data key with PGP key: GnuPG binary error: "
                f"failed to encrypt sops data key with pgp: {_stderr_text(error)}",
                stdout=error.stdout,
                stderr=error.stderr,
            ) from error
        self.encrypted_key = stdout.strip().decode("utf-8")
        log.info("Encryption succeeded (fingerprint=%s)", self.fingerprint)

    def encrypt_if_needed(self, data_key: bytes) -> None:
        """Encrypt ``data_key`` only if no encrypted data key is held yet."""
        if not self.encrypted_key:
            self.encrypt(data_key)

    def decrypt(self) -> bytes:
        """Return the data key decrypted from ``encrypted_key``."""
        try:
            stdout, _ = gpg_exec(
                self.gnupg_home_dir or None, ["-d"], self.encrypted_key.encode("utf-8")
            )
        except GpgError as error:
            log.info("Decryption failed (fingerprint=%s)", self.fingerprint)
            raise GpgError(
                "could not decrypt data key with PGP key: GnuPG binary error: "
                f"failed to decrypt sops data key with pgp: {_stderr_text(error)}",
                stdout=error.stdout,
                stderr=error.stderr,
            ) from error
        if not stdout:
            # Older GnuPG versions may drop packets they do not understand
            # (such as AEAD ones) and succeed with no output at all.
            log.info("Decryption failed (fingerprint=%s)", self.fingerprint)
            raise GpgError(
                "could not decrypt data key with PGP key: GnuPG binary error: "
                "failed to decrypt sops data key with pgp: zero bytes returned"
            )
        log.info("Decryption succeeded (fingerprint=%s)", self.fingerprint)
        return stdout

    def needs_rotation(self) -> bool:
        """Return whether the key is older than the rotation period."""
        return _utc_now() - _as_utc(self.creation_date) > PGP_TTL

    def to_map(self) -> dict[str, Any]:
        """Return the key as a dictionary for serialisation."""
        return {
            "fp": self.fingerprint,
            "created_at": _as_utc(self.creation_date).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "enc": self.encrypted_key,
        }


def master_keys_from_fingerprint_string(fingerprints: str) -> list[PgpMasterKey]:
    """Create a key for each fingerprint in a comma separated list."""
    if not fingerprints:
        return []
    return [PgpMasterKey.from_fingerprint(part) for part in fingerprints.split(",")]