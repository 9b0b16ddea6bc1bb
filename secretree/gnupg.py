"""Helpers for running the GnuPG binary and managing GnuPG home directories."""

from __future__ import annotations

import logging
import os
import shutil
import stat
import subprocess
import tempfile
from dataclasses import dataclass
from typing import Any, Optional, Sequence

log = logging.getLogger(__name__)

SOPS_GPG_EXEC_ENV = "SOPS_GPG_EXEC"
"""Environment variable that overrides the GnuPG binary to run."""

_REQUIRED_PERMISSIONS = 0o700


class GpgError(Exception):
    """Running GnuPG, or preparing a GnuPG home for it, failed."""

    def __init__(self, message: str, *, stdout: bytes = b"", stderr: bytes = b"") -> None:
        super().__init__(message)
        self.stdout = stdout
        self.stderr = stderr


def gpg_binary() -> str:
    """Return the GnuPG binary to run, honouring ``SOPS_GPG_EXEC``."""
    return os.environ.get(SOPS_GPG_EXEC_ENV) or "gpg"


def gpg_exec(
    home_dir: Optional[str], args: Sequence[str], stdin: bytes = b""
) -> tuple[bytes, bytes]:
    """Run GnuPG with ``args``, restricted to ``home_dir`` when one is given.

    Returns the captured ``(stdout, stderr)``. Raises :class:`GpgError`,
    carrying both streams, when the command cannot start or fails.
    """
    command = [gpg_binary()]
    if home_dir:
        command += ["--homedir", home_dir]
    command += list(args)
    try:
        completed = subprocess.run(
            command, input=bytes(stdin), capture_output=True, check=False
        )
    except OSError as error:
        raise GpgError(f"failed to run {command[0]}: {error.strerror or error}") from error
    if completed.returncode != 0:
        if completed.returncode < 0:
            reason = f"signal: {-completed.returncode}"
        else:
            reason = f"exit status {completed.returncode}"
        raise GpgError(reason, stdout=completed.stdout, stderr=completed.stderr)
    return completed.stdout, completed.stderr


def _current_user_home() -> Optional[str]:
    try:
        import pwd
    except ImportError:
        return None
    try:
        return pwd.getpwuid(os.getuid()).pw_dir
    except (KeyError, AttributeError):
        return None


def gnupg_home_dir(custom_path: Optional[str] = None) -> str:
    """Return the GnuPG home directory.

    In order of preference: ``custom_path``, ``$GNUPGHOME``, the current
    user's home directory plus ``.gnupg``, and ``$HOME/.gnupg``.
    """
    if custom_path:
        return custom_path
    directory = os.environ.get("GNUPGHOME")
    if directory:
        return directory
    home = _current_user_home()
    if home is None:
        home = os.environ.get("HOME", "")
    return os.path.join(home, ".gnupg")


def shorten_fingerprint(fingerprint: str) -> str:
    """Return the short (16 hex digit) ID of ``fingerprint``.

    A trailing ``!`` is kept together with the 16 digits before it.
    """
    offset = len(fingerprint) - 16
    if fingerprint.endswith("!"):
        offset -= 1
    if offset > 0:
        return fingerprint[offset:]
    return fingerprint


@dataclass(frozen=True)
class GnuPGHome:
    """An absolute path to a GnuPG home directory."""

    path: str

    @classmethod
    def create(cls) -> "GnuPGHome":
        """Create a new, empty GnuPG home in a temporary directory.

        The caller removes it with :meth:`cleanup`, or uses the home as a
        context manager.
        """
        try:
            directory = tempfile.mkdtemp(prefix="sops-gnupghome-")
        except OSError as error:
            raise GpgError(f"failed to create new GnuPG home: {error}") from error
        os.chmod(directory, _REQUIRED_PERMISSIONS)
        return cls(directory)

    def __str__(self) -> str:
        return self.path

    def __enter__(self) -> "GnuPGHome":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.cleanup()

    def validate(self) -> None:
        """Check that the path is an absolute, existing directory with mode 0700."""
        if not self.path:
            raise GpgError("empty GNUPGHOME path")
        if not os.path.isabs(self.path):
            raise GpgError("GNUPGHOME must be an absolute path")
        try:
            info = os.lstat(self.path)
        except FileNotFoundError as error:
            raise GpgError("GNUPGHOME does not exist") from error
        except OSError as error:
            raise GpgError(f"cannot stat GNUPGHOME: {error}") from error
        if not stat.S_ISDIR(info.st_mode):
            raise GpgError("GNUPGHOME is not a directory")
        permissions = stat.S_IMODE(info.st_mode) & 0o777
        if permissions != _REQUIRED_PERMISSIONS:
            raise GpgError(
                f"GNUPGHOME has invalid permissions: got 0{permissions:o} "
                f"wanted 0{_REQUIRED_PERMISSIONS:o}"
            )

    def import_key(self, armored_key: bytes) -> None:
        """Import armored key data into this home's keyring."""
        try:
            self.validate()
        except GpgError as error:
            raise GpgError(
                f"cannot import armored key data into GnuPG keyring: {error}"
            ) from error
        try:
            gpg_exec(self.path, ["--batch", "--import"], armored_key)
        except GpgError as error:
            stderr_text = error.stderr.decode("utf-8", "replace").strip()
            reason = str(error)
            message = "failed to import armored key data into GnuPG keyring"
            if stderr_text:
                if reason:
                    message += f" ({reason})"
                message += f": {stderr_text}"
            elif reason:
                message += f": {reason}"
            raise GpgError(message, stdout=error.stdout, stderr=error.stderr) from error

    def import_file(self, path: str | os.PathLike) -> None:
        """Import the armored key file at ``path`` into this home's keyring."""
        try:
            with open(path, "rb") as handle:
                armored_key = handle.read()
        except OSError as error:
            raise GpgError(f"cannot read armored key data from file: {error}") from error
        self.import_key(armored_key)

    def cleanup(self) -> None:
        """Delete this home directory, after checking that it is valid."""
        self.validate()
        shutil.rmtree(self.path)

    def apply_to_master_key(self, key: Any) -> None:
        """Make ``key`` use this home, if the home is valid."""
        try:
            self.validate()
        except GpgError:
            return
        key.gnupg_home_dir = self.path