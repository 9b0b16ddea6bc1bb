import os
import stat
from types import SimpleNamespace

import pytest

from secretree.gnupg import (
    SOPS_GPG_EXEC_ENV,
    GnuPGHome,
    GpgError,
    gnupg_home_dir,
    gpg_binary,
    gpg_exec,
    shorten_fingerprint,
)

FINGERPRINT = "FBC7B9E2A4F9289AC0C1D4843D16CEE4A27381B4"


def _fake_gpg(tmp_path, monkeypatch, body):
    script = tmp_path / "fakegpg"
    script.write_text("#!/bin/sh\n" + body)
    script.chmod(0o755)
    monkeypatch.setenv(SOPS_GPG_EXEC_ENV, str(script))
    return script


def _home(tmp_path, name="home"):
    directory = tmp_path / name
    directory.mkdir()
    os.chmod(directory, 0o700)
    return GnuPGHome(str(directory))


def test_shorten_fingerprint_keeps_last_sixteen_digits():
    assert shorten_fingerprint(FINGERPRINT) == FINGERPRINT[-16:]


def test_shorten_fingerprint_keeps_exclamation_mark():
    result = shorten_fingerprint(FINGERPRINT + "!")
    assert result == FINGERPRINT[-16:] + "!"


def test_shorten_fingerprint_leaves_short_ids():
    assert shorten_fingerprint("ABCDEF") == "ABCDEF"
    assert shorten_fingerprint(FINGERPRINT[-16:]) == FINGERPRINT[-16:]


def test_gpg_binary_default(monkeypatch):
    monkeypatch.delenv(SOPS_GPG_EXEC_ENV, raising=False)
    assert gpg_binary() == "gpg"


def test_gpg_binary_from_environment(monkeypatch):
    monkeypatch.setenv(SOPS_GPG_EXEC_ENV, "/opt/bin/gpg2")
    assert gpg_binary() == "/opt/bin/gpg2"


def test_gnupg_home_dir_custom_path_wins(monkeypatch):
    monkeypatch.setenv("GNUPGHOME", "/from/env")
    assert gnupg_home_dir("/custom") == "/custom"


def test_gnupg_home_dir_from_environment(monkeypatch):
    monkeypatch.setenv("GNUPGHOME", "/from/env")
    assert gnupg_home_dir("") == "/from/env"


def test_gnupg_home_dir_fallback(monkeypatch):
    monkeypatch.delenv("GNUPGHOME", raising=False)
    assert os.path.basename(gnupg_home_dir()) == ".gnupg"


def test_gpg_exec_passes_home_args_and_stdin(tmp_path, monkeypatch):
    _fake_gpg(tmp_path, monkeypatch, 'echo "$@"\ncat\n')
    stdout, stderr = gpg_exec("/h", ["-d"], b"data")
    assert stdout == b"--homedir /h -d\ndata"
    assert stderr == b""


def test_gpg_exec_without_home(tmp_path, monkeypatch):
    _fake_gpg(tmp_path, monkeypatch, 'echo "$@"\n')
    stdout, _ = gpg_exec("", ["--batch", "--import"])
    assert stdout == b"--batch --import\n"


def test_gpg_exec_failure_carries_stderr(tmp_path, monkeypatch):
    _fake_gpg(tmp_path, monkeypatch, "echo boom >&2\nexit 3\n")
    with pytest.raises(GpgError) as caught:
        gpg_exec(None, ["-d"], b"")
    assert str(caught.value) == "exit status 3"
    assert caught.value.stderr == b"boom\n"


def test_gpg_exec_missing_binary(tmp_path, monkeypatch):
    monkeypatch.setenv(SOPS_GPG_EXEC_ENV, str(tmp_path / "missing"))
    with pytest.raises(GpgError, match="failed to run"):
        gpg_exec(None, ["-d"], b"")


def test_create_makes_private_directory_and_cleanup_removes_it():
    home = GnuPGHome.create()
    try:
        assert os.path.isdir(home.path)
        assert stat.S_IMODE(os.stat(home.path).st_mode) == 0o700
        assert os.path.basename(home.path).startswith("sops-gnupghome-")
    finally:
        home.cleanup()
    assert not os.path.exists(home.path)


def test_context_manager_cleans_up():
    with GnuPGHome.create() as home:
        path = home.path
        assert os.path.basename(path).startswith("sops-gnupghome-")
        assert os.path.isabs(path)
        assert os.path.isdir(path)
    assert not os.path.exists(path)


def test_validate_empty_path():
    with pytest.raises(GpgError, match="empty GNUPGHOME path"):
        GnuPGHome("").validate()


def test_validate_relative_path():
    with pytest.raises(GpgError, match="must be an absolute path"):
        GnuPGHome("relative/dir").validate()


def test_validate_missing_directory(tmp_path):
    with pytest.raises(GpgError, match="does not exist"):
        GnuPGHome(str(tmp_path / "missing")).validate()


def test_validate_not_a_directory(tmp_path):
    target = tmp_path / "file"
    target.write_text("x")
    with pytest.raises(GpgError, match="not a directory"):
        GnuPGHome(str(target)).validate()


def test_validate_wrong_permissions(tmp_path):
    directory = tmp_path / "open"
    directory.mkdir()
    os.chmod(directory, 0o755)
    with pytest.raises(GpgError, match="got 0755 wanted 0700"):
        GnuPGHome(str(directory)).validate()


def test_import_key_runs_gpg_in_home(tmp_path, monkeypatch):
    args_file = tmp_path / "args"
    input_file = tmp_path / "input"
    _fake_gpg(
        tmp_path, monkeypatch, f'echo "$@" > "{args_file}"\ncat > "{input_file}"\n'
    )
    home = _home(tmp_path)
    home.import_key(b"armored key")
    assert args_file.read_text() == f"--homedir {home.path} --batch --import\n"
    assert input_file.read_bytes() == b"armored key"


def test_import_key_failure_message(tmp_path, monkeypatch):
    _fake_gpg(tmp_path, monkeypatch, "echo 'bad key' >&2\nexit 2\n")
    home = _home(tmp_path)
    with pytest.raises(GpgError) as caught:
        home.import_key(b"armored key")
    assert str(caught.value) == (
        "failed to import armored key data into GnuPG keyring (exit status 2): bad key"
    )


def test_import_key_failure_without_stderr(tmp_path, monkeypatch):
    _fake_gpg(tmp_path, monkeypatch, "exit 1\n")
    home = _home(tmp_path)
    with pytest.raises(GpgError) as caught:
        home.import_key(b"armored key")
    assert str(caught.value) == (
        "failed to import armored key data into GnuPG keyring: exit status 1"
    )


def test_import_key_invalid_home(tmp_path):
    with pytest.raises(GpgError, match="cannot import armored key data"):
        GnuPGHome(str(tmp_path / "missing")).import_key(b"armored key")


def test_import_file_reads_key(tmp_path, monkeypatch):
    input_file = tmp_path / "input"
    _fake_gpg(tmp_path, monkeypatch, f'cat > "{input_file}"\n')
    key_file = tmp_path / "key.asc"
    key_file.write_bytes(b"key file contents")
    _home(tmp_path).import_file(key_file)
    assert input_file.read_bytes() == b"key file contents"


def test_import_file_missing(tmp_path):
    with pytest.raises(GpgError, match="cannot read armored key data from file"):
        _home(tmp_path).import_file(tmp_path / "missing.asc")


def test_cleanup_refuses_invalid_home(tmp_path):
    directory = tmp_path / "open"
    directory.mkdir()
    os.chmod(directory, 0o755)
    with pytest.raises(GpgError, match="invalid permissions"):
        GnuPGHome(str(directory)).cleanup()
    assert directory.is_dir()


def test_apply_to_master_key_valid_home(tmp_path):
    home = _home(tmp_path)
    key = SimpleNamespace(gnupg_home_dir="")
    home.apply_to_master_key(key)
    assert key.gnupg_home_dir == home.path


def test_apply_to_master_key_invalid_home(tmp_path):
    key = SimpleNamespace(gnupg_home_dir="")
    GnuPGHome(str(tmp_path / "missing")).apply_to_master_key(key)
    assert key.gnupg_home_dir == ""