"""Encryption and decryption of a whole document tree, with its MAC."""

from __future__ import annotations

import abc
import functools
import hashlib
import json
import logging
import re
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional, Sequence

from secretree.metadata import KeyService, Metadata
from secretree.tree import Comment, SopsError, TreeBranch, to_bytes

log = logging.getLogger(__name__)

MAC_ONLY_ENCRYPTED_INITIALIZATION = bytes.fromhex(
    "8a3fd2ad54ce66527b1034f3d147be0b0b975b3bf44f72c6fdadec8176f27d69"
)
"""Bytes fed to the MAC first when it covers only encrypted values.

They are the SHA-256 digest of ``b"sops"`` and make such a MAC always
differ from one computed over every value.
"""

DATA_KEY_SIZE = 32

LeafHandler = Callable[[Any, list, list], Any]


class Cipher(abc.ABC):
    """Encrypts and decrypts single values with the data key.

    A cipher must be able to decrypt every value it encrypts.
    """

    @abc.abstractmethod
    def encrypt(self, plaintext: Any, key: bytes, additional_data: str) -> str:
        """Encrypt ``plaintext`` with ``key``, authenticating ``additional_data``."""

    @abc.abstractmethod
    def decrypt(self, ciphertext: str, key: bytes, additional_data: str) -> Any:
        """Decrypt ``ciphertext`` with ``key``, authenticating ``additional_data``."""


@functools.lru_cache(maxsize=64)
def _compile(pattern: str) -> Optional[re.Pattern]:
    try:
        return re.compile(pattern)
    except re.error:
        return None


def _matches(pattern: str, text: str) -> bool:
    """Search ``text`` for ``pattern``; an invalid pattern matches nothing."""
    compiled = _compile(pattern)
    return compiled is not None and compiled.search(text) is not None


def _walk_value(value: Any, path: list, stack: list, on_leaf: LeafHandler) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return on_leaf(bytes(value).decode("utf-8"), path, stack)
    if isinstance(value, (str, bool, int, float, datetime, Comment)):
        return on_leaf(value, path, stack)
    if isinstance(value, TreeBranch):
        return _walk_branch(value, path, stack, on_leaf)
    if isinstance(value, list):
        return _walk_slice(value, path, stack, on_leaf)
    if value is None:
        # Nothing to encrypt or decrypt in an empty value.
        return None
    raise SopsError(f"Cannot walk value, unknown type: {type(value).__name__}")


def _walk_slice(values: list, path: list, stack: list, on_leaf: LeafHandler) -> list:
    stack = [*stack, []]
    for position, value in enumerate(values):
        is_comment = isinstance(value, Comment)
        if is_comment:
            # Active comments can switch encryption on for what follows them.
            stack[-1].append(value.value)
        values[position] = _walk_value(value, path, stack, on_leaf)
        if not is_comment:
            stack[-1] = []
    return values


def _walk_branch(branch: TreeBranch, path: list, stack: list, on_leaf: LeafHandler) -> TreeBranch:
    stack = [*stack, []]
    for item in branch:
        if isinstance(item.key, Comment):
            stack[-1].append(item.key.value)
            result = _walk_value(item.key, path, stack, on_leaf)
            if isinstance(result, Comment):
                item.key = result
            elif isinstance(result, str):
                item.key = Comment(result)
            else:
                raise SopsError(
                    "walking a Comment should give either a Comment or a string, "
                    f"was {type(result).__name__}"
                )
            continue
        value_is_comment = isinstance(item.value, Comment)
        if value_is_comment:
            stack[-1].append(item.value.value)
        if not isinstance(item.key, str):
            raise SopsError(
                f"Tree contains a non-string key (type {type(item.key).__name__}): "
                f"{item.key}. Only string keys are supported"
            )
        item.value = _walk_value(item.value, [*path, item.key], stack, on_leaf)
        if not value_is_comment:
            stack[-1] = []
    return branch


@dataclass
class Tree:
    """A document: its data branches and its metadata."""

    branches: list = field(default_factory=list)
    metadata: Metadata = field(default_factory=Metadata)
    file_path: str = ""

    def should_be_encrypted(
        self, path: Sequence[str], comments_stack: Sequence[Sequence[str]], is_comment: bool
    ) -> bool:
        """Decide from the metadata's rules whether the value at ``path`` is encrypted."""
        meta = self.metadata
        encrypted = True
        if meta.unencrypted_suffix:
            if any(part.endswith(meta.unencrypted_suffix) for part in path):
                encrypted = False
        if meta.encrypted_suffix:
            encrypted = any(part.endswith(meta.encrypted_suffix) for part in path)
        if meta.unencrypted_regex:
            if any(_matches(meta.unencrypted_regex, part) for part in path):
                encrypted = False
        if meta.encrypted_regex:
            encrypted = any(_matches(meta.encrypted_regex, part) for part in path)
        if meta.unencrypted_comment_regex:
            if any(
                _matches(meta.unencrypted_comment_regex, comment)
                for comments in comments_stack
                for comment in comments
            ):
                encrypted = False
        if meta.encrypted_comment_regex:
            last_level = len(comments_stack) - 1
            last_index = len(comments_stack[-1]) - 1
            encrypted = False
            for level, comments in enumerate(comments_stack):
                for index, comment in enumerate(comments):
                    # The matching comment line itself stays in cleartext.
                    if is_comment and level == last_level and index == last_index:
                        continue
                    if _matches(meta.encrypted_comment_regex, comment):
                        encrypted = True
                        break
                if encrypted:
                    break
        return encrypted

    def _new_hash(self) -> "hashlib._Hash":
        digest = hashlib.sha512()
        if self.metadata.mac_only_encrypted:
            digest.update(MAC_ONLY_ENCRYPTED_INITIALIZATION)
        return digest

    def _walk(self, on_leaf: LeafHandler) -> None:
        for branch in self.branches:
            try:
                _walk_branch(branch, [], [], on_leaf)
            except SopsError as error:
                raise SopsError(f"Error walking tree: {error}") from error

    def encrypt(self, key: bytes, cipher: Cipher) -> str:
        """Encrypt the values selected by the metadata in place and return the MAC.

        The MAC covers every value, or with ``mac_only_encrypted`` only the
        values that end up encrypted; comments are never covered.
        """
        meta = self.metadata
        digest = self._new_hash()

        def on_leaf(value: Any, path: list, stack: list) -> Any:
            is_comment = isinstance(value, Comment)
            encrypted = self.should_be_encrypted(path, stack, is_comment)
            if (not meta.mac_only_encrypted or encrypted) and not is_comment:
                try:
                    digest.update(to_bytes(value))
                except TypeError as error:
                    raise SopsError(f"Could not convert {value} to bytes: {error}") from error
            if not encrypted:
                return value
            try:
                result = cipher.encrypt(value, key, ":".join(path) + ":")
            except Exception as error:
                raise SopsError(f"Could not encrypt value: {error}") from error
            if (
                is_comment
                and meta.unencrypted_comment_regex
                and _matches(meta.unencrypted_comment_regex, result)
            ):
                quoted = json.dumps(result, ensure_ascii=False)
                raise SopsError(
                    f"Encrypted comment {quoted} matches UnencryptedCommentRegex! Make sure "
                    "that UnencryptedCommentRegex cannot match an encrypted comment."
                )
            return result

        self._walk(on_leaf)
        return digest.hexdigest().upper()

    def decrypt(self, key: bytes, cipher: Cipher) -> str:
        """Decrypt the values selected by the metadata in place and return the MAC.

        A comment that cannot be decrypted is assumed to be in cleartext
        and is left as it is.
        """
        log.debug("Decrypting tree")
        meta = self.metadata
        digest = self._new_hash()

        def on_leaf(value: Any, path: list, stack: list) -> Any:
            is_comment = isinstance(value, Comment)
            encrypted = self.should_be_encrypted(path, stack, is_comment)
            result = value
            if encrypted:
                additional_data = ":".join(path) + ":"
                if is_comment:
                    try:
                        result = cipher.decrypt(value.value, key, additional_data)
                    except Exception:
                        log.warning(
                            "Found possibly unencrypted comment in file. This is to be "
                            "expected if the file being decrypted was created with an "
                            "older version of SOPS. (comment=%s)",
                            value.value,
                        )
                        result = value
                else:
                    if not isinstance(value, str):
                        raise SopsError(
                            f"Could not decrypt value: expected a string, "
                            f"got {type(value).__name__}"
                        )
                    try:
                        result = cipher.decrypt(value, key, additional_data)
                    except Exception as error:
                        raise SopsError(f"Could not decrypt value: {error}") from error
            if (not meta.mac_only_encrypted or encrypted) and not isinstance(result, Comment):
                try:
                    digest.update(to_bytes(result))
                except TypeError as error:
                    raise SopsError(f"Could not convert {value} to bytes: {error}") from error
            return result

        self._walk(on_leaf)
        return digest.hexdigest().upper()

    def generate_data_key(self, key_services: Optional[Sequence[KeyService]] = None) -> bytes:
        """Create a random data key, encrypt it with every master key and return it.

        Raises :class:`~secretree.metadata.UpdateMasterKeysError` when a
        master key cannot encrypt it.
        """
        data_key = secrets.token_bytes(DATA_KEY_SIZE)
        self.metadata.update_master_keys(data_key, key_services)
        return data_key