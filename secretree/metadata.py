"""Document metadata, master keys and recovery of the data key."""

from __future__ import annotations

import abc
import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar, Iterable, Optional, Sequence

from secretree import shamir
from secretree.tree import SopsError

log = logging.getLogger(__name__)

DEFAULT_DECRYPTION_ORDER: list[str] = ["age", "pgp"]
"""Key types tried first, in this order, when recovering the data key."""


class MasterKey(abc.ABC):
    """A key that can encrypt and decrypt the document's data key.

    Subclasses set ``key_type`` and keep the encrypted data key, as text,
    in ``encrypted_key``.
    """

    key_type: ClassVar[str] = ""
    encrypted_key: str = ""

    @abc.abstractmethod
    def encrypt(self, data_key: bytes) -> None:
        """Encrypt ``data_key`` and store the result in ``encrypted_key``."""

    @abc.abstractmethod
    def decrypt(self) -> bytes:
        """Return the data key decrypted from ``encrypted_key``."""

    @abc.abstractmethod
    def to_map(self) -> dict[str, Any]:
        """Return the key as a dictionary for serialisation."""

    def encrypt_if_needed(self, data_key: bytes) -> None:
        """Encrypt ``data_key`` unless the key already holds an encrypted one."""
        if not self.encrypted_key:
            self.encrypt(data_key)

    def needs_rotation(self) -> bool:
        """Return whether the data key should be rotated."""
        return False

    def __str__(self) -> str:
        return self.key_type


KeyGroup = list
"""A key group is a list of master keys that all encrypt the same part of the data key."""


class KeyService(abc.ABC):
    """A service that encrypts and decrypts data with master keys."""

    @abc.abstractmethod
    def encrypt(self, key: MasterKey, plaintext: bytes) -> bytes:
        """Encrypt ``plaintext`` with ``key`` and return the ciphertext."""

    @abc.abstractmethod
    def decrypt(self, key: MasterKey, ciphertext: bytes) -> bytes:
        """Decrypt ``ciphertext`` with ``key`` and return the plaintext."""


class LocalKeyService(KeyService):
    """A key service that uses the master keys directly, in this process."""

    def encrypt(self, key: MasterKey, plaintext: bytes) -> bytes:
        worker = copy.copy(key)
        worker.encrypted_key = ""
        worker.encrypt(plaintext)
        return worker.encrypted_key.encode("utf-8")

    def decrypt(self, key: MasterKey, ciphertext: bytes) -> bytes:
        worker = copy.copy(key)
        worker.encrypted_key = bytes(ciphertext).decode("utf-8")
        return worker.decrypt()


class UpdateMasterKeysError(SopsError):
    """Encrypting the data key with one or more master keys failed."""

    def __init__(self, errors: Sequence[Exception]) -> None:
        self.errors = list(errors)
        super().__init__("; ".join(str(error) for error in self.errors))


class DecryptKeyError(SopsError):
    """No key service could decrypt the data key with a master key."""

    def __init__(self, key_name: str, errors: Sequence[Exception]) -> None:
        self.key_name = key_name
        self.errors = list(errors)
        details = "; ".join(str(error) for error in self.errors) or "no key services"
        super().__init__(f"failed to decrypt data key with master key {key_name}: {details}")


class GetDataKeyError(SopsError):
    """Too few key groups could be decrypted to recover the data key."""

    def __init__(
        self,
        required_successful_key_groups: int,
        group_results: Sequence[Optional[Exception]],
    ) -> None:
        self.required_successful_key_groups = required_successful_key_groups
        self.group_results = list(group_results)
        succeeded = sum(result is None for result in self.group_results)
        lines = [
            f"Error getting data key: {required_successful_key_groups} successful groups "
            f"required, got {succeeded}"
        ]
        for index, result in enumerate(self.group_results):
            status = "success" if result is None else f"FAILED - {result}"
            lines.append(f"Group {index}: {status}")
        super().__init__("\n".join(lines))


def sort_key_group_indices(
    group: Sequence[MasterKey], decryption_order: Optional[Iterable[str]]
) -> list[int]:
    """Return the indices of ``group`` ordered by the position of each key type in ``decryption_order``.

    Key types not in the order come last; ties keep their original order.
    """
    priorities = {key_type: index for index, key_type in enumerate(decryption_order or ())}
    lowest = len(priorities) and max(priorities.values()) + 1
    lowest = max(lowest, len(list(decryption_order or ())))
    return sorted(
        range(len(group)),
        key=lambda index: priorities.get(group[index].key_type, lowest),
    )


def _decrypt_key(key: MasterKey, key_services: Sequence[KeyService]) -> bytes:
    ciphertext = key.encrypted_key.encode("utf-8")
    errors: list[Exception] = []
    for service in key_services:
        try:
            return service.decrypt(key, ciphertext)
        except Exception as error:  # any service failure means trying the next one
            errors.append(error)
    raise DecryptKeyError(str(key), errors)


def _decrypt_key_group(
    group: Sequence[MasterKey],
    key_services: Sequence[KeyService],
    decryption_order: Optional[Iterable[str]],
) -> bytes:
    errors: list[Exception] = []
    for index in sort_key_group_indices(group, decryption_order):
        try:
            return _decrypt_key(group[index], key_services)
        except DecryptKeyError as error:
            errors.append(error)
    details = "; ".join(str(error) for error in errors) or "no keys in group"
    raise SopsError(f"could not decrypt key group: {details}")


@dataclass
class Metadata:
    """Encryption and integrity information about a document."""

    last_modified: Optional[datetime] = None
    unencrypted_suffix: str = ""
    encrypted_suffix: str = ""
    unencrypted_regex: str = ""
    encrypted_regex: str = ""
    unencrypted_comment_regex: str = ""
    encrypted_comment_regex: str = ""
    message_authentication_code: str = ""
    mac_only_encrypted: bool = False
    version: str = ""
    key_groups: list[list[MasterKey]] = field(default_factory=list)
    shamir_threshold: int = 0
    data_key: Optional[bytes] = None

    def master_key_count(self) -> int:
        """Return the number of master keys over all key groups."""
        return sum(len(group) for group in self.key_groups)

    def update_master_keys(
        self, data_key: bytes, key_services: Optional[Sequence[KeyService]] = None
    ) -> None:
        """Encrypt ``data_key`` with every master key.

        With several key groups the data key is split with Shamir's Secret
        Sharing and each group encrypts one share. Without key services the
        keys are used locally. Raises :class:`UpdateMasterKeysError`; when
        only some keys fail, the data key is still stored before raising.
        """
        services = [LocalKeyService()] if key_services is None else list(key_services)
        if not services:
            raise UpdateMasterKeysError(
                [SopsError("no key services provided, cannot update master keys")]
            )
        if not self.key_groups:
            raise UpdateMasterKeysError([SopsError("no key groups provided")])

        if len(self.key_groups) == 1:
            parts = [bytes(data_key)]
        else:
            if self.shamir_threshold == 0:
                self.shamir_threshold = len(self.key_groups)
            log.info(
                "Splitting data key with Shamir Secret Sharing (quorum=%d, parts=%d)",
                self.shamir_threshold,
                len(self.key_groups),
            )
            try:
                parts = shamir.split(data_key, len(self.key_groups), self.shamir_threshold)
            except ValueError as error:
                raise UpdateMasterKeysError(
                    [SopsError(f"could not split data key into parts for Shamir: {error}")]
                ) from error

        errors: list[Exception] = []
        for group, part in zip(self.key_groups, parts):
            if not group:
                raise UpdateMasterKeysError([SopsError("empty key group provided")])
            for key in group:
                key_errors: list[Exception] = []
                for service in services:
                    try:
                        ciphertext = service.encrypt(key, part)
                    except Exception as error:  # try the next service
                        key_errors.append(
                            SopsError(
                                f"failed to encrypt new data key with master key "
                                f"{str(key)!r}: {error}"
                            )
                        )
                        continue
                    key.encrypted_key = bytes(ciphertext).decode("utf-8")
                    break
                else:
                    errors.extend(key_errors)

        self.data_key = bytes(data_key)
        if errors:
            raise UpdateMasterKeysError(errors)

    def get_data_key(
        self,
        key_services: Optional[Sequence[KeyService]] = None,
        decryption_order: Optional[Iterable[str]] = None,
    ) -> bytes:
        """Return the data key, decrypting it with the master keys if it is not cached."""
        if self.data_key is not None:
            return self.data_key
        services = [LocalKeyService()] if key_services is None else list(key_services)
        order = list(decryption_order) if decryption_order is not None else None

        parts: list[bytes] = []
        results: list[Optional[Exception]] = []
        for group in self.key_groups:
            try:
                parts.append(_decrypt_key_group(group, services, order))
                results.append(None)
            except SopsError as error:
                results.append(error)

        if len(self.key_groups) > 1:
            if len(parts) < self.shamir_threshold:
                raise GetDataKeyError(self.shamir_threshold, results)
            try:
                data_key = shamir.combine(parts)
            except ValueError as error:
                raise SopsError(f"could not get data key from shamir parts: {error}") from error
        else:
            if len(parts) != 1:
                raise GetDataKeyError(self.shamir_threshold, results)
            data_key = parts[0]

        log.info("Data key recovered successfully")
        self.data_key = data_key
        return data_key