"""Destinations that decrypted or encrypted documents can be published to."""

from __future__ import annotations

import abc
import logging
import os
from typing import Any, Optional

import httpx

log = logging.getLogger(__name__)

DEFAULT_VAULT_ADDRESS = "https://127.0.0.1:8200"


class PublishNotImplementedError(NotImplementedError):
    """The destination does not support this kind of upload."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return f"NotImplementedError: {self.message}"


class Destination(abc.ABC):
    """A place that documents can be published to."""

    @abc.abstractmethod
    def path(self, file_name: str) -> str:
        """Return where ``file_name`` ends up in this destination."""

    @abc.abstractmethod
    def upload(self, file_contents: bytes, file_name: str) -> None:
        """Upload an encrypted document."""

    @abc.abstractmethod
    def upload_unencrypted(self, data: dict[str, Any], file_name: str) -> None:
        """Upload decrypted document data."""


def _vault_token() -> Optional[str]:
    token = os.environ.get("VAULT_TOKEN")
    if token:
        return token
    token_file = os.path.join(os.path.expanduser("~"), ".vault-token")
    try:
        with open(token_file, encoding="utf-8") as handle:
            return handle.read().strip() or None
    except OSError:
        return None


class VaultDestination(Destination):
    """A key/value secrets engine of a Vault server."""

    def __init__(
        self,
        vault_address: str = "",
        vault_path: str = "",
        kv_mount_name: str = "",
        kv_version: int = 2,
        client: Optional[httpx.Client] = None,
    ) -> None:
        if not vault_path.endswith("/"):
            vault_path += "/"
        if not kv_mount_name:
            kv_mount_name = "secret/"
        if not kv_mount_name.endswith("/"):
            kv_mount_name += "/"
        if kv_version not in (1, 2):
            kv_version = 2
        self.vault_address = vault_address
        self.vault_path = vault_path
        self.kv_mount_name = kv_mount_name
        self.kv_version = kv_version
        self._client = client

    def address(self) -> str:
        """Return the configured address, or the one from ``VAULT_ADDR``, or the default."""
        if self.vault_address:
            return self.vault_address
        return os.environ.get("VAULT_ADDR") or DEFAULT_VAULT_ADDRESS

    def secrets_path(self, file_name: str) -> str:
        """Return the API path of the secret for ``file_name``."""
        if self.kv_version == 1:
            return f"{self.kv_mount_name}{self.vault_path}{file_name}"
        return f"{self.kv_mount_name}data/{self.vault_path}{file_name}"

    def path(self, file_name: str) -> str:
        return f"{self.address()}/v1/{self.secrets_path(file_name)}"

    def upload(self, file_contents: bytes, file_name: str) -> None:
        raise PublishNotImplementedError(
            "Vault does not support uploading encrypted sops files directly."
        )

    def upload_unencrypted(self, data: dict[str, Any], file_name: str) -> None:
        """Write ``data`` as the secret for ``file_name``, unless it is already stored."""
        secrets_path = self.secrets_path(file_name)
        url = self.path(file_name)
        headers = {}
        token = _vault_token()
        if token:
            headers["X-Vault-Token"] = token

        client = self._client if self._client is not None else httpx.Client()
        try:
            existing = self._read(client, url, headers, secrets_path)
            if existing is not None:
                stored = existing.get("data")
                stored_data = stored.get("data") if isinstance(stored, dict) else None
                if stored_data == data:
                    log.info("Secret in %s is already up-to-date.", secrets_path)
                    return
            payload = data if self.kv_version == 1 else {"data": data}
            response = client.put(url, json=payload, headers=headers)
            response.raise_for_status()
        finally:
            if self._client is None:
                client.close()

    @staticmethod
    def _read(
        client: httpx.Client, url: str, headers: dict[str, str], secrets_path: str
    ) -> Optional[dict[str, Any]]:
        try:
            response = client.get(url, headers=headers)
            if response.status_code == 404:
                return None
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError):
            log.warning(
                "Cannot check if destination secret already exists in %s. New version "
                "will be created even if the data has not been changed.",
                secrets_path,
            )
            return None
        return body if isinstance(body, dict) else None