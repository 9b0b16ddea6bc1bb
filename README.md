# secretree

`secretree` keeps structured documents encrypted value by value. Keys stay
readable, so documents remain easy to diff and merge, while every value is
encrypted with a single data key. Encrypting or decrypting a document returns
a SHA-512 MAC computed over the values and their order, which lets the caller
detect tampering.

The data key is protected by master keys grouped into key groups. With more
than one group the data key is split with Shamir's Secret Sharing, so that any
threshold of groups can recover it.

## Installation

```
pip install secretree
```

PGP master keys run the GnuPG binary, so `gpg` must be installed. Set the
`SOPS_GPG_EXEC` environment variable to run a different binary.

## Modules

- `secretree.shamir`: `split(secret, parts, threshold)` and `combine(parts)`
  over GF(2^8), plus the field operations `add`, `mult`, `div`, `inverse`,
  `Polynomial` and `interpolate_polynomial`. Invalid arguments raise
  `ValueError`.
- `secretree.tree`: `TreeBranch`, `TreeItem` and `Comment`, the ordered tree a
  document is held in. `TreeBranch.set(path, value)` creates what is missing
  and returns whether anything changed; `unset(path)` removes a value;
  `truncate(path)` returns the part of the tree at a path. Paths mix string
  keys and integer list indices. `emit_as_map(branches)` flattens branches into
  nested dictionaries without comments, and `to_bytes(value)` gives the bytes a
  value contributes to the MAC.
- `secretree.metadata`: `Metadata` with its key groups and the rules that pick
  which values are encrypted (`unencrypted_suffix`, `encrypted_suffix`,
  `unencrypted_regex`, `encrypted_regex`, `unencrypted_comment_regex`,
  `encrypted_comment_regex`, `mac_only_encrypted`).
  `update_master_keys(data_key, key_services)` encrypts the data key with every
  master key; `get_data_key(key_services, decryption_order)` recovers it,
  trying key types in `decryption_order` first (default order: `age`, then
  `pgp`). `MasterKey` and `KeyService` are the base classes to implement;
  `LocalKeyService` uses master keys directly.
- `secretree.document`: `Tree`, which encrypts and decrypts its branches in
  place with a `Cipher` and returns the MAC as upper-case hex.
  `generate_data_key(key_services)` creates a random 32-byte data key and
  encrypts it with all master keys.
- `secretree.pgp`: `PgpMasterKey`, a master key held by a GnuPG key, and
  `master_keys_from_fingerprint_string` for comma separated fingerprints.
- `secretree.gnupg`: `GnuPGHome` for throwaway keyrings (`create`,
  `import_key`, `import_file`, `validate`, `cleanup`, usable as a context
  manager), `gpg_exec`, `gpg_binary`, `gnupg_home_dir` and
  `shorten_fingerprint`.
- `secretree.publish`: `VaultDestination`, which writes decrypted data to a
  Vault KV store (version 1 or 2) over HTTP. The address comes from the
  constructor, `VAULT_ADDR`, or `https://127.0.0.1:8200`; the token from
  `VAULT_TOKEN` or `~/.vault-token`. Data equal to what is already stored is
  not written again. Uploading encrypted files raises
  `PublishNotImplementedError`.

## Example: splitting a secret

```python
from secretree.shamir import split, combine

shares = split(b"placeholder", parts=5, threshold=3)
assert combine(shares[:3]) == b"placeholder"
```

## Example: editing a tree

```python
from secretree.tree import TreeBranch, TreeItem

branch = TreeBranch([TreeItem("db", TreeBranch([TreeItem("user", "app")]))])
changed = branch.set(["db", "name"], "orders")
print(changed)                          # True
print(branch.truncate(["db", "name"]))  # orders
branch.unset(["db", "name"])
```

## Example: encrypting a document

`Tree` works with any `Cipher`. The one below only reverses text and is
useful for trying things out, not for protecting anything:

```python
from secretree.document import Cipher, Tree
from secretree.metadata import Metadata
from secretree.tree import TreeBranch, TreeItem, to_bytes


class ReversingCipher(Cipher):
    def encrypt(self, plaintext, key, additional_data):
        return to_bytes(plaintext).decode()[::-1]

    def decrypt(self, ciphertext, key, additional_data):
        return ciphertext[::-1]


branch = TreeBranch([TreeItem("user", "app"), TreeItem("host_unencrypted", "db.example.com")])
tree = Tree(branches=[branch], metadata=Metadata(unencrypted_suffix="_unencrypted"))
key = bytes(32)
mac = tree.encrypt(key, ReversingCipher())
assert tree.decrypt(key, ReversingCipher()) == mac
```

With real master keys, give the metadata key groups and let the tree make the
data key:

```python
from secretree.pgp import master_keys_from_fingerprint_string

tree.metadata.key_groups = [master_keys_from_fingerprint_string("FINGERPRINT")]
data_key = tree.generate_data_key()
```

## Errors

Failures are raised as exceptions: `SopsKeyNotFound` for a missing key or
index, `SopsError` while walking, encrypting or decrypting a tree,
`UpdateMasterKeysError` when master keys cannot encrypt the data key,
`GetDataKeyError` when too few key groups could be decrypted, and `GpgError`
when GnuPG fails.

## What this package does not do

- It has no command line program.
- It has no readers or writers for file formats such as JSON or YAML; documents
  are built and read as `TreeBranch` objects.
- It ships no value cipher: a `Cipher` implementation must be supplied.
- PGP is the only master key type provided; other key types can be added by
  subclassing `MasterKey`. There is no remote key service.
- Comparing a computed MAC with a stored one is left to the caller.

## Tests

```
pip install -e .[test]
pytest
```