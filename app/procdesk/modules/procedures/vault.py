"""
Document vault: at-rest encryption of procedure attachments.

Each stored document is one self-describing blob:

    MAGIC (4) | nonce (12) | tag (16) | ciphertext

encrypted with AES-256-GCM under a single process-wide key. The key is read
once at startup (`load_key`) and never logged or returned.
"""

from __future__ import annotations

import logging
import os
import secrets
import time
from pathlib import Path

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from app.procdesk.constants import VAULT_KEY_BYTES, VAULT_MAGIC, VAULT_NONCE_BYTES, VAULT_TAG_BYTES
from app.procdesk.errors import IntegrityError
from app.procdesk.storage import BlobNotFoundError, Storage, StorageError

logger = logging.getLogger(__name__)

_HEADER_BYTES = len(VAULT_MAGIC) + VAULT_NONCE_BYTES + VAULT_TAG_BYTES


def generate_key_file(path: str | Path) -> Path:
    """Create a new random key file. Refuses to overwrite an existing key."""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    # O_EXCL: never clobber a key that documents were encrypted under
    fd = os.open(p, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(secrets.token_bytes(VAULT_KEY_BYTES))
    logger.info("Generated vault key at %s", p)
    return p


def load_key(path: str | Path) -> bytes:
    p = Path(path)
    try:
        key = p.read_bytes()
    except FileNotFoundError:
        raise IntegrityError(f"Vault key file not found: {p}. Run scripts/init_db.py to create it.")
    if len(key) != VAULT_KEY_BYTES:
        raise IntegrityError(f"Vault key file {p} must hold exactly {VAULT_KEY_BYTES} bytes.")
    return key


def seal(data: bytes, key: bytes) -> bytes:
    nonce = secrets.token_bytes(VAULT_NONCE_BYTES)
    encryptor = Cipher(algorithms.AES(key), modes.GCM(nonce)).encryptor()
    ciphertext = encryptor.update(data) + encryptor.finalize()
    return VAULT_MAGIC + nonce + encryptor.tag + ciphertext


def unseal(blob: bytes, key: bytes) -> bytes:
    if len(blob) < _HEADER_BYTES or not blob.startswith(VAULT_MAGIC):
        raise IntegrityError("Stored document is malformed.")
    offset = len(VAULT_MAGIC)
    nonce = blob[offset:offset + VAULT_NONCE_BYTES]
    offset += VAULT_NONCE_BYTES
    tag = blob[offset:offset + VAULT_TAG_BYTES]
    ciphertext = blob[_HEADER_BYTES:]

    decryptor = Cipher(algorithms.AES(key), modes.GCM(nonce, tag)).decryptor()
    try:
        return decryptor.update(ciphertext) + decryptor.finalize()
    except InvalidTag:
        raise IntegrityError("Stored document failed its integrity check.")


class DocumentVault:
    def __init__(self, storage: Storage, key: bytes, *, prefix: str = "uploads") -> None:
        if len(key) != VAULT_KEY_BYTES:
            raise IntegrityError(f"Vault key must be {VAULT_KEY_BYTES} bytes.")
        self._storage = storage
        self._key = key
        self._prefix = prefix.strip("/")

    def __repr__(self) -> str:
        return f"DocumentVault(storage={self._storage!r})"

    def _key_for(self, handle: str) -> str:
        return f"{self._prefix}/{handle}" if self._prefix else handle

    @staticmethod
    def new_handle(owner_id: str) -> str:
        # Never derived from the document's display name.
        return f"{owner_id}_{int(time.time() * 1000)}_{secrets.token_hex(8)}.enc"

    def store(self, data: bytes, *, owner_id: str) -> str:
        handle = self.new_handle(owner_id)
        self._storage.put_bytes(self._key_for(handle), seal(data, self._key), content_type="application/octet-stream")
        logger.debug("Stored encrypted document %s (%d bytes)", handle, len(data))
        return handle

    def discard(self, handle: str) -> None:
        """Remove a stored blob. Missing blobs are ignored."""
        self._storage.delete(self._key_for(handle))
        logger.debug("Discarded encrypted document %s", handle)

    def retrieve(self, handle: str) -> bytes:
        try:
            blob = self._storage.get_bytes(self._key_for(handle))
        except BlobNotFoundError:
            logger.error("Vault blob missing: %s", handle)
            raise IntegrityError("Stored document is missing.")
        except StorageError as e:
            logger.error("Vault blob unreadable: %s (%s)", handle, e)
            raise IntegrityError("Stored document could not be read.")
        try:
            return unseal(blob, self._key)
        except IntegrityError:
            logger.error("Vault integrity check failed for %s", handle)
            raise
