"""
Vault Key Rotation — Batch re-encryption of stored credentials under a new key.

Re-encrypts the primary password of every credential, and the outgoing
password embedded in email credentials, from one key to another in
configurable batches. Records whose primary password already opens with the
new key are skipped, so an interrupted rotation can simply be run again.

The EncodedBlob format carries no key id: run this offline, with writers
stopped, then restart the service with the new key.

Security Note:
    Plaintext exists in memory only during re-encryption of each record.
    Never log plaintext or ciphertext values.
"""
import logging
from typing import Optional

from .audit import AuditRecorder
from .crypto import Cipher
from .exceptions import CipherError
from .models import (
    AuditAction,
    AuditEntry,
    AuditResource,
    CredentialRecord,
    CredentialType,
)
from .records import deserialize_email_config, dump_email_config, resolve_credential_type
from .storage import CredentialFilter, CredentialStore

logger = logging.getLogger("credential_vault.key_rotation")

SYSTEM_USER = "system"


def reencrypt_record(
    record: CredentialRecord,
    old_cipher: Cipher,
    new_cipher: Cipher,
) -> Optional[CredentialRecord]:
    """Return a copy of ``record`` sealed with the new key.

    Returns:
        None if the record is already readable with the new key.

    Raises:
        CipherError: If a blob cannot be opened with the old key.
    """
    if new_cipher.can_decrypt(record.password):
        return None
    rotated = record.model_copy(deep=True)
    rotated.password = new_cipher.encrypt(old_cipher.decrypt(record.password))
    if resolve_credential_type(record) is CredentialType.EMAIL:
        config = deserialize_email_config(record.notes)
        if config is not None and config.outgoing_password:
            config.outgoing_password = new_cipher.encrypt(
                old_cipher.decrypt(config.outgoing_password)
            )
            rotated.notes = dump_email_config(config)
    return rotated


async def rotate_encryption_key(
    store: CredentialStore,
    old_cipher: Cipher,
    new_cipher: Cipher,
    recorder: Optional[AuditRecorder] = None,
    batch_size: int = 100,
) -> dict:
    """Re-encrypt all credentials from ``old_cipher`` to ``new_cipher``.

    Args:
        store: Credential storage.
        old_cipher: Cipher holding the key currently protecting the data.
        new_cipher: Cipher holding the replacement key.
        recorder: Optional audit recorder; receives one summary entry.
        batch_size: Number of records fetched per batch.

    Returns:
        Stats dict with keys: total, rotated, errors, skipped.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be positive")

    stats = {"total": 0, "rotated": 0, "errors": 0, "skipped": 0}
    offset = 0
    everything = CredentialFilter()

    logger.info("Starting key rotation (batch_size=%d)", batch_size)

    while True:
        records = await store.find(everything, batch_size, offset)
        if not records:
            break

        batch_num = (offset // batch_size) + 1
        logger.info("Processing batch %d (%d records)", batch_num, len(records))

        for record in records:
            stats["total"] += 1
            try:
                rotated = reencrypt_record(record, old_cipher, new_cipher)
            except CipherError as err:
                logger.error(
                    "Error rotating credential id=%s: %s",
                    record.id, type(err).__name__,
                )
                stats["errors"] += 1
                continue
            if rotated is None:
                stats["skipped"] += 1
                continue
            await store.update(rotated)
            stats["rotated"] += 1

        offset += len(records)

    logger.info("Key rotation complete: %s", stats)

    if recorder is not None:
        await recorder.record(
            AuditEntry(
                user_id=SYSTEM_USER,
                user_role="SYSTEM",
                action=AuditAction.ROTATE_KEY,
                resource=AuditResource.SYSTEM,
                details=dict(stats),
                success=stats["errors"] == 0,
                error_message=(
                    f"{stats['errors']} credential(s) could not be rotated"
                    if stats["errors"] else None
                ),
            )
        )
    return stats
