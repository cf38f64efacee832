from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status

from nolto_federation.core.encryption import DecryptionError, EncryptedMessage, MessageCipher
from nolto_federation.schemas import (
    DecryptBatchRequest,
    DecryptBatchResponse,
    DecryptResponse,
    EncryptRequest,
    StoredMessage,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/messages", tags=["messages", "v1"])


def get_message_cipher(request: Request) -> MessageCipher:
    """Dependency to get the MessageCipher; 503 while no key is configured."""
    cipher = request.app.state.message_cipher
    if cipher is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Message encryption is not configured",
        )
    return cipher


@router.post("/encrypt", response_model=StoredMessage)
async def encrypt_message(
    body: EncryptRequest,
    cipher: MessageCipher = Depends(get_message_cipher),
):
    sealed = cipher.seal(body.content)
    return StoredMessage(
        ciphertext_blob=sealed.ciphertext_blob, is_encrypted=sealed.is_encrypted
    )


@router.post("/decrypt", response_model=DecryptResponse)
async def decrypt_message(
    body: StoredMessage,
    cipher: MessageCipher = Depends(get_message_cipher),
):
    """Returns the readable body of one stored message.

    Raises:
        HTTPException: 422 if the blob is malformed or fails authentication.
    """
    try:
        content = cipher.open(
            EncryptedMessage(
                ciphertext_blob=body.ciphertext_blob, is_encrypted=body.is_encrypted
            )
        )
    except DecryptionError as e:
        logger.warning(f"Rejected message blob: {e}")
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Message could not be decrypted",
        )
    return DecryptResponse(content=content)


@router.post("/decrypt-batch", response_model=DecryptBatchResponse)
async def decrypt_messages(
    body: DecryptBatchRequest,
    cipher: MessageCipher = Depends(get_message_cipher),
):
    """Decrypts a conversation; one bad item never fails the whole batch."""
    contents = cipher.open_batch(
        EncryptedMessage(ciphertext_blob=m.ciphertext_blob, is_encrypted=m.is_encrypted)
        for m in body.messages
    )
    return DecryptBatchResponse(contents=contents)
