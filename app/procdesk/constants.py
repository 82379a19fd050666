"""
Central constants for the ProcDesk application.
"""
from __future__ import annotations

# Attachments accepted per submission/resend
MAX_DOCUMENTS = 5

DEFAULT_PROCEDURE_TYPE = "General"

# Digits in the one-time sign-in code
ONE_TIME_CODE_DIGITS = 6

# Vault blob layout: MAGIC | nonce | tag | ciphertext
VAULT_MAGIC = b"PDV1"
VAULT_NONCE_BYTES = 12
VAULT_TAG_BYTES = 16
VAULT_KEY_BYTES = 32  # AES-256
