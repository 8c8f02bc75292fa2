# medkey_core/constants.py

BUNDLE_VERSION = 1

RSA_KEY_SIZE = 2048
RSA_PUBLIC_EXPONENT = 65537
# OAEP output is always one modulus long
WRAPPED_KEY_LENGTH = RSA_KEY_SIZE // 8

CONTENT_KEY_LENGTH = 32  # AES-256
NONCE_LENGTH = 12        # 96-bit GCM nonce
PROBE_LENGTH = 32

# key store ids written by earlier role-scoped clients
LEGACY_KEY_PREFIXES = ("patient", "admin", "provider", "insurer")

DIVERGENCE_NOTICE = (
    "Your keys were regenerated. Records shared with you under the previous "
    "key are no longer accessible and must be shared again."
)

DEFAULT_DB_PATH = "db/medkey_keystore.db"
DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_INTERVAL = 1.0
DEFAULT_CONFIRM_ATTEMPTS = 4
DEFAULT_CONFIRM_INTERVAL = 3.0
