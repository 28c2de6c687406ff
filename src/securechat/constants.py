"""
SecureChat - Global Constants and Configuration Values

This module defines all constants used throughout the SecureChat package.
All magic numbers and configuration defaults are centralized here.

Version: 1.0.0
"""

# Version Information
VERSION = "1.0.0"
APP_NAME = "SecureChat"

# Connection Timeouts (seconds)
CONNECTION_TIMEOUT = 15
HANDSHAKE_TIMEOUT = 10
PEER_RETRY_DELAY = 3

# Message Limits
MAX_TEXT_MESSAGE_SIZE = 100 * 1024  # 100 KB
MAX_ENVELOPE_SIZE = 1024 * 1024  # 1 MB

# Cryptography Constants
CURVE_NAME = "secp384r1"  # NIST P-384
PUBLIC_KEY_SIZE = 97  # X9.62 uncompressed point for P-384
SHARED_KEY_SIZE = 32  # 256 bits for AES-256-GCM
NONCE_SIZE = 12  # 96 bits for AES-GCM
TAG_SIZE = 16  # 128-bit GCM authentication tag
FINGERPRINT_SIZE = 32  # SHA-256 digest

# Wire Format
ENVELOPE_TYPE_FIELD = "type"
ENVELOPE_KEY_EXCHANGE = "key-exchange"
ENVELOPE_KEY_EXCHANGE_COMPLETE = "key-exchange-complete"
ENVELOPE_ENCRYPTED_MESSAGE = "encrypted-message"
PLAINTEXT_TEXT_FIELD = "text"
PLAINTEXT_SENDER_FIELD = "from"

# Session Event Queue
SESSION_HISTORY_SIZE = 100  # Keep last 100 state transitions

# UI Configuration
UI_MAX_MESSAGE_HISTORY = 1000
UI_ERROR_DISPLAY_TIMEOUT = 5  # seconds

# File Paths
DEFAULT_DATA_DIR = "~/.securechat"
CONFIG_FILENAME = "config.toml"

# Logging Configuration
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
LOG_BACKUP_COUNT = 5

# Environment variable prefix for config overrides
ENV_PREFIX = "SECURECHAT"
