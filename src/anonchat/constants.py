"""
AnonChat - Global Constants and Configuration Values

This module defines all constants used throughout the AnonChat client.
All magic numbers and configuration defaults are centralized here.

Author: anonchat contributors
Version: 1.0.0
"""

# Version Information
VERSION = "1.0.0"
APP_NAME = "AnonChat"

# Message Store Server
DEFAULT_SERVER_URL = "http://localhost:8080"
MESSAGES_PATH = "/messages"
WEBSOCKET_PATH = "/ws"

# Timeouts (seconds)
REQUEST_TIMEOUT = 30.0
CONNECT_TIMEOUT = 10.0
RECONNECT_DELAY = 3.0  # live feed reconnect back-off

# Cryptography Constants
# The tag names the whole tuple: ECDH on P-256, AES-256-GCM, 128-bit tag
ALGORITHM_TAG = "ECDH-P256+A256GCM"
CURVE_NAME = "P-256"
SHARED_KEY_SIZE = 32  # 256 bits, raw ECDH output used as the AES key
NONCE_SIZE = 12  # 96 bits for AES-GCM
TAG_SIZE = 16  # 128-bit GCM authentication tag
SALT_SIZE = 16  # 128 bits
ARGON2_TIME_COST = 3
ARGON2_MEMORY_COST = 65536  # 64 MB
ARGON2_PARALLELISM = 1

# Wire payload field names
PAYLOAD_TAG_FIELD = "algorithmTag"
PAYLOAD_IV_FIELD = "iv"
PAYLOAD_CIPHERTEXT_FIELD = "ciphertext"

# Account file
ACCOUNT_FILE_VERSION = 1
ACCOUNT_FILENAME = "anon-chat-account.json"

# File Paths
DEFAULT_DATA_DIR = "~/.anonchat"
KEYPAIR_FILENAME = "keypair.json"
PROFILE_FILENAME = "profile.json"
PEER_KEYS_FILENAME = "peer_keys.json"
CONFIG_FILENAME = "config.toml"
LOGS_DIR = "logs"
LOG_FILENAME = "anonchat.log"

# Logging Configuration
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
LOG_BACKUP_COUNT = 5

# Conversation Sync
SYNC_MAX_HISTORY = 100  # state transitions kept for diagnostics
