"""Configuration for the IPFS interop harness.

Values come from the environment (a local .env file is honoured) with the
defaults below.
"""

import os

from dotenv import load_dotenv
from libp2p.custom_types import TProtocol

load_dotenv()

# --- Daemon binaries ---
GO_IPFS_BIN = os.getenv("INTEROP_GO_BIN", "ipfs")
JS_IPFS_BIN = os.getenv("INTEROP_JS_BIN", "jsipfs")

# --- Identity key sizes (initOptions.bits) ---
GO_KEY_BITS = int(os.getenv("INTEROP_GO_BITS", "2048"))
JS_KEY_BITS = int(os.getenv("INTEROP_JS_BITS", "512"))

# --- Timeouts (seconds) ---
SPAWN_ATTEMPTS = int(os.getenv("INTEROP_SPAWN_ATTEMPTS", "160"))
SPAWN_INTERVAL = float(os.getenv("INTEROP_SPAWN_INTERVAL", "0.5"))
API_TIMEOUT = float(os.getenv("INTEROP_API_TIMEOUT", "60"))
STOP_TIMEOUT = float(os.getenv("INTEROP_STOP_TIMEOUT", "10"))
FETCH_TIMEOUT = float(os.getenv("INTEROP_FETCH_TIMEOUT", "30"))
PROPAGATION_TIMEOUT = float(os.getenv("INTEROP_PROPAGATION_TIMEOUT", "50"))

# --- Polling ---
SUBSCRIBE_ATTEMPTS = 5
SUBSCRIBE_INTERVAL = 2.0
CONNECT_ATTEMPTS = 10
CONNECT_INTERVAL = 0.5
CONDITION_POLL_INTERVAL = 0.05
CONDITION_TIMEOUT = 10.0

# --- Logging ---
LOG_LEVEL = os.getenv("INTEROP_LOG_LEVEL", "INFO").upper()

# --- Daemon options ---
NAMESYS_PUBSUB_ARG = "--enable-namesys-pubsub"

DEFAULT_CONFIG = {
    "Addresses": {
        "API": "/ip4/127.0.0.1/tcp/0",
        "Gateway": "/ip4/127.0.0.1/tcp/0",
        "Swarm": ["/ip4/0.0.0.0/tcp/0", "/ip4/0.0.0.0/tcp/0/ws"],
    }
}

# Path every record scenario publishes.
IPFS_REF = "/ipfs/QmPFVLPmp9zv5Z5KUqLhe2EivAGccQW2r7M7jhVJGLZoZU"
RECORD_TOPIC_PREFIX = b"/ipns/"

# --- Test matrices ---
KB = 1024
MB = KB * 1024

CONTENT_SIZES = [
    KB,
    62 * KB,
    64 * KB,
    512 * KB,
    768 * KB,
    1023 * KB,
    MB,
    4 * MB,
    8 * MB,
    64 * MB,
    128 * MB,
]

DIR_DEPTH = 5
DIR_FILE_COUNTS = [5, 10, 50]

# --- In-process (py-libp2p) nodes ---
PROC_LISTEN_IP = "127.0.0.1"
GOSSIPSUB_PROTOCOL_ID = TProtocol("/meshsub/1.0.0")
BLOCK_PROTOCOL_ID = TProtocol("/interop/blocks/1.0.0")
# mplex refuses writes larger than one frame
STREAM_WRITE_LIMIT = 64 * KB - 1
GOSSIPSUB_DEGREE = 6
GOSSIPSUB_DEGREE_LOW = 4
GOSSIPSUB_DEGREE_HIGH = 8
GOSSIPSUB_HEARTBEAT_INTERVAL = 1
GOSSIPSUB_HEARTBEAT_INITIAL_DELAY = 0.5
GOSSIPSUB_TIME_TO_LIVE = 60
GOSSIPSUB_GOSSIP_WINDOW = 3
GOSSIPSUB_GOSSIP_HISTORY = 5
SUBSCRIPTION_BUFFER = 100
