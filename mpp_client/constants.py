# =============================================================================
# MPP Python Client -- Protocol Constants
# =============================================================================
#
# Wire opcodes and timing for the Multiplayer Piano gateway protocol.
# All durations are in seconds; wire timestamps are epoch milliseconds.
# =============================================================================

# -- Gateway -------------------------------------------------------------------

DEFAULT_GATEWAY = "wss://mppclone.com:8443"
DEFAULT_ORIGIN = "https://www.multiplayerpiano.com"
DEFAULT_ROOM = "lobby"
DEFAULT_USERNAME = "Anonymous"
DEFAULT_ROLE = "user"
UNKNOWN_ROLE = "unknown"

# -- Timing (seconds) --------------------------------------------------------

HEARTBEAT_INTERVAL = 20.0
KEEPALIVE_INTERVAL = 0.2
CONNECTION_TIMEOUT = 10.0
READY_TIMEOUT = 10.0

# -- Reconnection -------------------------------------------------------------

RECONNECT_MAX_ATTEMPTS = 3
RECONNECT_DELAY = 5.0

# -- Clock synchronization -----------------------------------------------------

CLOCK_SYNC_STEPS = 50
CLOCK_SYNC_DURATION = 1.0

# -- Queues --------------------------------------------------------------------

PENDING_QUEUE_SIZE = 1000
EVENT_QUEUE_SIZE = 1000

# -- Messages ------------------------------------------------------------------

MAX_MESSAGE_SIZE = 1_048_576  # 1 MB

# -- Wire opcodes (the "m" field) ----------------------------------------------

OP_HELLO = "hi"
OP_TIME = "t"
OP_CHANNEL = "ch"
OP_USER_SET = "userset"
OP_CHAT = "a"
OP_PARTICIPANT = "p"
OP_BYE = "bye"
OP_CURSOR = "m"

# -- WebSocket close codes -----------------------------------------------------

WS_CLOSE_NORMAL = 1000
WS_CLOSE_POLICY_VIOLATION = 1008
WS_CLOSE_AUTH_FAILED = 4401
WS_CLOSE_AUTH_EXPIRED = 4403

AUTH_CLOSE_CODES = frozenset(
    {WS_CLOSE_AUTH_FAILED, WS_CLOSE_AUTH_EXPIRED, WS_CLOSE_POLICY_VIOLATION}
)
AUTH_HTTP_STATUSES = frozenset({401, 403})
