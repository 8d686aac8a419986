# roomd wire and runtime constants

# Message map keys
K_NAME = 0
K_BODY = 1
K_WHEN = 2

# Rename command
NICK_PREFIX = "/nick "
NICK_CONFIRM = "Your nick now is {name}"
NICK_REFUSED = "Nick too long (max {max} characters)"
NICK_MAX_CHARS = 32
DEFAULT_NAME_FMT = "User #{id}"

# Per-connection outbound buffer (messages).
MESSAGE_BUFFER_SIZE = 256

# A full message (body, a NICK_MAX_CHARS name of 4-byte characters and a
# microsecond timestamp) must fit the link MDU, 431 bytes at the default
# Reticulum MTU of 500.
MAX_BODY_BYTES = 256

# Slow consumer policies for Room fan-out
POLICY_BLOCK = "block"
POLICY_DROP = "drop"
POLICY_DISCONNECT = "disconnect"
SLOW_CONSUMER_POLICIES = (POLICY_BLOCK, POLICY_DROP, POLICY_DISCONNECT)
