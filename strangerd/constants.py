# strangerd protocol constants (numeric keys and message types)

STRANGER_VERSION = 1

# Envelope keys
K_V = 0
K_T = 1
K_ID = 2
K_TS = 3
K_SRC = 4
K_USER = 5
K_BODY = 6

# Inbound message types
T_JOIN = 10
T_LEAVE = 13
T_NEXT = 14

T_MSG = 20
T_TYPING = 21
T_STOPPED_TYPING = 22

T_PING = 40
T_PONG = 41

# Outbound message types
T_WAITING = 11
T_PAIRED = 12
T_STRANGER_LEFT = 15

T_STRANGER_TYPING = 23
T_STRANGER_STOPPED_TYPING = 24

T_ONLINE_STATS = 30

T_ERROR = 50

# JOIN body keys
B_JOIN_INTERESTS = 0

# PAIRED body keys
B_PAIRED_PARTNER = 0
B_PAIRED_SHARED = 1

# MSG body keys
B_MSG_TEXT = 0
B_MSG_FROM = 1

# ONLINE_STATS body keys
B_STATS_ONLINE = 0
B_STATS_WAITING = 1
B_STATS_ACTIVE = 2

# Reticulum request paths for the read-only side channel
PATH_STATS = "/stats"
PATH_HEALTH = "/health"

# Matching policies
MATCH_POLICY_FIFO = "fifo"
MATCH_POLICY_INTEREST = "interest"
MATCH_POLICIES = (MATCH_POLICY_FIFO, MATCH_POLICY_INTEREST)

USER_ID_MAX_CHARS = 64
