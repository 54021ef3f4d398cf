""" Configuration module. Can be used to fine-tune retries, timeouts and storage. """


#
# Paxos Logic (Retries - Fine tuning)
#


MAX_PREPARE_ATTEMPTS = 10
"""int: Max number of prepare phases a proposer runs in one round before it reports a liveness stall.

dependences: the more proposers compete, the higher this value should be.
Note: None means retry until a quorum promised. This only terminates if contention eventually stops, so it should only
be used in closed simulations.
default = 10 attempts
"""


RETRY_BACKOFF = 0.05
"""float: Base of the randomized exponential backoff between two prepare attempts.

The delay before attempt k+1 is drawn uniformly from [0, RETRY_BACKOFF * 2**(k-1)] and capped by MAX_RETRY_BACKOFF.
Set it to 0 to retry immediately.
default = 0.05 seconds
"""


MAX_RETRY_BACKOFF = 1
"""float: Upper bound of the backoff between two prepare attempts.

default = 1 second
"""


RESPONSE_TIMEOUT = 2
"""float: Time a proposer waits for a single acceptor or learner to respond before counting it as missing.

dependences: should be larger than the expected round trip time.
Note: None disables the timeout, a peer that never responds then stalls the phase unless a quorum answered.
default = 2 seconds
"""

#
# Network
#


MAX_MESSAGE_LENGTH = 10000000
"""int: Max size of a single message in bytes.

default = 10 Megabyte
"""

#
# Storage
#


DB_BASE_PATH = '~/.pisynod'
"""str: Directory holding one LevelDB database per node (node_<id>).
"""
