"""
Project-wide immutable parameters for the bingo round automation.

These values define the public rules of the game and the driver's pacing.
Changing the game rules changes every card and every draw and MUST be
publicly announced.
"""

# Number space [1, MAX_NUMBER]
MAX_NUMBER = 90

# Numbers per card
CARD_SIZE = 24

# Probe cap for the draw/card loops
MAX_PROBES = 4096

# Chained round parameters
DEFAULT_JOIN_WINDOW_SEC = 240
DEFAULT_DRAW_INTERVAL_SEC = 5
NEXT_ROUND_START_DELAY_SEC = 10

# First round entry fee (raw units, 6 decimals)
DEFAULT_ENTRY_FEE = 1 * (10**6)

# Priority floor for submissions (raw fee units)
MIN_PRIORITY_FEE = 100_000
MIN_MAX_FEE = 500_000

# Replacement escalation: +30% per attempt
FEE_BUMP_NUM = 130
FEE_BUMP_DEN = 100
MAX_SUBMIT_ATTEMPTS = 12

# Notification stream reconnect backoff
STREAM_BACKOFF_INITIAL_SEC = 1.0
STREAM_BACKOFF_MAX_SEC = 30.0
STREAM_SILENCE_RESUBSCRIBE_SEC = 15.0
