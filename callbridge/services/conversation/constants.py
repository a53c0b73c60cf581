"""Constants for phone conversations."""
import re

# Phrases the assistant uses when it restates the agreed plan
PLAN_PATTERNS = [
    re.compile(
        r"(?:so |okay |alright |got it)[,.]?\s*(?:the plan is|we'll|you want me to|i'll)\s*(.+)",
        re.IGNORECASE,
    ),
    re.compile(r"(?:to summarize|in summary)[,:]?\s*(.+)", re.IGNORECASE),
    re.compile(r"(?:i understand|sounds like)\s*(?:you want|we should)\s*(.+)", re.IGNORECASE),
]

FALLBACK_REPLY = "I didn't catch that. Could you repeat?"
LOOP_ERROR_GOODBYE = "Sorry, something went wrong on my end. I'll leave things as they are. Goodbye!"
TURN_LIMIT_GOODBYE = "We've covered a lot. I'll pass this along now. Goodbye!"

GREETING_LOG_CHARS = 3000
TERMINAL_LOG_LINES = 200
DEFAULT_MAX_TURNS = 20
