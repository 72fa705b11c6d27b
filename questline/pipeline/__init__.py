"""Game-turn pipeline: Logic Engine -> Narrator -> State Reviewer.

Package layout:
    core.py      — run_turn() state machine, create_campaign(), keep_alive()
    brain.py     — Logic Engine prompt assembly + structured output parsing
    voice.py     — Narrator prompt assembly + state report stripping
    reviewer.py  — throttled State Reviewer pass
    keys.py      — model id mapping and BYOK / platform key resolution
    parsing.py   — code fences, JSON repair, hidden state reports
"""

from .core import create_campaign, keep_alive, run_turn  # noqa: F401
from .keys import ConfigurationError  # noqa: F401
