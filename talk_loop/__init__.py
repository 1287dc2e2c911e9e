"""
Talk loop: voice-driven conversation with a local language model.

Continuous microphone audio → speech segments → transcript → incremental
decoding inside a bounded context window → spoken reply.

- One turn at a time, on a single cooperative loop
- Context window with a fixed keep-prefix and last-N eviction
- Token cache persisted across restarts for prompt reuse
- Turns end on an antiprompt suffix, never on end-of-sequence alone
- All behavior is observable via structured logs and events
"""

__version__ = "0.1.0"
