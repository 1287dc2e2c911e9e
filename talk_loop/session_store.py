"""
Session file persistence.

File layout (little-endian):
    magic   4 bytes  b"TLKS"
    version uint32
    count   uint32   number of tokens
    state   uint32   length of the engine state blob
    tokens  count * int32
    blob    state bytes (opaque, engine specific; may be empty)

Writes go to a temp file in the same directory followed by os.replace(), so a
crash mid-write leaves the previous file intact.
"""
from __future__ import annotations

import os
import struct
import tempfile
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np

from logging_setup import get_logger, Component
from .context_window import common_prefix_length
from .errors import SessionCorrupt, SessionNotFound

logger = get_logger(Component.SESSION_STORE)

MAGIC = b"TLKS"
VERSION = 1
_HEADER = struct.Struct("<4sIII")

# Reuse thresholds against the freshly tokenized prompt
LOW_SIMILARITY_RATIO = 0.5
RESAVE_RATIO = 0.75


@dataclass
class SessionData:
    tokens: List[int]
    state: bytes = b""

    @property
    def count(self) -> int:
        return len(self.tokens)


@dataclass(frozen=True)
class ReuseReport:
    """How well a loaded cache matches the prompt."""

    match_length: int
    prompt_length: int
    quality: str  # "exact" | "low" | "partial" | "none"
    need_to_save: bool

    @property
    def ratio(self) -> float:
        if self.prompt_length == 0:
            return 0.0
        return self.match_length / self.prompt_length


def classify_reuse(cache: Sequence[int], prompt_tokens: Sequence[int], persist: bool = True) -> ReuseReport:
    n_prompt = len(prompt_tokens)
    if not cache:
        return ReuseReport(0, n_prompt, "none", need_to_save=persist)

    m = common_prefix_length(cache, prompt_tokens)
    if m == n_prompt:
        quality = "exact"
    elif m < n_prompt * LOW_SIMILARITY_RATIO:
        quality = "low"
        logger.warning(
            "Session file has low similarity to prompt; most of it will be re-evaluated",
            match_length=m,
            prompt_length=n_prompt,
        )
    else:
        quality = "partial"
        logger.info(
            "Session file matches prompt partially",
            match_length=m,
            prompt_length=n_prompt,
            ratio=round(m / n_prompt, 3),
        )

    need_to_save = persist and m < n_prompt * RESAVE_RATIO
    return ReuseReport(m, n_prompt, quality, need_to_save)


class SessionStore:
    """Loads and saves the token cache."""

    def __init__(self, max_tokens: Optional[int] = None):
        # Loading more tokens than the context can hold means the file is not ours
        self.max_tokens = max_tokens

    def load(self, path: str) -> SessionData:
        if not path or not os.path.exists(path):
            raise SessionNotFound(f"No session file at {path}", path=path)

        try:
            with open(path, "rb") as f:
                raw = f.read()
        except OSError as e:
            raise SessionCorrupt(f"Unreadable session file: {e}", path=path)

        if len(raw) < _HEADER.size:
            raise SessionCorrupt("Session file truncated before header", path=path, size=len(raw))

        magic, version, count, state_len = _HEADER.unpack_from(raw, 0)
        if magic != MAGIC or version != VERSION:
            raise SessionCorrupt("Not a session file", path=path, version=version)
        if self.max_tokens is not None and count > self.max_tokens:
            raise SessionCorrupt(
                "Session token count exceeds capacity",
                path=path,
                count=count,
                capacity=self.max_tokens,
            )

        payload = len(raw) - _HEADER.size
        expected = count * 4 + state_len
        if payload != expected:
            raise SessionCorrupt(
                "Session token count does not match payload",
                path=path,
                count=count,
                payload_bytes=payload,
                expected_bytes=expected,
            )

        offset = _HEADER.size
        tokens = np.frombuffer(raw, dtype="<i4", count=count, offset=offset).tolist()
        state = raw[offset + count * 4:]
        logger.info("Session loaded", path=path, n_tokens=count, state_bytes=state_len)
        return SessionData(tokens=tokens, state=bytes(state))

    def save(self, path: str, tokens: Sequence[int], state: bytes = b"") -> None:
        arr = np.asarray(list(tokens), dtype="<i4")
        directory = os.path.dirname(os.path.abspath(path))
        os.makedirs(directory, exist_ok=True)

        fd, tmp_path = tempfile.mkstemp(prefix=".session-", dir=directory)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(_HEADER.pack(MAGIC, VERSION, arr.size, len(state)))
                f.write(arr.tobytes())
                f.write(state)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
        logger.info("Session saved", path=path, n_tokens=int(arr.size), state_bytes=len(state))
