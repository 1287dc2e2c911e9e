"""
Language model boundary.

The generation loop drives decoding one evaluation at a time through the
LanguageModel protocol; positions are explicit so the context window manager
stays the single owner of n_past. LlamaCppModel is the llama.cpp binding.

Model state blob layout (little-endian), stored inside the session file:
    magic      4 bytes  b"LLST"
    version    uint32
    n_tokens   int64
    seed       int64
    n_ids      uint32   length of input_ids
    rows, cols uint32   shape of the saved logits
    state_len  uint64   length of the llama.cpp context state
    input_ids  n_ids * int32
    scores     rows * cols * float32
    state      state_len bytes
"""
from __future__ import annotations

import codecs
import struct
from typing import Any, Dict, List, Protocol, Sequence

import numpy as np

from logging_setup import get_logger, Component
from .errors import DecodeFailure, EngineInitError
from .sampling import Sampler

logger = get_logger(Component.LLM)

STATE_MAGIC = b"LLST"
STATE_VERSION = 1
_STATE_HEADER = struct.Struct("<4sIqqIIIQ")


class LanguageModel(Protocol):
    n_ctx: int
    eos_token: int

    def tokenize(self, text: str, add_bos: bool = False) -> List[int]: ...

    def evaluate(self, tokens: Sequence[int], n_past: int) -> None: ...

    def sample(self, sampler: Sampler) -> int: ...

    # Called exactly once per token, in context order
    def token_to_text(self, token: int) -> str: ...

    def export_state(self) -> bytes: ...

    def import_state(self, blob: bytes) -> None: ...

    def close(self) -> None: ...


class PieceDecoder:
    """
    Incremental UTF-8 decoding of token pieces.

    Byte-level tokens can split one character across several pieces; bytes
    of an incomplete character are held back until the rest arrives.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def decode(self, piece: bytes) -> str:
        return self._decoder.decode(piece)


def pack_state(input_ids: Any, scores: Any, n_tokens: int, seed: int, llama_state: bytes) -> bytes:
    ids = np.ascontiguousarray(input_ids, dtype="<i4").reshape(-1)
    logits = np.ascontiguousarray(scores, dtype="<f4")
    if logits.ndim == 1:
        logits = logits.reshape(1, -1)
    if logits.ndim != 2:
        raise ValueError(f"scores must be 2-D, got shape {logits.shape}")
    rows, cols = logits.shape
    header = _STATE_HEADER.pack(
        STATE_MAGIC, STATE_VERSION, int(n_tokens), int(seed), ids.size, rows, cols, len(llama_state)
    )
    return b"".join((header, ids.tobytes(), logits.tobytes(), bytes(llama_state)))


def unpack_state(blob: bytes) -> Dict[str, Any]:
    """Fields of a packed model state. Raises ValueError on a malformed blob."""
    if len(blob) < _STATE_HEADER.size:
        raise ValueError("model state truncated before header")
    magic, version, n_tokens, seed, n_ids, rows, cols, state_len = _STATE_HEADER.unpack_from(blob, 0)
    if magic != STATE_MAGIC or version != STATE_VERSION:
        raise ValueError("not a model state blob")

    expected = _STATE_HEADER.size + n_ids * 4 + rows * cols * 4 + state_len
    if len(blob) != expected:
        raise ValueError(f"model state is {len(blob)} bytes, expected {expected}")

    offset = _STATE_HEADER.size
    input_ids = np.frombuffer(blob, dtype="<i4", count=n_ids, offset=offset).astype(np.intc)
    offset += n_ids * 4
    scores = np.frombuffer(blob, dtype="<f4", count=rows * cols, offset=offset).astype(np.single)
    offset += rows * cols * 4
    return {
        "input_ids": input_ids,
        "scores": scores.reshape(rows, cols),
        "n_tokens": n_tokens,
        "seed": seed,
        "llama_state": bytes(blob[offset:]),
    }


class LlamaCppModel:
    """llama-cpp-python backed model."""

    def __init__(
        self,
        model_path: str,
        n_ctx: int = 2048,
        n_threads: int = 4,
        n_gpu_layers: int = 999,
        use_gpu: bool = True,
        seed: int = 0,
    ):
        try:
            from llama_cpp import Llama
        except ImportError as e:
            raise EngineInitError(f"llama-cpp-python is not installed: {e}", path=model_path)

        logger.info("Loading language model", model=model_path, n_ctx=n_ctx, threads=n_threads)
        try:
            self._llm = Llama(
                model_path=model_path,
                n_ctx=n_ctx,
                n_threads=n_threads,
                n_gpu_layers=n_gpu_layers if use_gpu else 0,
                seed=seed,
                verbose=False,
            )
        except Exception as e:
            raise EngineInitError(f"Failed to load language model: {e}", path=model_path)

        self.n_ctx = self._llm.n_ctx()
        self.eos_token = self._llm.token_eos()
        self._pieces = PieceDecoder()

    def tokenize(self, text: str, add_bos: bool = False) -> List[int]:
        return list(self._llm.tokenize(text.encode("utf-8"), add_bos=add_bos, special=False))

    def evaluate(self, tokens: Sequence[int], n_past: int) -> None:
        if not tokens:
            return
        # Positions past n_past are overwritten by this batch
        self._llm.n_tokens = n_past
        try:
            self._llm.eval(list(tokens))
        except Exception as e:
            raise DecodeFailure(
                f"Evaluation failed: {e}",
                n_past=n_past,
                n_tokens=len(tokens),
            )

    def sample(self, sampler: Sampler) -> int:
        n = self._llm.n_tokens
        if n == 0:
            raise DecodeFailure("Nothing evaluated yet; no logits to sample from")
        logits = np.asarray(self._llm.scores[n - 1, :])
        return sampler.sample(logits)

    def token_to_text(self, token: int) -> str:
        return self._pieces.decode(self._llm.detokenize([token]))

    def export_state(self) -> bytes:
        state = self._llm.save_state()
        return pack_state(state.input_ids, state.scores, state.n_tokens, state.seed, state.llama_state)

    def import_state(self, blob: bytes) -> None:
        from llama_cpp import LlamaState

        fields = unpack_state(blob)
        self._llm.load_state(LlamaState(llama_state_size=len(fields["llama_state"]), **fields))

    def close(self) -> None:
        close = getattr(self._llm, "close", None)
        if close is not None:
            close()
        logger.info("Language model released")
