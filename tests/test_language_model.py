"""
Tests for the language model helpers that do not need llama.cpp.

Verifies:
- Model state framing keeps ids, logits, counters and raw state intact
- Malformed state blobs are rejected instead of being interpreted
- Token pieces that split a character are held until it is complete
"""
import numpy as np
import pytest

from talk_loop.language_model import STATE_MAGIC, PieceDecoder, pack_state, unpack_state


def sample_state():
    return {
        "input_ids": np.array([1, 15043, 29892], dtype=np.intc),
        "scores": np.arange(6, dtype=np.single).reshape(2, 3),
        "n_tokens": 3,
        "seed": 1234,
        "llama_state": b"\x00kv\xffstate",
    }


def test_state_round_trip():
    state = sample_state()

    fields = unpack_state(pack_state(**state))

    assert fields["input_ids"].tolist() == [1, 15043, 29892]
    assert fields["input_ids"].dtype == np.intc
    assert fields["scores"].shape == (2, 3)
    assert fields["scores"].dtype == np.single
    np.testing.assert_array_equal(fields["scores"], state["scores"])
    assert fields["n_tokens"] == 3
    assert fields["seed"] == 1234
    assert fields["llama_state"] == b"\x00kv\xffstate"


def test_state_accepts_flat_scores():
    state = sample_state()
    state["scores"] = np.zeros(4, dtype=np.single)

    assert unpack_state(pack_state(**state))["scores"].shape == (1, 4)


def test_state_rejects_3d_scores():
    state = sample_state()
    state["scores"] = np.zeros((2, 2, 2), dtype=np.single)

    with pytest.raises(ValueError):
        pack_state(**state)


def test_blob_starts_with_magic():
    assert pack_state(**sample_state()).startswith(STATE_MAGIC)


@pytest.mark.parametrize("mangle", [
    lambda blob: b"NOPE" + blob[4:],
    lambda blob: blob[:10],
    lambda blob: blob[:-1],
    lambda blob: blob + b"\x00",
    lambda blob: b"",
])
def test_malformed_state_rejected(mangle):
    with pytest.raises(ValueError):
        unpack_state(mangle(pack_state(**sample_state())))


class TestPieceDecoder:
    def test_split_character_is_held(self):
        decoder = PieceDecoder()
        assert decoder.decode(b"caf\xc3") == "caf"
        assert decoder.decode(b"\xa9") == "é"

    def test_four_byte_character_across_pieces(self):
        decoder = PieceDecoder()
        encoded = "\U0001f600".encode("utf-8")
        assert [decoder.decode(encoded[i:i + 1]) for i in range(4)] == ["", "", "", "\U0001f600"]

    def test_invalid_byte_is_replaced(self):
        decoder = PieceDecoder()
        assert decoder.decode(b"\xff") == "\ufffd"
        assert decoder.decode(b"ok") == "ok"
