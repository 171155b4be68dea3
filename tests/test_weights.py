"""
Tests for the checkpoint header and the zero-copy WeightStore.

Tests verify:
  1. Header sign encodes the shared classifier
  2. Shared classifier IS the embedding tensor
  3. Views share memory with the backing buffer (zero copy)
  4. Truncated / malformed checkpoints raise FormatError
  5. Files load through a memory map
"""

import sys
import os
import struct

import torch
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from llama_infer.config import HEADER_SIZE, ModelConfig
from llama_infer.errors import FormatError
from llama_infer.weights import (
    SLOT_NAMES,
    WeightStore,
    checkpoint_nbytes,
    load_checkpoint,
    read_checkpoint,
)


class TestHeader:
    def test_roundtrip(self):
        config = ModelConfig(288, 768, 6, 6, 6, 32000, 256, shared_weights=True)
        assert ModelConfig.from_header(config.to_header()) == config

    def test_negative_vocab_means_separate_classifier(self):
        header = struct.pack("<7i", 8, 16, 2, 2, 2, -6, 16)
        config = ModelConfig.from_header(header)
        assert config.vocab_size == 6
        assert config.shared_weights is False

    def test_positive_vocab_means_shared(self):
        header = struct.pack("<7i", 8, 16, 2, 2, 2, 6, 16)
        assert ModelConfig.from_header(header).shared_weights is True

    def test_head_size(self):
        config = ModelConfig(288, 768, 6, 6, 6, 32000, 256)
        assert config.head_size == 48

    def test_short_header(self):
        with pytest.raises(FormatError):
            ModelConfig.from_header(b"\x00" * (HEADER_SIZE - 1))

    @pytest.mark.parametrize("fields", [
        (0, 16, 2, 2, 2, 6, 16),    # dim 0
        (8, 16, 2, 3, 3, 6, 16),    # dim not divisible by n_heads
        (6, 16, 2, 2, 2, 6, 16),    # odd head_size
        (8, 16, 2, 2, 2, 6, -1),    # negative seq_len
    ])
    def test_invalid_header(self, fields):
        with pytest.raises(FormatError):
            ModelConfig.from_header(struct.pack("<7i", *fields))


class TestWeightStore:
    def test_shared_classifier_is_embedding(self, make_checkpoint):
        config, weights, _ = make_checkpoint(shared_weights=True)
        assert weights.wcls is weights.token_embedding
        assert weights.shared_weights

    def test_separate_classifier(self, make_checkpoint):
        config, weights, _ = make_checkpoint(shared_weights=False)
        assert weights.wcls is not weights.token_embedding
        assert weights.wcls.shape == (config.vocab_size, config.dim)
        assert not weights.shared_weights

    def test_slot_shapes(self, toy_checkpoint):
        config, weights = toy_checkpoint
        assert weights.token_embedding.shape == (6, 8)
        assert weights.wq.shape == (2, 8, 8)
        assert weights.w1.shape == (2, 16, 8)
        assert weights.w2.shape == (2, 8, 16)
        assert weights.freq_cis_real.shape == (16, 2)
        assert weights.n_layers == 2

    def test_zero_copy(self, make_checkpoint):
        """Writing the backing buffer is visible through the views."""
        _, _, data = make_checkpoint()
        buffer = bytearray(data)
        _, weights = load_checkpoint(buffer)
        struct.pack_into("<f", buffer, HEADER_SIZE, 7.0)
        assert weights.token_embedding[0, 0].item() == 7.0

    def test_slot_offsets(self, make_checkpoint):
        """rms_att starts right after the embedding table."""
        config, _, data = make_checkpoint()
        buffer = bytearray(data)
        _, weights = load_checkpoint(buffer)
        offset = HEADER_SIZE + config.vocab_size * config.dim * 4
        struct.pack_into("<f", buffer, offset, -3.5)
        assert weights.rms_att[0, 0].item() == -3.5

    def test_nbytes(self, make_checkpoint):
        for shared in (True, False):
            config, _, data = make_checkpoint(shared_weights=shared)
            assert len(data) == HEADER_SIZE + checkpoint_nbytes(config)

    def test_truncated(self, make_checkpoint):
        _, _, data = make_checkpoint()
        with pytest.raises(FormatError):
            load_checkpoint(data[:-4])

    def test_header_only(self, make_checkpoint):
        _, _, data = make_checkpoint()
        with pytest.raises(FormatError):
            load_checkpoint(data[:HEADER_SIZE])

    def test_trailing_bytes_ignored(self, make_checkpoint):
        _, weights, data = make_checkpoint()
        _, loaded = load_checkpoint(data + b"\x00" * 16)
        assert torch.equal(loaded.wcls, weights.wcls)

    def test_layer_views(self, toy_checkpoint):
        config, weights = toy_checkpoint
        layer = weights.layer(1)
        assert torch.equal(layer.wq, weights.wq[1])
        assert layer.w2.shape == (config.dim, config.hidden_dim)

    def test_named_tensors_order(self, make_checkpoint):
        _, shared, _ = make_checkpoint(shared_weights=True)
        _, separate, _ = make_checkpoint(shared_weights=False)
        assert [n for n, _ in shared.named_tensors()] == list(SLOT_NAMES[:-1])
        assert [n for n, _ in separate.named_tensors()] == list(SLOT_NAMES)

    def test_frozen(self, toy_checkpoint):
        _, weights = toy_checkpoint
        with pytest.raises(Exception):
            weights.wq = torch.zeros(1)


class TestReadCheckpoint:
    def test_memory_mapped_file(self, make_checkpoint, tmp_path):
        config, weights, data = make_checkpoint()
        path = tmp_path / "model.bin"
        path.write_bytes(data)
        loaded_config, loaded = read_checkpoint(str(path))
        assert loaded_config == config
        assert torch.equal(loaded.w3, weights.w3)

    def test_tiny_file(self, tmp_path):
        path = tmp_path / "empty.bin"
        path.write_bytes(b"")
        with pytest.raises(FormatError):
            read_checkpoint(str(path))

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            read_checkpoint(str(tmp_path / "nope.bin"))


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
