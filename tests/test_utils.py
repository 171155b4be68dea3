"""
Tests for diagnostics, timing and the run logger.
"""

import sys
import os
import io
import time

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from llama_infer.generate import GenerateResult
from llama_infer.utils import GenerationLogger, Timer, count_parameters, weight_summary
from llama_infer.weights import checkpoint_nbytes


class TestDiagnostics:
    def test_count_matches_file_size(self, make_checkpoint):
        for shared in (True, False):
            config, weights, _ = make_checkpoint(shared_weights=shared)
            assert count_parameters(weights) * 4 == checkpoint_nbytes(config)

    def test_shared_counted_once(self, make_checkpoint):
        _, shared, _ = make_checkpoint(shared_weights=True)
        _, separate, _ = make_checkpoint(shared_weights=False)
        assert count_parameters(separate) - count_parameters(shared) == 6 * 8

    def test_weight_summary(self, toy_checkpoint):
        _, weights = toy_checkpoint
        summary = weight_summary(weights)
        assert "token_embedding" in summary
        assert "wcls" in summary
        assert "separate" in summary
        assert f"{count_parameters(weights):,d}" in summary


class TestTimer:
    def test_elapsed(self):
        with Timer("sleep") as t:
            time.sleep(0.01)
        assert t.elapsed >= 0.005
        assert str(t).startswith("sleep: ")


class TestGenerationLogger:
    def test_console_only(self):
        stream = io.StringIO()
        logger = GenerationLogger(stream=stream)
        logger.log_info("loaded")
        logger.log_config("sampling", {"temperature": 0.0, "topp": 0.9})
        assert "[INFO] loaded" in stream.getvalue()
        assert "temperature" in stream.getvalue()
        assert logger.log_path is None

    def test_log_file(self, tmp_path):
        stream = io.StringIO()
        with GenerationLogger(log_dir=str(tmp_path / "logs"), stream=stream) as logger:
            logger.log_info("hello")
            logger.log_result(GenerateResult(text="ab", tokens=[1, 2], steps=2))
            path = logger.log_path
        assert os.path.basename(path).startswith("generate_")
        with open(path) as f:
            content = f.read()
        assert "[INFO] hello" in content
        assert "Achieved speed" in content


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
