"""
Tests for the generation driver and its configuration.

The toy checkpoint (see conftest.py) predicts the successor of every token
under greedy decoding, so whole runs have known outputs:

  from BOS (1): 2 → 3 → 4 → 5 → 0 → 1 (BOS, stop)

Tests verify:
  1. The regression baseline for 5 greedy steps
  2. Generation stops when BOS is produced
  3. Prompt tokens are forced before sampling starts
  4. Step budget clamping, streaming callback, timing fields
  5. GenerationConfig validation and JSON persistence
"""

import sys
import os

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from llama_infer.config import GenerationConfig, resolve_steps
from llama_infer.device import WorkerPool
from llama_infer.errors import ConfigurationError, InvalidSeed, LlamaError, VocabularyError
from llama_infer.generate import GenerateResult, build_sampler, generate
from llama_infer.sampler import Prng, Sampler
from llama_infer.state import InferenceState


@pytest.fixture
def greedy():
    return Sampler(6, temperature=0.0, topp=0.9, rng=Prng(42))


class TestGreedyBaseline:
    def test_five_steps(self, toy_checkpoint, toy_tokenizer, greedy):
        """Seed 42, temperature 0, 5 steps from BOS."""
        config, weights = toy_checkpoint
        result = generate(config, weights, toy_tokenizer, greedy, steps=5)
        assert result.tokens == [2, 3, 4, 5, 0]
        assert result.steps == 5
        assert result.text == "\n</s>\n abc<unk>"

    def test_parallel_pool_same_tokens(self, toy_checkpoint, toy_tokenizer, greedy):
        config, weights = toy_checkpoint
        with WorkerPool(2) as pool:
            result = generate(config, weights, toy_tokenizer, greedy, steps=5, pool=pool)
        assert result.tokens == [2, 3, 4, 5, 0]

    def test_stops_on_bos(self, toy_checkpoint, toy_tokenizer, greedy):
        """0 → 1 is BOS: the run ends after 6 forward passes, BOS not emitted."""
        config, weights = toy_checkpoint
        result = generate(config, weights, toy_tokenizer, greedy, steps=0)
        assert result.tokens == [2, 3, 4, 5, 0]
        assert result.steps == 6

    def test_shared_classifier_stops_immediately(self, make_checkpoint, toy_tokenizer, greedy):
        """With wcls = embedding the argmax after BOS is BOS itself."""
        config, weights, _ = make_checkpoint(shared_weights=True)
        result = generate(config, weights, toy_tokenizer, greedy, steps=10)
        assert result.tokens == []
        assert result.text == ""
        assert result.steps == 1


class TestPrompt:
    def test_prompt_tokens_forced(self, toy_checkpoint, toy_tokenizer, greedy):
        """
        "cb" → [5, 4] is forced at pos 0 and 1, then the successor chain
        resumes from 4: 5, 0, then BOS.
        """
        config, weights = toy_checkpoint
        result = generate(config, weights, toy_tokenizer, greedy, prompt="cb", steps=10)
        assert result.tokens == [5, 4, 5, 0]
        assert result.prompt_tokens == 2
        assert result.generated_tokens == 2
        assert result.steps == 5
        assert result.text == "cbc<unk>"

    def test_prompt_longer_than_steps(self, toy_checkpoint, toy_tokenizer, greedy):
        config, weights = toy_checkpoint
        result = generate(config, weights, toy_tokenizer, greedy, prompt="cbcb", steps=2)
        assert result.tokens == [5, 4]
        assert result.generated_tokens == 0

    def test_unknown_prompt_character(self, toy_checkpoint, toy_tokenizer, greedy):
        config, weights = toy_checkpoint
        with pytest.raises(VocabularyError):
            generate(config, weights, toy_tokenizer, greedy, prompt="z")


class TestDriver:
    def test_steps_clamped_to_seq_len(self, toy_checkpoint, toy_tokenizer):
        """A step budget above seq_len runs at most seq_len steps."""
        config, weights = toy_checkpoint
        sampler = Sampler(6, temperature=1.0, topp=0.0, rng=Prng(42))
        result = generate(config, weights, toy_tokenizer, sampler, steps=1000)
        assert result.steps <= config.seq_len

    def test_on_piece_streams_text(self, toy_checkpoint, toy_tokenizer, greedy):
        config, weights = toy_checkpoint
        pieces = []
        result = generate(config, weights, toy_tokenizer, greedy, steps=5, on_piece=pieces.append)
        assert pieces == ["\n</s>\n", " a", "b", "c", "<unk>"]
        assert "".join(pieces) == result.text

    def test_reused_state_after_reset(self, toy_checkpoint, toy_tokenizer, greedy):
        config, weights = toy_checkpoint
        state = InferenceState.new(config)
        first = generate(config, weights, toy_tokenizer, greedy, steps=5, state=state)
        state.reset()
        second = generate(config, weights, toy_tokenizer, greedy, steps=5, state=state)
        assert first.tokens == second.tokens

    def test_sampling_is_reproducible(self, make_checkpoint, toy_tokenizer):
        config, weights, _ = make_checkpoint(random=True)

        def run():
            sampler = Sampler(6, temperature=1.0, topp=0.9, rng=Prng(42))
            return generate(config, weights, toy_tokenizer, sampler, steps=12).tokens

        assert run() == run()

    def test_result_stats(self, toy_checkpoint, toy_tokenizer, greedy):
        config, weights = toy_checkpoint
        result = generate(config, weights, toy_tokenizer, greedy, steps=5)
        assert result.total_ms >= result.decode_ms >= 0.0
        assert result.tok_per_sec >= 0.0
        stats = result.stats_string()
        assert "Output tokens  : 5" in stats
        assert "tok/s" in stats

    def test_tok_per_sec_needs_two_steps(self):
        result = GenerateResult(text="", steps=1, decode_ms=10.0)
        assert result.tok_per_sec == 0.0
        result = GenerateResult(text="", steps=11, decode_ms=1000.0)
        assert result.tok_per_sec == pytest.approx(10.0)


class TestGenerationConfig:
    def test_resolve_steps(self):
        assert GenerationConfig(steps=0).resolve_steps(256) == 256
        assert GenerationConfig(steps=-3).resolve_steps(256) == 256
        assert GenerationConfig(steps=999).resolve_steps(256) == 256
        assert GenerationConfig(steps=10).resolve_steps(256) == 10

    def test_single_step_clamp(self):
        """The config method and generate() share one clamp."""
        assert resolve_steps(0, 16) == 16
        assert resolve_steps(17, 16) == 16
        assert resolve_steps(16, 16) == 16
        assert resolve_steps(1, 16) == 1

    def test_negative_temperature(self):
        with pytest.raises(ConfigurationError):
            GenerationConfig(temperature=-0.1).validate()

    def test_bad_workers(self):
        with pytest.raises(ConfigurationError):
            GenerationConfig(n_workers=0).validate()

    def test_save_load(self, tmp_path):
        cfg = GenerationConfig(temperature=0.5, topp=0.8, seed=7, steps=64, n_workers=2)
        path = str(tmp_path / "gen" / "config.json")
        cfg.save(path)
        assert GenerationConfig.load(path) == cfg

    def test_unknown_key_named(self, tmp_path):
        path = tmp_path / "gen.json"
        path.write_text('{"temp": 0.5}')
        with pytest.raises(ConfigurationError, match="temp"):
            GenerationConfig.load(str(path))

    def test_malformed_json(self, tmp_path):
        path = tmp_path / "gen.json"
        path.write_text("{not json")
        with pytest.raises(ConfigurationError, match="not valid JSON"):
            GenerationConfig.load(str(path))

    def test_binary_file(self, tmp_path):
        path = tmp_path / "gen.json"
        path.write_bytes(b"\xff\xfe\x00garbage")
        with pytest.raises(ConfigurationError):
            GenerationConfig.load(str(path))

    def test_not_an_object(self, tmp_path):
        path = tmp_path / "gen.json"
        path.write_text("[0.5, 0.9]")
        with pytest.raises(ConfigurationError, match="JSON object"):
            GenerationConfig.load(str(path))

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError):
            GenerationConfig.load(str(tmp_path / "absent.json"))

    @pytest.mark.parametrize("field,value", [
        ("temperature", "hot"),
        ("topp", None),
        ("steps", 1.5),
        ("seed", "42"),
        ("n_workers", True),
    ])
    def test_wrong_types(self, field, value):
        with pytest.raises(ConfigurationError, match=field):
            GenerationConfig(**{field: value}).validate()

    def test_config_errors_are_llama_errors(self, tmp_path):
        """The CLI catches LlamaError, so a bad config file exits cleanly."""
        path = tmp_path / "gen.json"
        path.write_text('{"steps": 10, "top_k": 40}')
        with pytest.raises(LlamaError):
            GenerationConfig.load(str(path))

    def test_build_sampler_seed_zero(self):
        with pytest.raises(InvalidSeed):
            build_sampler(GenerationConfig(seed=0), 6)

    def test_build_sampler_clock_seed(self):
        sampler = build_sampler(GenerationConfig(seed=None, temperature=0.7), 6)
        assert sampler.temperature == 0.7
        assert sampler.rng is not None


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
