"""
Text generation CLI for flat Llama-2 checkpoints.

USAGE:
    # Sample a story from scratch
    python scripts/generate_text.py stories15M.bin

    # Greedy continuation of a prompt
    python scripts/generate_text.py stories15M.bin --temperature 0 \
        --prompt "Once upon a time"

    # Reproducible sampling, 4 worker threads, settings from a JSON file
    python scripts/generate_text.py stories15M.bin --seed 42 --workers 4 \
        --config configs/generation.json

    # Interactive mode (type prompts, get completions)
    python scripts/generate_text.py stories15M.bin --interactive

WHAT THIS SCRIPT DOES:
    1. Memory-maps the checkpoint and reads its header
    2. Loads the vocabulary (tokenizer.bin)
    3. Streams generated text to stdout as it is produced
    4. Reports throughput (tok/s) on stderr

Settings come from --config (a GenerationConfig JSON) when given; any flag
passed explicitly overrides the file.
"""

import os
import sys
import argparse

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from llama_infer.config import GenerationConfig
from llama_infer.device import WorkerPool, configure_torch_threads, device_info, get_num_workers
from llama_infer.errors import ConfigurationError, LlamaError
from llama_infer.generate import build_sampler, generate
from llama_infer.state import InferenceState
from llama_infer.tokenizer import Tokenizer
from llama_infer.utils import GenerationLogger, Timer, count_parameters, weight_summary
from llama_infer.weights import read_checkpoint


def build_generation_config(args: argparse.Namespace) -> GenerationConfig:
    """Merge --config (if any) with explicitly passed flags."""
    if args.config:
        if not os.path.exists(args.config):
            raise ConfigurationError(f"config file not found: {args.config}")
        gen_config = GenerationConfig.load(args.config)
    else:
        gen_config = GenerationConfig()

    for flag, attr in (
        ("temperature", "temperature"),
        ("topp", "topp"),
        ("seed", "seed"),
        ("steps", "steps"),
        ("workers", "n_workers"),
    ):
        value = getattr(args, flag)
        if value is not None:
            setattr(gen_config, attr, value)
    gen_config.validate()
    return gen_config


def print_piece(piece: str) -> None:
    print(piece, end="", flush=True)


def interactive_loop(config, weights, tokenizer, state, pool, gen_config, logger) -> None:
    """Run an interactive generation loop."""
    print("\n" + "=" * 60)
    print("Interactive Text Generation")
    print("=" * 60)
    print(f"Temperature: {gen_config.temperature}")
    print(f"Top-p: {gen_config.topp}")
    print(f"Steps: {gen_config.resolve_steps(config.seq_len)}")
    print("\nType a prompt and press Enter. Type 'quit' to exit.")
    print("=" * 60 + "\n")

    sampler = build_sampler(gen_config, config.vocab_size)
    while True:
        try:
            prompt = input(">>> ").strip()
        except (EOFError, KeyboardInterrupt):
            print("\nGoodbye!")
            break

        if prompt.lower() == "quit":
            print("Goodbye!")
            break

        try:
            state.reset()
            result = generate(
                config, weights, tokenizer, sampler,
                prompt=prompt or None,
                steps=gen_config.steps,
                state=state,
                pool=pool,
                on_piece=print_piece,
            )
        except LlamaError as e:
            print(f"error: {e}", file=sys.stderr)
            continue
        print()
        logger.log_result(result)


def main():
    parser = argparse.ArgumentParser(
        description="Generate text with a Llama-2 checkpoint on the CPU",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "checkpoint", type=str,
        help="Path to the flat model checkpoint (.bin)"
    )
    parser.add_argument(
        "--tokenizer", type=str, default="tokenizer.bin",
        help="Path to the vocabulary file"
    )
    parser.add_argument(
        "--prompt", type=str, default=None,
        help="Prompt to continue from"
    )
    parser.add_argument(
        "--temperature", type=float, default=None,
        help="Sampling temperature (0=greedy, default 1.0)"
    )
    parser.add_argument(
        "--topp", type=float, default=None,
        help="Top-p (nucleus) threshold, 0 or >=1 disables (default 0.9)"
    )
    parser.add_argument(
        "--seed", type=int, default=None,
        help="Random seed (default: current time)"
    )
    parser.add_argument(
        "--steps", type=int, default=None,
        help="Number of steps to run, 0 = seq_len (default 256)"
    )
    parser.add_argument(
        "--workers", type=int, default=None,
        help="Worker threads (default: all CPUs)"
    )
    parser.add_argument(
        "--config", type=str, default=None,
        help="GenerationConfig JSON file"
    )
    parser.add_argument(
        "--interactive", action="store_true",
        help="Read prompts from stdin in a loop"
    )
    parser.add_argument(
        "--summary", action="store_true",
        help="Print a per-slot weight summary after loading"
    )
    parser.add_argument(
        "--log-dir", type=str, default=None,
        help="Also write run logs to a timestamped file in this directory"
    )

    args = parser.parse_args()

    logger = GenerationLogger(args.log_dir)
    try:
        gen_config = build_generation_config(args)
        for path in (args.checkpoint, args.tokenizer):
            if not os.path.exists(path):
                raise ConfigurationError(f"file not found: {path}")

        with Timer("Load checkpoint") as t:
            config, weights = read_checkpoint(args.checkpoint)
        logger.log_info(str(t))
        logger.log_config("model", config.to_dict())
        logger.log_config("generation", gen_config.to_dict())
        logger.log_info(f"Parameters: {count_parameters(weights):,}")
        if args.summary:
            logger.log_block(weight_summary(weights))

        tokenizer = Tokenizer.from_file(args.tokenizer, config.vocab_size)
        logger.log_info(f"Tokenizer loaded: {tokenizer.vocab_size} tokens")

        configure_torch_threads(get_num_workers(gen_config.n_workers))
        with WorkerPool(gen_config.n_workers) as pool:
            logger.log_info(device_info(pool))
            state = InferenceState.new(config)

            if args.interactive:
                interactive_loop(config, weights, tokenizer, state, pool, gen_config, logger)
            else:
                sampler = build_sampler(gen_config, config.vocab_size)
                result = generate(
                    config, weights, tokenizer, sampler,
                    prompt=args.prompt,
                    steps=gen_config.steps,
                    state=state,
                    pool=pool,
                    on_piece=print_piece,
                )
                print()
                logger.log_result(result)
    except LlamaError as e:
        print(f"error: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        logger.close()


if __name__ == "__main__":
    main()
