"""
Convert a PyTorch training checkpoint into a flat model file.

USAGE:
    python scripts/export_checkpoint.py checkpoints/best.pt model.bin

    # Shorter context window than the model was trained with
    python scripts/export_checkpoint.py checkpoints/best.pt model.bin --seq-len 256

The .pt file must contain "model_state_dict" and "model_config" (as saved
by the training loop). The output is the header + float32 slots read by
scripts/generate_text.py.

LIMITATION:
    Models trained with grouped-query attention (n_kv_heads < n_heads)
    cannot be represented in the flat format and are rejected.
"""

import os
import sys
import argparse

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from llama_infer.errors import ConfigurationError, LlamaError
from llama_infer.export import export_training_checkpoint
from llama_infer.utils import Timer, count_parameters
from llama_infer.weights import read_checkpoint


def main():
    parser = argparse.ArgumentParser(
        description="Export a training checkpoint to the flat .bin format",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("checkpoint", type=str, help="Training checkpoint (.pt)")
    parser.add_argument("output", type=str, help="Output model file (.bin)")
    parser.add_argument(
        "--seq-len", type=int, default=None,
        help="Context length to write into the header (default: model max_seq_len)"
    )
    args = parser.parse_args()

    try:
        if not os.path.exists(args.checkpoint):
            raise ConfigurationError(f"checkpoint not found: {args.checkpoint}")

        print(f"Exporting: {args.checkpoint}")
        with Timer("Export") as t:
            config = export_training_checkpoint(args.checkpoint, args.output, args.seq_len)
        print(f"  Header: {config.dim}d, {config.n_layers}L, {config.n_heads}H, "
              f"vocab {config.vocab_size}, seq_len {config.seq_len}, "
              f"shared classifier: {config.shared_weights}")
        print(f"  {t}")

        # Read the file back to make sure it parses
        _, weights = read_checkpoint(args.output)
        size_mb = os.path.getsize(args.output) / 1024**2
        print(f"Wrote {args.output} ({size_mb:.1f} MB, {count_parameters(weights):,} values)")
    except LlamaError as e:
        print(f"error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
