"""
Convert a SentencePiece tokenizer model into the runner's vocabulary file.

USAGE:
    python scripts/export_tokenizer.py data/tokenizer.model tokenizer.bin

The output lists every piece with its merge score. Byte-fallback pieces
(<0x0A> ...) become the byte's character, "▁" becomes a space, and BOS/EOS
become "\\n<s>\\n" / "\\n</s>\\n".
"""

import os
import sys
import argparse

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from llama_infer.errors import ConfigurationError, LlamaError
from llama_infer.export import export_tokenizer
from llama_infer.tokenizer import Tokenizer


def main():
    parser = argparse.ArgumentParser(
        description="Export a SentencePiece model to tokenizer.bin",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("model", type=str, help="SentencePiece model (.model)")
    parser.add_argument(
        "output", type=str, nargs="?", default="tokenizer.bin",
        help="Output vocabulary file"
    )
    args = parser.parse_args()

    try:
        if not os.path.exists(args.model):
            raise ConfigurationError(f"tokenizer model not found: {args.model}")

        n_pieces = export_tokenizer(args.model, args.output)
        print(f"Wrote {args.output} ({n_pieces} pieces)")

        # Quick verification
        tok = Tokenizer.from_file(args.output, n_pieces)
        test_text = "Once upon a time"
        try:
            tokens = tok.encode(test_text)
        except LlamaError as e:
            print(f"  Test encode skipped: {e}")
        else:
            decoded = tok.decode(tokens)
            print(f"  Test encode: '{test_text}' → {tokens} ({len(tokens)} tokens)")
            print(f"  Test decode: → '{decoded}'")
    except LlamaError as e:
        print(f"error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
