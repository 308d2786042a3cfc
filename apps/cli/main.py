"""`gemma-session`: Gemma session CLI.

This is the CLI entrypoint. Run from source with:
  `python -m apps.cli.main --help`
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Sequence

from apps.cli.session_cmds import (
    SessionCommandError,
    count_tokens_cmd,
    generate_cmd,
    models_cmd,
    validate_cmd,
)
from gemma_session import __version__
from gemma_session.engine.config import (
    DEFAULT_MAX_SEQ_LEN,
    GenerationSettings,
    ModelConfiguration,
    RuntimeOptions,
)
from gemma_session.engine.errors import ConfigurationError

DEFAULT_CAPACITY = 8192


def _add_model_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--tokenizer", required=True, help="Tokenizer file or directory")
    p.add_argument("--model", required=True, dest="model_type", help="Model type, e.g. 2b-it (see `models`)")
    p.add_argument("--weights", required=True, help="Weights file or directory")
    p.add_argument(
        "--weight-type",
        default="bf16",
        help="Weight format: f32|bf16|f16 (default: %(default)s)",
    )


def _add_runtime_args(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "--num-threads",
        type=int,
        default=0,
        help="Compute threads (default: 0 = all cores)",
    )
    p.add_argument(
        "--device",
        type=str,
        default="cpu",
        help="Torch device: cpu|cuda|auto (default: %(default)s)",
    )
    p.add_argument(
        "--spin",
        action="store_true",
        help="Busy-wait idle worker threads instead of blocking",
    )
    p.add_argument(
        "--max-seq-len",
        type=int,
        default=DEFAULT_MAX_SEQ_LEN,
        help="KV cache capacity in tokens (default: %(default)s)",
    )


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="gemma-session", description="Gemma session CLI")
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    p.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase logging verbosity (-v: info + timings, -vv: debug)",
    )

    sub = p.add_subparsers(dest="command", required=True)

    models_p = sub.add_parser("models", help="List supported model and weight types")
    models_p.add_argument("--json", action="store_true", help="Machine-readable JSON output")

    validate_p = sub.add_parser("validate", help="Check a model configuration without loading it")
    _add_model_args(validate_p)
    validate_p.add_argument("--json", action="store_true", help="Machine-readable JSON output")

    count_p = sub.add_parser("count-tokens", help="Count the tokens of a wrapped prompt")
    _add_model_args(count_p)
    _add_runtime_args(count_p)
    count_p.add_argument("text", help="Text to count (use - to read stdin)")

    gen_p = sub.add_parser("generate", help="Generate a reply to a prompt")
    _add_model_args(gen_p)
    _add_runtime_args(gen_p)
    gen_p.add_argument("prompt", help="Prompt text (use - to read stdin)")
    gen_p.add_argument(
        "--capacity",
        type=int,
        default=DEFAULT_CAPACITY,
        help="Output buffer size in bytes, terminator included (default: %(default)s)",
    )
    gen_p.add_argument(
        "--max-generated-tokens",
        type=int,
        default=2048,
        help="Token budget for the reply (default: %(default)s)",
    )
    gen_p.add_argument(
        "--temperature",
        type=float,
        default=0.7,
        help="Sampling temperature (default: %(default)s)",
    )
    gen_p.add_argument(
        "--top-k",
        type=int,
        default=1,
        help="Top-k sampling (default: %(default)s = greedy)",
    )
    gen_p.add_argument(
        "--deterministic",
        action="store_true",
        help="Seed the sampler with a fixed constant",
    )
    gen_p.add_argument("--seed", type=int, default=None, help="Explicit sampler seed")
    gen_p.add_argument("--stream", action="store_true", help="Print reply fragments as they arrive")
    gen_p.add_argument("--json", action="store_true", help="Machine-readable JSON output")

    return p


def _configure_logging(verbose: int) -> None:
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose >= 2:
        level = logging.DEBUG
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _read_text(value: str) -> str:
    if value == "-":
        return sys.stdin.read()
    return value


def _model_config(args: argparse.Namespace) -> ModelConfiguration:
    return ModelConfiguration(
        tokenizer_path=args.tokenizer,
        model_type=args.model_type,
        weights_path=args.weights,
        weight_type=args.weight_type,
    )


def _runtime_options(args: argparse.Namespace) -> RuntimeOptions:
    return RuntimeOptions(
        max_threads=int(args.num_threads),
        verbosity=int(args.verbose),
        spin=bool(args.spin),
        device=str(args.device),
    )


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(sys.argv[1:]) if argv is None else list(argv))
    _configure_logging(int(args.verbose))

    try:
        if args.command == "models":
            return models_cmd(json_output=bool(args.json))
        if args.command == "validate":
            return validate_cmd(
                tokenizer=args.tokenizer,
                model_type=args.model_type,
                weights=args.weights,
                weight_type=args.weight_type,
                json_output=bool(args.json),
            )
        if args.command == "count-tokens":
            return count_tokens_cmd(
                config=_model_config(args),
                options=_runtime_options(args),
                text=_read_text(args.text),
                max_seq_len=int(args.max_seq_len),
            )
        if args.command == "generate":
            settings = GenerationSettings(
                temperature=float(args.temperature),
                top_k=int(args.top_k),
                max_generated_tokens=int(args.max_generated_tokens),
                deterministic=bool(args.deterministic),
                seed=args.seed,
            )
            return generate_cmd(
                config=_model_config(args),
                options=_runtime_options(args),
                settings=settings,
                prompt=_read_text(args.prompt),
                capacity=int(args.capacity),
                max_seq_len=int(args.max_seq_len),
                stream=bool(args.stream),
                json_output=bool(args.json),
            )
    except (SessionCommandError, ConfigurationError) as exc:
        print(str(exc), file=sys.stderr)
        return 1
    parser.error(f"Unknown command: {args.command!r}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
