"""
Command-line interface for patchquilt.

Provides commands for MRF selection plus quilting, plain quilting, and
writing a default configuration.
"""

import argparse
import sys

from patchquilt.config import load_config, save_default_config
from patchquilt.tracer import configure_tracer, get_tracer


def _overlap_arg(value):
    """Overlap as a named kind or an integer."""
    try:
        return int(value)
    except ValueError:
        return value


def _add_common(parser):
    parser.add_argument(
        "--input", "-i",
        required=True,
        help="Input .npz request",
    )
    parser.add_argument(
        "--out", "-o",
        required=True,
        help="Output directory",
    )
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="Path to YAML configuration file",
    )
    parser.add_argument(
        "--overlap",
        type=_overlap_arg,
        default=None,
        help="Patch overlap: sliding, half, none, or an integer",
    )
    parser.add_argument(
        "--trace",
        action="store_true",
        help="Enable runtime tracing",
    )
    parser.add_argument(
        "--trace-level",
        default="INFO",
        choices=["ERROR", "WARN", "INFO", "DEBUG"],
        help="Trace log level",
    )
    parser.add_argument(
        "--trace-file",
        default=None,
        help="Path to write trace logs",
    )
    parser.add_argument(
        "--trace-json",
        action="store_true",
        help="Enable JSON trace output",
    )


def main(argv=None):
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        description="patchquilt: MRF patch selection and quilting on regular grids",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    run_parser = subparsers.add_parser("run", help="Select candidates by MRF inference and quilt")
    _add_common(run_parser)

    quilt_parser = subparsers.add_parser("quilt", help="Quilt patches without inference")
    _add_common(quilt_parser)

    init_parser = subparsers.add_parser("init-config", help="Create default config file")
    init_parser.add_argument(
        "--out", "-o",
        default="patchquilt_config.yaml",
        help="Output path for config file",
    )

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    if args.command in ("run", "quilt"):
        return handle_run(args)
    elif args.command == "init-config":
        return handle_init_config(args)

    return 0


def handle_run(args):
    """Handle the run and quilt commands."""
    config = load_config(args.config)

    tracing = config.tracing
    configure_tracer(
        enabled=args.trace or tracing.enabled,
        level=args.trace_level if args.trace else tracing.level,
        file_path=args.trace_file or tracing.file_path,
        json_output=args.trace_json or tracing.json_output,
    )

    tracer = get_tracer()

    try:
        from patchquilt.pipeline import run_pipeline, run_quilt

        with tracer.span(f"cli_{args.command}", module="cli"):
            if args.command == "run":
                result, volume = run_pipeline(
                    request_path=args.input,
                    out_dir=args.out,
                    config=config,
                    patch_overlap=args.overlap,
                )
            else:
                result = None
                volume = run_quilt(
                    request_path=args.input,
                    out_dir=args.out,
                    config=config,
                    patch_overlap=args.overlap,
                )

        print(f"\n{args.command.capitalize()} completed successfully.")
        print(f"  Volume shape: {tuple(volume.shape)}")
        if result is not None:
            beliefs = result.beliefs
            print(f"  Active nodes: {result.marginals.shape[0]}")
            print(f"  LBP iterations: {beliefs.iterations} (converged: {beliefs.converged})")
        print(f"\nOutputs saved to: {args.out}/")

        return 0

    except Exception as e:
        tracer.event(f"{args.command} failed: {str(e)}", level="ERROR")
        print(f"\nError: {str(e)}", file=sys.stderr)
        return 1


def handle_init_config(args):
    """Handle the init-config command."""
    save_default_config(args.out)
    print(f"Default configuration saved to: {args.out}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
