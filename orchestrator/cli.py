"""
Orchestrator - CLI.

============================================================
RESPONSIBILITY
============================================================
Command-line interface for the orchestration engine.

- Provides argparse-based CLI
- Loads configuration from YAML, .env and environment
- Registers a module manifest
- Entry point for the application

============================================================
USAGE
============================================================
python -m orchestrator.cli --config engine.yaml --manifest modules.yaml
python -m orchestrator.cli --manifest modules.yaml --show-order
python -m orchestrator.cli --manifest modules.yaml --validate-only
python -m orchestrator.cli --config engine.yaml --api-port 8080

============================================================
"""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from core.constants import SYSTEM_NAME, SYSTEM_VERSION
from core.exceptions import OrchestrationError, RegistryError

from .config import EngineConfig
from .core import create_engine, setup_logging
from .manifest import load_manifest


# ============================================================
# CLI ARGUMENT PARSER
# ============================================================

def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog=SYSTEM_NAME,
        description="Module orchestration engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Usage:
  %(prog)s --config engine.yaml --manifest modules.yaml   # Run the engine
  %(prog)s --manifest modules.yaml --show-order           # Print startup order
  %(prog)s --manifest modules.yaml --validate-only        # Check a manifest
  %(prog)s --config engine.yaml --run-seconds 60          # Run for one minute

Environment variables ORCH_<SECTION>_<FIELD> override the config
file, e.g. ORCH_REGISTRY_CLUSTER_ID=eu-west.
        """
    )

    # --------------------------------------------------------
    # Inputs
    # --------------------------------------------------------
    input_group = parser.add_argument_group("Inputs")

    input_group.add_argument(
        "--config", "-c",
        type=str,
        metavar="PATH",
        help="Engine configuration YAML",
    )

    input_group.add_argument(
        "--env-file",
        type=str,
        metavar="PATH",
        help=".env file with ORCH_* overrides (default: .env if present)",
    )

    input_group.add_argument(
        "--manifest", "-f",
        type=str,
        metavar="PATH",
        help="Module manifest YAML to register at startup",
    )

    # --------------------------------------------------------
    # Execution Options
    # --------------------------------------------------------
    execution_group = parser.add_argument_group("Execution Options")

    execution_group.add_argument(
        "--cluster-id",
        type=str,
        help="Override registry.cluster_id",
    )

    execution_group.add_argument(
        "--api-port",
        type=int,
        metavar="PORT",
        help="Serve the read-only HTTP API on this port",
    )

    execution_group.add_argument(
        "--run-seconds",
        type=float,
        metavar="SECONDS",
        help="Stop after this many seconds (default: run until signalled)",
    )

    execution_group.add_argument(
        "--show-order",
        action="store_true",
        help="Print the manifest's startup and shutdown order and exit",
    )

    execution_group.add_argument(
        "--validate-only",
        action="store_true",
        help="Validate configuration and manifest, then exit",
    )

    # --------------------------------------------------------
    # Logging Options
    # --------------------------------------------------------
    logging_group = parser.add_argument_group("Logging Options")

    logging_group.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Override logging.level",
    )

    logging_group.add_argument(
        "--log-format",
        type=str,
        choices=["json", "text"],
        help="Override logging.format",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {SYSTEM_VERSION}",
    )

    return parser


# ============================================================
# CLI VALIDATION
# ============================================================

def validate_args(args: argparse.Namespace) -> List[str]:
    """
    Validate CLI arguments.

    Returns:
        List of validation errors
    """
    errors = []

    if (args.show_order or args.validate_only) and not args.manifest:
        errors.append("--show-order and --validate-only require --manifest")

    if args.api_port is not None and not 0 < args.api_port < 65536:
        errors.append("--api-port must be between 1 and 65535")

    if args.run_seconds is not None and args.run_seconds <= 0:
        errors.append("--run-seconds must be positive")

    return errors


# ============================================================
# CLI CONFIGURATION BUILDER
# ============================================================

def build_config(args: argparse.Namespace) -> EngineConfig:
    """
    Build engine configuration: YAML, then .env/environment, then CLI flags.

    Raises:
        ConfigurationError: If any layer is invalid
    """
    base = EngineConfig.from_yaml(args.config) if args.config else EngineConfig()
    config = EngineConfig.from_env(env_file=args.env_file, base=base)

    if args.cluster_id:
        config.registry.cluster_id = args.cluster_id
    if args.api_port is not None:
        config.api.port = args.api_port
    if args.log_level:
        config.logging.level = args.log_level
    if args.log_format:
        config.logging.format = args.log_format

    config.validate_or_raise()
    return config


# ============================================================
# SHOW ORDER
# ============================================================

def show_order(manifest_path: str) -> None:
    """Print startup and shutdown order of a manifest."""
    manifest = load_manifest(manifest_path)
    order = manifest.startup_order()

    print(f"\nStartup order ({len(order)} modules):")
    print("=" * 60)
    for i, name in enumerate(order, 1):
        deps = ", ".join(next(m for m in manifest.modules if m.name == name).dependencies)
        print(f"  {i:2d}. {name:30s} {('<- ' + deps) if deps else ''}")

    print("\nShutdown order:")
    print("=" * 60)
    for i, name in enumerate(reversed(order), 1):
        print(f"  {i:2d}. {name}")
    print()


# ============================================================
# MAIN ENTRY POINT
# ============================================================

async def async_main(args: argparse.Namespace, config: EngineConfig) -> int:
    """
    Async main entry point.

    Returns:
        Exit code
    """
    logger = logging.getLogger("orchestrator")
    manifest = None
    if args.manifest:
        manifest = load_manifest(
            args.manifest,
            compliance_threshold=config.vocabulary.compliance_threshold,
        )
    engine = create_engine(config, manifest=manifest)

    try:
        if args.validate_only:
            results = await engine.apply_manifest(manifest)
            mesh = engine.mesh.rebuild(engine.discover())
            print(f"Manifest OK: {len(results)} modules registered, "
                  f"{len(mesh.pending_edges)} pending edges")
            for edge in mesh.pending_edges:
                print(f"  pending: {edge.source} -> {edge.describe_pending}")
            return 0

        await engine.start()
        if manifest is not None:
            await engine.apply_manifest(manifest)
        await engine.run_forever(run_seconds=args.run_seconds)
        return 0

    except RegistryError as e:
        logger.error(f"Manifest rejected: {e.to_log_format()}")
        return 1
    except OrchestrationError as e:
        logger.error(f"Engine error: {e.message}")
        return 1
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1
    finally:
        await engine.stop()
        await engine.bus.close()


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main CLI entry point.

    Args:
        argv: Command line arguments (default: sys.argv[1:])

    Returns:
        Exit code
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    errors = validate_args(args)
    if errors:
        for error in errors:
            print(f"Error: {error}", file=sys.stderr)
        return 1

    try:
        config = build_config(args)
        if args.show_order:
            show_order(args.manifest)
            return 0
    except OrchestrationError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1

    setup_logging(
        level=config.logging.level,
        log_format=config.logging.format,
        correlation_id=config.logging.correlation_id,
    )

    print_banner(args, config)

    try:
        return asyncio.run(async_main(args, config))
    except KeyboardInterrupt:
        return 130


def print_banner(args: argparse.Namespace, config: EngineConfig) -> None:
    """Print startup banner."""
    print()
    print("=" * 60)
    print(f"  {SYSTEM_NAME.upper()} v{SYSTEM_VERSION}")
    print("=" * 60)
    print(f"  Cluster:    {config.registry.cluster_id}")
    print(f"  Manifest:   {args.manifest or '-'}")
    print(f"  Storage:    {config.storage.backend}")
    print(f"  Federation: {'on' if config.federation.enabled else 'off'}"
          f" ({len(config.federation.peers)} peers)")
    print(f"  API:        {config.api.port if config.api.port is not None else 'off'}")
    print(f"  Log Level:  {config.logging.level}")
    print("=" * 60)
    print()


# ============================================================
# MODULE EXECUTION
# ============================================================

if __name__ == "__main__":
    sys.exit(main())
