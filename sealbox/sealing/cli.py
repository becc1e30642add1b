"""
Sealbox CLI Interface

Command-line interface for key generation, index inspection and the
mapping service.
"""

import argparse
import json
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import List, Optional

from .config import SealingConfig
from .envelope import generate_recipient_keypair
from .exceptions import SealingError
from .index import HashIndex

logger = logging.getLogger(__name__)


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, sort_keys=True))


def cmd_keygen(args: argparse.Namespace) -> int:
    public_key, private_key = generate_recipient_keypair()
    _print_json({"publicKey": public_key.hex(), "privateKey": private_key.hex()})
    return 0


def cmd_index(args: argparse.Namespace, config: SealingConfig) -> int:
    index = HashIndex.from_config(config)
    try:
        if args.index_command == "list":
            _print_json(index.export())
            return 0

        if args.index_command == "get":
            record = index.get(args.short_hash)
        else:
            record = index.find_by_metadata_digest(args.digest)

        if record is None:
            print("No matching record", file=sys.stderr)
            return 1
        _print_json(record.to_dict())
        return 0
    finally:
        index.close()


def cmd_serve(args: argparse.Namespace, config: SealingConfig) -> int:
    import uvicorn

    from ..web.app import create_app
    from .pipeline import create_pipeline

    pipeline = create_pipeline(config)
    try:
        uvicorn.run(
            create_app(pipeline),
            host=args.host,
            port=args.port,
            log_level="debug" if args.verbose else "info",
        )
    finally:
        pipeline.close()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sealbox",
        description="Sealbox CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  keygen              Generate a recipient X25519 key pair (hex)
  index list          Print every index record
  index get HASH      Print the record for a short hash
  index find DIGEST   Print the record for a metadata digest
  serve               Run the mapping and preview service

Examples:
  %(prog)s keygen
  %(prog)s --index-backend sqlite index list
  %(prog)s serve --port 8080
        """,
    )
    parser.add_argument(
        "--data-dir",
        type=Path,
        default=None,
        help="Data directory (default: SEALBOX_DATA_DIR or XDG data dir)",
    )
    parser.add_argument(
        "--index-backend",
        choices=["json", "sqlite", "memory"],
        default=None,
        help="Index backend (default: SEALBOX_INDEX_BACKEND or json)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose output",
    )

    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("keygen", help="Generate a recipient key pair")

    index_parser = commands.add_parser("index", help="Inspect the hash index")
    index_commands = index_parser.add_subparsers(dest="index_command", required=True)
    index_commands.add_parser("list", help="List all records")
    get_parser = index_commands.add_parser("get", help="Look up a short hash")
    get_parser.add_argument("short_hash")
    find_parser = index_commands.add_parser("find", help="Look up a metadata digest")
    find_parser.add_argument("digest")

    serve_parser = commands.add_parser("serve", help="Run the web service")
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8080)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    args = build_parser().parse_args(argv)

    # Configure logging
    if args.verbose:
        logging.basicConfig(level=logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)

    if args.command == "keygen":
        return cmd_keygen(args)

    try:
        config = SealingConfig.from_env()
        overrides = {}
        if args.data_dir is not None:
            overrides["data_dir"] = args.data_dir
        if args.index_backend is not None:
            overrides["index_backend"] = args.index_backend
        if overrides:
            config = replace(config, **overrides)

        if args.command == "index":
            return cmd_index(args, config)
        if args.command == "serve":
            return cmd_serve(args, config)
    except SealingError as e:
        logger.error(f"{args.command} failed: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 2

    return 1


if __name__ == "__main__":
    sys.exit(main())
