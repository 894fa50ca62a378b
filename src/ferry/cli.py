#!/usr/bin/env python3

import argparse
import logging
import sys
import os
import json
import uuid

from .config import load_config
from .listener import create_listener
from .requester import RequesterOrchestrator, DONE, console_selector, fixed_selector
from .storage import SQLiteStorage


def setup_logging(debug: bool = False) -> None:
    """Setup logging configuration."""
    level = logging.DEBUG if debug else logging.INFO

    filename = "ferry_debug.log" if debug else None

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        filename=filename,
        filemode='w'
    )

    if debug:
        print(f"Debug logging enabled. Writing to {filename}...")


def open_storage(args, config) -> SQLiteStorage:
    db_path = args.db or config.storage.db_path or "ferry.db"
    return SQLiteStorage(db_path)


# ---------------------------------------------------------------------------

def cmd_serve(args) -> int:
    """Handle serve command."""
    storage = None
    try:
        config = load_config(args.config)
        setup_logging(args.debug)
        storage = open_storage(args, config)

        listener = create_listener(
            port=args.port,
            data_dir=args.data_dir,
            config_path=args.config,
            max_workers=args.workers,
            storage=storage,
        )

        if not os.path.isdir(listener.config.provider.data_dir):
            print(f"Error: Data directory '{listener.config.provider.data_dir}' not found")
            return 1

        print(f"Ferry provider listening on port {listener.port}")
        print(f"Serving files from {listener.config.provider.data_dir}")
        print("Waiting for requesters... (Press Ctrl+C to stop)")

        listener.serve_forever()
        print("\nShutting down provider...")
        return 0

    except KeyboardInterrupt:
        print("\nShutting down provider...")
        return 0
    except Exception as e:
        print(f"Error: {e}")
        return 1
    finally:
        if storage is not None:
            storage.close()


def cmd_fetch(args) -> int:
    """Handle fetch command."""
    try:
        config = load_config(args.config)
        setup_logging(args.debug)

        server_parts = args.server.split(":")
        if len(server_parts) == 1:
            host = server_parts[0]
            port = args.port if args.port is not None else config.node.port
        elif len(server_parts) == 2:
            host = server_parts[0]
            port = int(server_parts[1])
        else:
            print("Error: Invalid server format. Use 'host' or 'host:port'")
            return 1

        if args.select is not None:
            selector = fixed_selector(args.select)
        else:
            selector = console_selector

        download_dir = args.dest or config.requester.download_dir
        print(f"Requesting a file from {host}:{port}")

        orchestrator = RequesterOrchestrator(
            rendezvous=(host, port),
            selector=selector,
            config=config.transfer,
            download_dir=download_dir,
        )
        outcome = orchestrator.run()

        storage = open_storage(args, config)
        record = outcome.to_record()
        record["transfer_id"] = uuid.uuid4().hex[:16]
        storage.save_transfer(record)
        storage.close()

        if outcome.state == DONE:
            print(f"Integrity check: OK ({outcome.digest})")
            print(f"Saved {outcome.file_name} ({outcome.file_size} bytes) to {outcome.output_path}")
            print(f"Attempts: {outcome.attempts}")
            return 0

        print(f"Transfer failed: {outcome.error}")
        return 1

    except KeyboardInterrupt:
        print("\nTransfer interrupted")
        return 1
    except Exception as e:
        print(f"Error: {e}")
        return 1


def cmd_history(args) -> int:
    """Handle history command."""
    try:
        config = load_config(args.config)
        setup_logging(args.debug)
        storage = open_storage(args, config)

        if args.state:
            transfers = storage.list_transfers_by_state(args.state)
        else:
            transfers = storage.list_transfers()
        storage.close()

        if args.json:
            print(json.dumps(transfers, indent=2))
            return 0

        if not transfers:
            print("No transfers found")
            return 0

        print(f"Found {len(transfers)} transfer(s):\n")
        for transfer in transfers:
            print(f"Transfer ID: {transfer.get('transfer_id', 'N/A')[:8]}...")
            print(f"  Role: {transfer.get('role', 'N/A')}")
            print(f"  Peer: {transfer.get('peer', 'N/A')}")
            print(f"  File: {transfer.get('file_name') or 'N/A'}")
            print(f"  Size: {transfer.get('file_size', 0)} bytes")
            print(f"  State: {transfer.get('state', 'unknown')}")
            print(f"  Attempts: {transfer.get('attempts', 0)}")
            if transfer.get("error"):
                print(f"  Error: {transfer['error']}")
            print(f"  Created: {transfer.get('created_at', 'N/A')}")
            print()

        return 0

    except Exception as e:
        print(f"Error: {e}")
        return 1


def main() -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Ferry: catalog-driven reliable file transfer over UDP",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Serve the files in ./data
  ferry --port 4445 serve --data-dir ./data

  # Browse the catalog and pick a file interactively
  ferry fetch --server 127.0.0.1:4445 --dest ./downloads

  # Headless fetch of file 2
  ferry fetch --server 127.0.0.1:4445 --select 2

  # Show recorded transfers
  ferry history --state failed
""",
    )

    parser.add_argument(
        "--port",
        type=int,
        help="Rendezvous port (default: 4445)",
    )
    parser.add_argument(
        "--config",
        type=str,
        help="Configuration file path",
    )
    parser.add_argument(
        "--db",
        type=str,
        help="Transfer history database (default: ferry.db)",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    serve_parser = subparsers.add_parser("serve", help="Serve a catalog of files")
    serve_parser.add_argument(
        "--data-dir",
        type=str,
        help="Directory whose files are advertised (default: ./data)",
    )
    serve_parser.add_argument(
        "--workers",
        type=int,
        help="Maximum concurrent sessions (default: 25)",
    )

    fetch_parser = subparsers.add_parser("fetch", help="Fetch a file from a provider")
    fetch_parser.add_argument(
        "--server",
        required=True,
        help="Provider rendezvous address (format: host or host:port)",
    )
    fetch_parser.add_argument(
        "--select",
        type=int,
        help="File id to fetch without prompting",
    )
    fetch_parser.add_argument(
        "--dest",
        type=str,
        help="Download directory (default: ./downloads)",
    )

    history_parser = subparsers.add_parser("history", help="Show recorded transfers")
    history_parser.add_argument(
        "--state",
        type=str,
        help="Only show transfers in this state (done, failed)",
    )
    history_parser.add_argument(
        "--json",
        action="store_true",
        help="Output history in JSON format",
    )

    args = parser.parse_args()

    if args.command == "serve":
        return cmd_serve(args)
    elif args.command == "fetch":
        return cmd_fetch(args)
    elif args.command == "history":
        return cmd_history(args)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
