"""
Command-line interface for the transfer engine.
"""
import argparse
import json
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Any, Dict, Optional

from .config import EngineConfig, load_config
from .control import ControlClient, ControlServer
from .coordinator import UploadCoordinator

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging for the application.

    Args:
        verbose: Whether to enable debug logging
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def _port(args: argparse.Namespace, config: EngineConfig) -> int:
    return args.port if args.port is not None else config.control_port


def handle_serve(args: argparse.Namespace, config: EngineConfig) -> None:
    """Run the engine and its control server until interrupted.

    Args:
        args: Command line arguments
        config: Loaded engine configuration
    """
    coordinator = UploadCoordinator(config)
    server = ControlServer(coordinator, host=config.control_host, port=_port(args, config))

    stop_requested = threading.Event()
    signal.signal(signal.SIGTERM, lambda s, f: stop_requested.set())

    coordinator.start()
    server.start()
    try:
        while not stop_requested.wait(1.0):
            pass
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        server.stop()
        coordinator.stop()


def _format_bytes(size: float) -> str:
    for unit in ('B', 'KiB', 'MiB', 'GiB'):
        if abs(size) < 1024:
            return f"{size:.1f} {unit}" if unit != 'B' else f"{int(size)} B"
        size /= 1024
    return f"{size:.1f} TiB"


def _print_status(data: Dict[str, Any]) -> None:
    state = "paused" if data['isPaused'] else ("running" if data['isRunning'] else "idle")
    print(f"State:     {state}")
    print(f"Pending:   {data['pending']}")
    print(f"Active:    {data['active']}")
    print(f"Paused:    {data['paused']}")
    print(f"Completed: {data['completed']}")
    print(f"Failed:    {data['failed']}")
    print(f"Cancelled: {data['cancelled']}")
    print(f"Progress:  {data['progress']:.1f}%")


def _print_jobs(data: Dict[str, Any]) -> None:
    jobs = data.get('jobs', [])
    if not jobs:
        print("No uploads")
        return
    for job in jobs:
        print(f"{job['id'][:8]}  {job['status']:<10} {job['progress']:>6.1f}%  {job['name']} -> {job['destination']}")
        if job.get('error'):
            print(f"          {job['error']}")


def _print_history(data: Dict[str, Any]) -> None:
    items = data.get('items', [])
    if not items:
        print("No upload history")
        return
    for item in items:
        print(f"{item['date'] or '-':<32} {item['status']:<10} {item['name']} -> {item['s3uri']}")


def _print_response(command: str, response: Dict[str, Any]) -> None:
    data = response.get('data') or {}
    if command == 'status':
        _print_status(data)
    elif command == 'list':
        _print_jobs(data)
    elif command == 'history':
        _print_history(data)
    elif command == 'upload':
        print(f"Queued {data.get('queued', 0)} file(s)")
    elif command == 'cancel':
        print(f"Cancelled {data.get('cancelled', 0)} upload(s)")
    elif command == 'retry':
        print(f"Retrying {data.get('retried', 0)} upload(s)")
    elif command == 'pause':
        print("Uploads paused")
    elif command == 'resume':
        print("Uploads resumed")


def _command_args(args: argparse.Namespace) -> Optional[Dict[str, Any]]:
    if args.command == 'upload':
        return {
            'path': str(Path(args.path).expanduser().resolve()),
            'bucket': args.bucket,
            'key': args.key,
            'prefix': args.prefix,
        }
    if args.command in ('cancel', 'retry') and args.id:
        return {'id': args.id}
    if args.command == 'history':
        return {'limit': args.limit}
    return None


def handle_client_command(args: argparse.Namespace, config: EngineConfig) -> int:
    """Send a command to a running engine and print the result.

    Returns:
        Process exit code
    """
    client = ControlClient(config.control_host, _port(args, config))
    try:
        response = client.send(args.command, _command_args(args))
    except OSError as e:
        print(f"Cannot reach transfer engine on port {client.port}: {e}", file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps(response, indent=2))
    elif response.get('success'):
        _print_response(args.command, response)
    else:
        print(f"Error: {response.get('error')}", file=sys.stderr)
    return 0 if response.get('success') else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="S3 transfer engine")
    parser.add_argument('-v', '--verbose', action='store_true',
                        help="Enable verbose logging")
    parser.add_argument('-c', '--config', type=Path,
                        help="Path to config file")
    parser.add_argument('--port', type=int,
                        help="Control server port")
    parser.add_argument('--json', action='store_true',
                        help="Print raw JSON responses")

    subparsers = parser.add_subparsers(dest='command', required=True)

    subparsers.add_parser('serve', help="Run the transfer engine")
    subparsers.add_parser('status', help="Show queue status")

    upload_parser = subparsers.add_parser('upload', help="Queue a file or folder")
    upload_parser.add_argument('path', type=str, help="File or folder to upload")
    upload_parser.add_argument('-b', '--bucket', type=str, help="Destination bucket")
    upload_parser.add_argument('-k', '--key', type=str, help="Destination key")
    upload_parser.add_argument('-p', '--prefix', type=str, help="Destination key prefix")

    subparsers.add_parser('list', help="List uploads")
    subparsers.add_parser('pause', help="Pause uploading")
    subparsers.add_parser('resume', help="Resume uploading")

    cancel_parser = subparsers.add_parser('cancel', help="Cancel one or all uploads")
    cancel_parser.add_argument('id', nargs='?', help="Job id, all uploads when omitted")

    history_parser = subparsers.add_parser('history', help="Show finished uploads")
    history_parser.add_argument('-n', '--limit', type=int, default=10,
                                help="Number of entries")

    retry_parser = subparsers.add_parser('retry', help="Retry one or all failed uploads")
    retry_parser.add_argument('id', nargs='?', help="Job id, all failed uploads when omitted")

    return parser


def main(argv=None) -> None:
    """Main entry point for the CLI."""
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)

    try:
        config = load_config(args.config)
        if args.command == 'serve':
            handle_serve(args, config)
        else:
            sys.exit(handle_client_command(args, config))
    except ValueError as e:
        logger.error(f"Error: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
