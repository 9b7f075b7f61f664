# main.py
import argparse
import asyncio
import logging
import sys

from .config import get_settings
from .engine import ReconciliationEngine
from .exceptions import ConfigurationError, GatewayError
from .render import render_snapshot, render_upload_result
from .storage.factory import create_gateway
from .uploads import UploadFile


def setup_logging():
    """Configures logging to file and console explicitly."""
    settings = get_settings()
    log_level_name = settings.LOG_LEVEL.upper()

    # Get the root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level_name)

    # Clear any existing handlers to prevent duplicate logs on re-runs or implicit configs
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    # Console output goes to stderr so snapshots printed on stdout stay clean
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    root_logger.addHandler(stream_handler)

    try:
        file_handler = logging.FileHandler(settings.LOG_FILE)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)
    except OSError as e:
        root_logger.error(f"Failed to set up file logging to {settings.LOG_FILE}: {e}")

    # Reducing "noise" from third-party libraries
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("dropbox").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def initialize_engine(settings) -> ReconciliationEngine:
    """
    Builds the storage gateway, checks that the configured container exists,
    and wraps both in a ReconciliationEngine.

    :raises ConfigurationError: If storage settings are missing.
    :raises GatewayError: If the container cannot be reached.
    """
    gateway = create_gateway(settings)
    gateway.verify_container_exists(settings.CONTAINER_NAME)
    return ReconciliationEngine.from_settings(settings, gateway=gateway)


async def run_list(engine: ReconciliationEngine, args) -> int:
    snapshot = await engine.refresh()
    print(render_snapshot(snapshot, engine.container))
    return 1 if snapshot.last_error is not None else 0


async def run_upload(engine: ReconciliationEngine, args) -> int:
    exit_code = 0
    files = []
    for path in args.files:
        try:
            files.append(UploadFile.from_path(path))
        except OSError as e:
            logging.error(f"Could not read {path}: {e}")
            print(f"FAILED   {path}: {e}")
            exit_code = 1

    results = await engine.upload_many(files)
    for result in results:
        print(render_upload_result(result))
        if not result.ok:
            exit_code = 1

    # Joins the refresh the uploads triggered, or lists once if none did.
    await engine.refresh()
    await engine.drain()
    print(render_snapshot(engine.get_snapshot(), engine.container))
    return exit_code


async def run_watch(engine: ReconciliationEngine, args) -> int:
    snapshots = asyncio.Queue()
    unsubscribe = engine.subscribe(snapshots.put_nowait)
    printed = 0
    try:
        async with engine:
            while args.iterations is None or printed < args.iterations:
                snapshot = await snapshots.get()
                if snapshot.is_refreshing:
                    continue
                print(render_snapshot(snapshot, engine.container))
                print()
                printed += 1
    finally:
        unsubscribe()
    return 0


COMMANDS = {
    "list": run_list,
    "upload": run_upload,
    "watch": run_watch,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="smartdocs",
        description="Upload invoices to object storage and watch the pending queue.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("list", help="List the pending objects once and exit.")

    upload_parser = subparsers.add_parser("upload", help="Upload one or more files.")
    upload_parser.add_argument("files", nargs="+", help="Paths of the files to upload.")

    watch_parser = subparsers.add_parser(
        "watch", help="Keep polling the container and print every new snapshot."
    )
    watch_parser.add_argument(
        "--iterations",
        type=int,
        default=None,
        help="Stop after printing this many snapshots (default: run until interrupted).",
    )
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging()
    settings = get_settings()

    try:
        engine = initialize_engine(settings)
    except ConfigurationError as e:
        logging.critical(f"Storage is not configured. {e}")
        return 2
    except GatewayError as e:
        logging.critical(
            f"Could not reach container '{settings.CONTAINER_NAME}' on {settings.STORAGE_PROVIDER}. Error: {e}"
        )
        return 1

    try:
        return asyncio.run(COMMANDS[args.command](engine, args))
    except KeyboardInterrupt:
        logging.info("Interrupted, exiting.")
        return 130


if __name__ == "__main__":
    sys.exit(main())
