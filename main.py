#!/usr/bin/env python3
"""
NVR Retention - recording segment retention and storage quota engine
Main application entry point
"""

import sys
import json
import signal
import argparse
import threading
from pathlib import Path

from loguru import logger

from core.config import ConfigManager
from core.exceptions import NVRException
from core.services import RetentionService

DEFAULT_CONSOLE_FORMAT = ('<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | '
                          '<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | <level>{message}</level>')
DEFAULT_FILE_FORMAT = '{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} | {message}'


def setup_logging(debug: bool = False, db_path: str = "IT_RNVR.db"):
    """
    Setup logging configuration from database

    Args:
        debug: Enable debug logging (overrides config)
        db_path: Path to configuration database
    """
    # Remove default logger
    logger.remove()

    # Load configuration (singleton)
    try:
        config_manager = ConfigManager.get_instance(db_path=db_path)
        logging_config = config_manager.get_logging_config()
    except Exception as e:
        print(f"Warning: Failed to load logging config: {e}. Using defaults.")
        logging_config = {}

    # Check if logging is enabled
    if not logging_config.get('enabled', True):
        return

    # Get log directory
    log_path = Path(logging_config.get('log_path', './logs'))
    log_path.mkdir(parents=True, exist_ok=True)

    # Console logging
    console_config = logging_config.get('console', {})
    if console_config.get('enabled', True):
        logger.add(
            sys.stderr,
            format=console_config.get('format') or DEFAULT_CONSOLE_FORMAT,
            level="DEBUG" if debug else console_config.get('level', 'INFO'),
            colorize=console_config.get('colorize', True)
        )

    # File logging
    file_config = logging_config.get('file', {})
    file_format = file_config.get('format') or DEFAULT_FILE_FORMAT
    if file_config.get('enabled', True):
        logger.add(
            log_path / file_config.get('filename', 'retention_{time:YYYY-MM-DD}.log'),
            format=file_format,
            level="DEBUG" if debug else file_config.get('level', 'DEBUG'),
            rotation=file_config.get('rotation', '1 day'),
            retention=file_config.get('retention', '7 days'),
            compression=file_config.get('compression') or None
        )

    # Error log (separate file for errors)
    error_config = logging_config.get('error_log', {})
    if error_config.get('enabled', True):
        logger.add(
            log_path / error_config.get('filename', 'retention_errors_{time:YYYY-MM-DD}.log'),
            format=file_format,
            level=error_config.get('level', 'ERROR'),
            rotation=error_config.get('rotation', '10 MB'),
            retention=error_config.get('retention', '30 days')
        )

    # JSON log (structured logging)
    json_config = logging_config.get('json_log', {})
    if json_config.get('enabled', False):
        logger.add(
            log_path / json_config.get('filename', 'retention_{time:YYYY-MM-DD}.json'),
            format="{message}",
            level="DEBUG",
            serialize=json_config.get('serialize', True),
            rotation="1 day",
            retention="7 days"
        )

    logger.info("Logging initialized from configuration")


def print_json(data):
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def run_daemon(service: RetentionService) -> int:
    """스케줄러를 켠 상태로 종료 신호까지 대기"""
    stop_event = threading.Event()

    def _handle_signal(signum, _frame):
        logger.info(f"Received signal {signum}, shutting down...")
        stop_event.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    service.start(start_scheduler=True)
    logger.success("Retention service running")
    stop_event.wait()
    service.stop()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="NVR Retention - segment retention and storage quota engine")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--db", type=str, default="IT_RNVR.db", help="Path to configuration database")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("run", help="Run the periodic cleanup scheduler")
    sub.add_parser("stats", help="Show storage and retention statistics")
    sub.add_parser("preview", help="Show what the next cleanup pass would delete")
    sub.add_parser("cleanup", help="Run one cleanup pass now")

    protect = sub.add_parser("protect", help="Protect a segment from cleanup")
    protect.add_argument("filename")
    unprotect = sub.add_parser("unprotect", help="Remove segment protection")
    unprotect.add_argument("filename")

    recompute = sub.add_parser("recompute", help="Recompute retention deadlines after a policy change")
    recompute.add_argument("--camera", type=str, default=None, help="Only this camera")
    recompute.add_argument("--allow-immediate-expiry", action="store_true",
                           help="Do not defer segments whose new deadline is already past")

    sub.add_parser("reconcile", help="Recount quota usage from the segment registry")

    repair = sub.add_parser("repair", help="Repair records with missing files")
    repair.add_argument("--orphans", action="store_true", help="Also delete orphaned files")
    repair.add_argument("--purge", action="store_true", help="Also purge old deleted records")

    import_config = sub.add_parser("import-config", help="Import YAML configuration into the database")
    import_config.add_argument("yaml_path")
    return parser


def main(argv=None) -> int:
    """Main application entry point"""
    args = build_parser().parse_args(argv)

    # Setup logging (initializes configuration singleton)
    setup_logging(debug=args.debug, db_path=args.db)
    config_manager = ConfigManager.get_instance(db_path=args.db)

    if args.command == "import-config":
        if not config_manager.import_yaml(args.yaml_path):
            return 1
        logger.success(f"Configuration imported from {args.yaml_path}")
        return 0

    service = RetentionService(config_manager)
    if args.command == "run":
        return run_daemon(service)

    service.start(start_scheduler=False)
    try:
        if args.command == "stats":
            print_json({
                "storage": service.get_storage_stats().to_dict(),
                "retention": service.get_retention_stats().to_dict(),
            })
        elif args.command == "preview":
            print_json(service.preview_cleanup().to_dict())
        elif args.command == "cleanup":
            report = service.trigger_cleanup_now()
            print_json(report.to_dict())
            if report.skipped or report.aborted:
                return 2
        elif args.command in ("protect", "unprotect"):
            segment = service.set_protected(args.filename, args.command == "protect")
            print_json(segment.to_dict())
        elif args.command == "recompute":
            result = service.recompute_retention(args.camera, args.allow_immediate_expiry)
            print_json({"updated": result.updated, "clamped": result.clamped,
                        "unresolved": result.unresolved})
        elif args.command == "reconcile":
            drifts = service.reconcile_quota()
            print_json([{"camera": d.camera_id, "cached": d.cached, "actual": d.actual} for d in drifts])
        elif args.command == "repair":
            result = {"repaired": service.repair_missing_files()}
            if args.orphans:
                result["orphans"] = service.cleanup_orphaned_files()
            if args.purge:
                result["purged"] = service.purge_deleted_metadata()
            print_json(result)
        return 0

    except NVRException as e:
        logger.error(f"{e.error_code}: {e.message}")
        return 1
    finally:
        service.stop()


if __name__ == "__main__":
    sys.exit(main())
