import argparse
import os
import sys
from datetime import datetime
from pathlib import Path

from pxe_image_manager.__version__ import __version__
from pxe_image_manager.config.settings import SETTINGS_PATH, load_settings
from pxe_image_manager.domain import ImageKind
from pxe_image_manager.logging import LoggerFactory, setup_logging
from pxe_image_manager.services.manager import ImageManager
from pxe_image_manager.storage.exceptions import (
    ConfigurationError,
    ImageManagerError,
    NotRootError,
)
from pxe_image_manager.storage.file_utils import human_size


log = LoggerFactory.for_system()

ROOT_COMMANDS = {"add", "remove", "cleanup", "refresh"}


def _truncate(value, width):
    value = str(value)
    if len(value) > width:
        return value[: width - 3] + "..."
    return value


def prompt_yes_no(question):
    try:
        answer = input(f"{question} [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


def print_listing(rows):
    print("=== Registered Images ===")
    print(f"Date: {datetime.now():%Y-%m-%d %H:%M:%S}")
    print()
    if not rows:
        print("No images found.")
        print()
        print("Add images with: sudo pxe-image-manager add <file.iso|file.img>")
        return
    print(f"{'Name':<30} {'Kind':<4} {'Distribution':<28} {'Arch':<7} Status")
    print("-" * 80)
    for row in rows:
        print(
            f"{_truncate(row.name, 30):<30} {row.kind.value:<4} "
            f"{_truncate(row.release_name, 28):<28} {row.arch:<7} {row.status}"
        )
    print()
    print(f"Total images: {len(rows)}")


def print_status(report):
    print("=== PXE Server Image Status ===")
    print(f"Date: {datetime.now():%Y-%m-%d %H:%M:%S}")
    print(f"Server: {report.server_ip}")
    print()
    print("Service Status:")
    for service, active in report.services.items():
        print(f"  {service}: {'Running' if active else 'Stopped'}")
    print()
    print("Directory Status:")
    for label, path in report.directories.items():
        print(f"  {label}: {path}")
    print()
    print("Mounted Images:")
    for name, mount_dir in report.mounted:
        print(f"  {name}: Mounted at {mount_dir}")
    if not report.mounted:
        print("  No images currently mounted")
    print()
    print("NFS Exports:")
    for path in report.exports:
        print(f"  {path}")
    if not report.exports:
        print("  No image exports found")
    print()
    print("HTTP Access:")
    for url in report.http_links:
        print(f"  {url}")
    if not report.http_links:
        print("  No HTTP links found")
    print()
    print("Disk Usage:")
    for label, size in report.disk_usage.items():
        print(f"  {label}: {human_size(size)}")


def print_validation(report):
    print("=== PXE Image Configuration Validation ===")
    print(f"Date: {datetime.now():%Y-%m-%d %H:%M:%S}")
    print()
    for message in report.passed:
        print(f"  OK    {message}")
    for message in report.warnings:
        print(f"  WARN  {message}")
    for message in report.errors:
        print(f"  ERROR {message}")
    print()
    print(f"Validation Summary: {report.summary()}")


def build_parser():
    parser = argparse.ArgumentParser(
        prog="pxe-image-manager",
        description="Register ISO and IMG boot images with a PXE server",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-c", "--config", type=Path, help="Settings file (JSON)")
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Enable trace output (very verbose)")
    parser.add_argument("--log-dir", type=Path, help="Directory for log files")

    subparsers = parser.add_subparsers(dest="command", metavar="command")
    subparsers.required = True

    add = subparsers.add_parser("add", help="Register an image; prompts before overwrite")
    add.add_argument("file", type=Path, help="ISO or IMG file")
    add.add_argument("-y", "--yes", action="store_true", help="Overwrite without asking")

    remove = subparsers.add_parser("remove", help="Unregister an image")
    remove.add_argument("name", help="Image name, optionally with .iso/.img extension")
    remove.add_argument(
        "--kind", choices=[kind.value for kind in ImageKind], help="Image kind if ambiguous"
    )

    subparsers.add_parser("list", help="List registered images")
    subparsers.add_parser("status", help="Show services, mounts, exports and disk usage")
    subparsers.add_parser("validate", help="Check consistency; non-zero exit on errors")
    subparsers.add_parser("cleanup", help="Remove orphaned mounts, links, exports and fstab lines")
    subparsers.add_parser("refresh", help="Re-detect images and rebuild the boot menu")
    return parser


def run_command(args, manager):
    if args.command == "add":
        image = manager.add(args.file)
        if image is None:
            log.info("Nothing changed")
        return 0
    if args.command == "remove":
        kind = ImageKind(args.kind) if args.kind else None
        manager.remove(args.name, kind)
        return 0
    if args.command == "list":
        print_listing(manager.list_images())
        return 0
    if args.command == "status":
        print_status(manager.status())
        return 0
    if args.command == "validate":
        report = manager.validate()
        print_validation(report)
        return report.exit_code
    if args.command == "cleanup":
        manager.cleanup()
        return 0
    if args.command == "refresh":
        manager.refresh()
        return 0
    raise ValueError(f"Unknown command: {args.command}")


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(debug=args.debug, trace=args.trace, log_dir=args.log_dir)

    try:
        if args.command in ROOT_COMMANDS and os.geteuid() != 0:
            raise NotRootError(args.command)
        settings = load_settings(args.config).validate()
        yes = getattr(args, "yes", False)
        manager = ImageManager(
            settings, confirm=(lambda prompt: True) if yes else prompt_yes_no
        )
        return run_command(args, manager)
    except ConfigurationError as error:
        log.error(str(error))
        if error.missing_keys:
            log.error(f"Set them in {args.config or SETTINGS_PATH} and try again")
        return 1
    except ImageManagerError as error:
        log.error(str(error))
        return 1
    except OSError as error:
        log.error(f"{args.command} failed: {error}")
        return 1
    except KeyboardInterrupt:
        log.warning("Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
