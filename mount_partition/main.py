import argparse
import os
import sys
from pathlib import Path

from mount_partition.__version__ import __version__
from mount_partition.config import settings
from mount_partition.logging import LoggerFactory, logger, setup_logging
from mount_partition.storage import partitions, session
from mount_partition.storage.exceptions import InvalidInputError, StorageError

PROG = "mount-partition"


def build_parser():
    parser = argparse.ArgumentParser(
        prog=PROG,
        description="Attach and mount numbered partitions of raw disk images via loop devices",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log progress to stderr")
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Also log raw command output")
    parser.add_argument("--log-dir", help="Directory for log files")
    parser.add_argument("--no-log-file", action="store_true", help="Do not write log files")
    parser.add_argument(
        "--timeout",
        type=int,
        metavar="SECONDS",
        help="Timeout for each external command (0 disables it)",
    )

    commands = parser.add_subparsers(dest="command", metavar="COMMAND")
    commands.required = True

    list_parser = commands.add_parser("list", help="List the partitions of an image")
    list_parser.add_argument("image")

    attach_parser = commands.add_parser(
        "attach", help="Attach a partition to a loop device and print the device path"
    )
    attach_parser.add_argument("image")
    attach_parser.add_argument("index", help="1-based partition number")
    attach_parser.add_argument("--read-only", action="store_true", default=None)

    mount_parser = commands.add_parser("mount", help="Attach and mount a partition")
    mount_parser.add_argument("image")
    mount_parser.add_argument("index", help="1-based partition number")
    mount_parser.add_argument("mount_point", help="Existing, empty directory")
    mount_parser.add_argument("-o", "--options", help="Mount options, comma separated")
    mount_parser.add_argument("-t", "--type", dest="fstype", help="Filesystem type")
    mount_parser.add_argument("--read-only", action="store_true", default=None)

    unmount_parser = commands.add_parser(
        "unmount",
        aliases=["umount"],
        help="Unmount and detach a partition (by image [index] or by mount point)",
    )
    unmount_parser.add_argument("target", help="Image file or mount point")
    unmount_parser.add_argument("index", nargs="?", help="1-based partition number")
    unmount_parser.add_argument(
        "--keep-attached",
        action="store_true",
        help="Only unmount the mount point, leave the loop device attached",
    )
    return parser


def _print_partitions(image):
    entries = partitions.list_partitions(image)
    if not entries:
        print(f"No partitions found in {image}")
        return
    print(f"{'#':>3}  {'start':>14}  {'end':>14}  {'size':>14}  {'fs':<10} {'name':<12} flags")
    for entry in entries:
        print(entry.format_row())


def _unmount(args):
    target_is_directory = os.path.isdir(args.target)
    if target_is_directory and args.index is not None:
        raise InvalidInputError(
            f"{args.target} is a directory; a partition index only goes with an image",
            args.index,
        )
    if args.keep_attached:
        if not target_is_directory:
            raise InvalidInputError(
                "--keep-attached needs a mount point, not an image", args.target
            )
        session.unmount(args.target)
        return
    if target_is_directory:
        session.detach(mount_point=args.target)
    else:
        session.detach(image=args.target, partition_index=args.index)


def run(args):
    if args.command == "list":
        _print_partitions(args.image)
    elif args.command == "attach":
        device = session.attach_partition(args.image, args.index, read_only=args.read_only)
        print(device.path)
    elif args.command == "mount":
        record = session.mount(
            args.image,
            args.index,
            args.mount_point,
            options=args.options,
            fstype=args.fstype,
            read_only=args.read_only,
        )
        print(record.loop_device)
    elif args.command in ("unmount", "umount"):
        _unmount(args)


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    log_dir = Path(args.log_dir) if args.log_dir else None
    try:
        setup_logging(
            verbose=args.verbose,
            debug=args.debug,
            trace=args.trace,
            log_dir=log_dir,
            log_to_file=not args.no_log_file,
        )
    except OSError as error:
        setup_logging(
            verbose=args.verbose, debug=args.debug, trace=args.trace, log_to_file=False
        )
        LoggerFactory.for_system().warning(f"File logging disabled: {error}")

    if args.timeout is not None:
        # per-invocation override, not saved to the settings file
        settings.settings_store.values["command_timeout_seconds"] = args.timeout

    LoggerFactory.for_system().debug(f"{PROG} {__version__}: {args.command}")
    try:
        run(args)
    except StorageError as error:
        print(f"{PROG}: {error}", file=sys.stderr)
        return 1
    finally:
        logger.complete()
    return 0


if __name__ == "__main__":
    sys.exit(main())
