import argparse
import sys
from pathlib import Path

from live_usb_maker import __version__
from live_usb_maker.domain.models import ProvisionOptions
from live_usb_maker.logging import LoggerFactory, setup_logging
from live_usb_maker.services.provisioning import ProvisioningOrchestrator
from live_usb_maker.storage.devices import get_block_device
from live_usb_maker.storage.exceptions import ValidationError
from live_usb_maker.storage.progress import human_size
from live_usb_maker.storage.validation import identify_arguments


def build_parser():
    parser = argparse.ArgumentParser(
        prog="live-usb-maker",
        description=(
            "Write a live ISO to a USB stick with a separate boot partition "
            "and an optionally encrypted persistence partition."
        ),
    )
    parser.add_argument("paths", nargs=2, metavar="IMAGE|DEVICE", help="ISO image and target device, in either order")
    parser.add_argument("--encrypt", action="store_true", help="Encrypt the persistence partition with LUKS2")
    parser.add_argument("--journal", action="store_true", help="Keep the ext4 journal")
    parser.add_argument("--f2fs", action="store_true", help="Use f2fs for the persistence partition")
    parser.add_argument("--raw", action="store_true", help="Write the image unchanged (no persistence)")
    parser.add_argument("--boot-size", metavar="SIZE", help="Boot partition size (default 512M)")
    parser.add_argument("--persistent-size", metavar="SIZE", help="Persistence partition size (default: rest of the device)")
    parser.add_argument("--passphrase-file", type=Path, metavar="FILE", help="Read the LUKS passphrase from FILE instead of the terminal")
    parser.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation")
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Log every copied file")
    parser.add_argument("--log-dir", type=Path, help="Directory for log files")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def describe_device(device_path):
    info = get_block_device(device_path) or {}
    parts = [
        (info.get("vendor") or "").strip(),
        (info.get("model") or "").strip(),
    ]
    label = " ".join(p for p in parts if p) or "unknown model"
    size = info.get("size")
    if size:
        label = f"{label}, {human_size(int(size))}"
    return f"{device_path} ({label})"


def confirm(image_path, device_path, input_func=input):
    print(f"About to write {image_path} to {describe_device(device_path)}.")
    print("ALL DATA ON THE DEVICE WILL BE DESTROYED.")
    try:
        answer = input_func("Continue? [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(debug=args.debug, trace=args.trace, log_dir=args.log_dir)
    log = LoggerFactory.for_system()

    try:
        image_path, device_path = identify_arguments(*args.paths)
    except ValidationError as error:
        log.error(str(error))
        return 1

    options = ProvisionOptions(
        encrypt=args.encrypt,
        enable_journal=args.journal,
        use_f2fs=args.f2fs,
        raw_copy=args.raw,
        boot_size=args.boot_size,
        persistent_size=args.persistent_size,
        passphrase_file=args.passphrase_file,
    )

    if not args.yes and not confirm(image_path, device_path):
        log.info("Cancelled, nothing was written")
        return 0

    orchestrator = ProvisioningOrchestrator(image_path, device_path, options)
    try:
        result = orchestrator.run()
    except KeyboardInterrupt:
        log.warning("Interrupted")
        return 1
    except Exception as error:
        log.error(f"An error occurred: {type(error).__name__}: {error}")
        return 1
    if not result.success:
        log.error(f"Failed during {result.failed_stage}: {result.error}")
        return 1
    log.success(f"{device_path} is ready")
    return 0


if __name__ == "__main__":
    sys.exit(main())
