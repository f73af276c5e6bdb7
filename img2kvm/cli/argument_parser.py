# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# img2kvm/cli/argument_parser.py
from __future__ import annotations

import argparse
import logging
import sys
from typing import Any, Dict, Optional, Sequence, Tuple

from .. import __version__
from ..config.config_loader import Config
from ..converters.extractors.decoders import DEFAULT_CHUNK_SIZE
from ..core.logger import Log, c
from ..core.utils import U
from ..proxmox.importer import DEFAULT_STORAGE

YAML_EXAMPLE = r"""# img2kvm config
# Run:
#   img2kvm --config openwrt.yaml
#   img2kvm --config base.yaml --config overrides.yaml -i 101
image_name: openwrt-24.10.2-x86-64-generic-squashfs-combined-efi.img.gz
vm_id: 100
storage: local-lvm
workdir: /var/tmp/img2kvm
chunk_size: 4M
max_nesting: 2
keep_temp: false
verbose: 1
"""


class HelpFormatter(argparse.RawDescriptionHelpFormatter, argparse.ArgumentDefaultsHelpFormatter):
    """Combines raw description formatting with default value display in help."""


def _chunk_size(value: Any) -> int:
    try:
        n = U.human_to_bytes(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))
    if n <= 0:
        raise argparse.ArgumentTypeError(f"chunk size must be positive: {value!r}")
    return n


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="img2kvm",
        description=c("img2kvm: convert a (compressed) disk image and import it into a Proxmox VE VM", "green", ["bold"]),
        formatter_class=HelpFormatter,
        epilog=c("YAML example:\n", "cyan", ["bold"]) + c(YAML_EXAMPLE, "cyan"),
    )

    # Global config/logging (the pre-parser reads these first)
    p.add_argument(
        "--config",
        action="append",
        default=[],
        help="YAML config file (repeatable; later overrides earlier).",
    )
    p.add_argument("--dump-config", action="store_true", help="Print merged config and exit.")
    p.add_argument("--dump-args", action="store_true", help="Print final parsed args and exit.")
    p.add_argument("--version", action="version", version=__version__)
    p.add_argument("-v", "--verbose", action="count", default=0, help="Verbosity: -v, -vv, -vvv")
    p.add_argument("-q", "--quiet", action="count", default=0, help="Less output: -q, -qq")
    p.add_argument("--log-file", dest="log_file", default=None, help="Write logs to file.")
    p.add_argument("--json-logs", dest="json_logs", action="store_true", help="Emit logs as NDJSON.")

    # Conversion
    p.add_argument(
        "-n",
        "--image-name",
        dest="image_name",
        required=True,
        help="The image file, e.g. openwrt-24.10.2-x86-64-generic-squashfs-combined-efi.img. "
        "Plain .img/.iso files and gz, xz, bz2, lzma, zip and 7z containers are accepted; "
        "the format is detected from the file content.",
    )
    p.add_argument("-i", "--vm-id", dest="vm_id", type=int, required=True, help="The ID of the Proxmox VE VM, e.g. 100.")
    p.add_argument("-s", "--storage", dest="storage", default=DEFAULT_STORAGE, help="Proxmox VE storage pool.")
    p.add_argument("--workdir", dest="workdir", default=".", help="Directory for the decompressed and qcow2 temp files.")
    p.add_argument("--keep-temp", dest="keep_temp", action="store_true", help="Keep the decompressed image and temp qcow2.")
    p.add_argument("--dry-run", dest="dry_run", action="store_true", help="Decompress, but only log the qemu-img/qm commands.")
    p.add_argument(
        "--chunk-size",
        dest="chunk_size",
        type=_chunk_size,
        default=DEFAULT_CHUNK_SIZE,
        help="Decompression chunk size (bytes, or with K/M/G suffix).",
    )
    p.add_argument(
        "--max-nesting",
        dest="max_nesting",
        type=int,
        default=2,
        help="How many nested compression layers to unwrap (0 disables).",
    )
    return p


def _build_preparser() -> argparse.ArgumentParser:
    pre = argparse.ArgumentParser(add_help=False)
    pre.add_argument("--config", action="append", default=[])
    pre.add_argument("-v", "--verbose", action="count", default=0)
    pre.add_argument("-q", "--quiet", action="count", default=0)
    pre.add_argument("--log-file", dest="log_file", default=None)
    pre.add_argument("--json-logs", dest="json_logs", action="store_true")
    pre.add_argument("--dump-config", action="store_true")
    pre.add_argument("--dump-args", action="store_true")
    return pre


def validate_args(args: argparse.Namespace) -> None:
    if args.vm_id is None or int(args.vm_id) <= 0:
        raise SystemExit(f"--vm-id must be a positive integer, got {args.vm_id!r}")
    if not str(args.storage or "").strip():
        raise SystemExit("--storage must not be empty")
    if int(args.max_nesting) < 0:
        raise SystemExit(f"--max-nesting must be >= 0, got {args.max_nesting}")


def parse_args_with_config(
    argv: Optional[Sequence[str]] = None,
    logger: Optional[logging.Logger] = None,
) -> Tuple[argparse.Namespace, Dict[str, Any], logging.Logger]:
    """
    Flow:
      Phase 0: parse only the flags needed to locate config/logging
      Phase 1: load + merge config files
      Phase 2: apply config as parser defaults
      Phase 3: full parse (command line wins)
      Phase 4: validate
    """
    if argv is None:
        argv = sys.argv[1:]
    argv = list(argv)

    parser = build_parser()

    pre = _build_preparser()
    args0, _rest = pre.parse_known_args(argv)

    own_logger = logger is None
    if logger is None:
        logger = Log.setup(
            args0.verbose,
            args0.log_file,
            quiet=args0.quiet,
            json_logs=args0.json_logs,
        )

    conf: Dict[str, Any] = {}
    if args0.config:
        conf = Config.load_many(logger, Config.expand_configs(logger, args0.config))

    if args0.dump_config:
        print(U.json_dump(conf))
        raise SystemExit(0)

    Config.apply_as_defaults(logger, parser, conf)

    args = parser.parse_args(argv)

    # logging keys may also come from the config files
    if own_logger and (args.verbose, args.quiet, args.log_file, args.json_logs) != (
        args0.verbose,
        args0.quiet,
        args0.log_file,
        args0.json_logs,
    ):
        logger = Log.setup(args.verbose, args.log_file, quiet=args.quiet, json_logs=args.json_logs)

    if args0.dump_args:
        print(U.json_dump(vars(args)))
        raise SystemExit(0)

    validate_args(args)
    return args, conf, logger
