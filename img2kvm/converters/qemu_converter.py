# SPDX-License-Identifier: LGPL-3.0-or-later
# img2kvm/converters/qemu_converter.py
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

from ..core.exceptions import ExternalCommandError
from ..core.utils import U


class Convert:
    """
    qemu-img wrapper:
      - source format probed with `qemu-img info --output=json`
      - atomic output (.part -> rename)
    """

    @dataclass(frozen=True)
    class ConvertOptions:
        out_format: str = "qcow2"
        in_format: Optional[str] = None
        cache_mode: str = "none"  # none|writeback|unsafe|"" (disabled)

        def short(self) -> str:
            return (
                f"in={self.in_format or 'auto'} out={self.out_format} "
                f"cache={self.cache_mode or 'off'}"
            )

    @staticmethod
    def qemu_img_info(logger: logging.Logger, src: Path) -> Tuple[int, Optional[str]]:
        """Return (virtual size, format) as reported by qemu-img."""
        cp = U.run_cmd(logger, ["qemu-img", "info", "--output=json", str(src)], capture=True)
        try:
            info = json.loads(cp.stdout or "{}")
        except ValueError as e:
            raise ExternalCommandError(msg=f"qemu-img info returned non-JSON for {src}", cause=e) from e

        virt = int(info.get("virtual-size", 0) or 0)
        fmt = info.get("format")
        if fmt is not None and not isinstance(fmt, str):
            fmt = None
        return virt, fmt

    @staticmethod
    def build_convert_cmd(src: Path, dst: Path, opt: "Convert.ConvertOptions") -> List[str]:
        cmd = ["qemu-img", "convert"]
        if opt.in_format:
            cmd += ["-f", opt.in_format]
        cmd += ["-O", opt.out_format]
        if opt.cache_mode:
            cmd += ["-t", opt.cache_mode]
        cmd += [str(src), str(dst)]
        return cmd

    @staticmethod
    def convert_image(
        logger: logging.Logger,
        src: Path,
        dst: Path,
        *,
        out_format: str = "qcow2",
        in_format: Optional[str] = None,
        dry_run: bool = False,
    ) -> Path:
        src = Path(src)
        dst = Path(dst)

        if not dry_run and U.which("qemu-img") is None:
            U.die(logger, "qemu-img not found.", 1)
        if not src.is_file():
            U.die(logger, f"Source image file not found: {src}", 1)

        if in_format is None and not dry_run:
            virt_size, in_format = Convert.qemu_img_info(logger, src)
            logger.debug("qemu-img info: format=%s virtual-size=%s", in_format, U.human_bytes(virt_size))

        opt = Convert.ConvertOptions(out_format=out_format, in_format=in_format or "raw")
        tmp_dst = dst.with_suffix(dst.suffix + ".part")
        cmd = Convert.build_convert_cmd(src, tmp_dst, opt)

        U.banner(logger, f"Convert to {out_format.upper()}")
        logger.info("Converting: %s -> %s (%s)", src, dst, opt.short())

        if dry_run:
            logger.info("[dry-run] %s", U._pretty_cmd(cmd))
            return dst

        U.ensure_dir(dst.parent)
        U.safe_unlink(tmp_dst)
        try:
            U.run_cmd(logger, cmd, capture=True)
        except BaseException:
            U.safe_unlink(tmp_dst)
            raise
        tmp_dst.replace(dst)
        return dst
