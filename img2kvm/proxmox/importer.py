# SPDX-License-Identifier: LGPL-3.0-or-later
# img2kvm/proxmox/importer.py
from __future__ import annotations

import logging
from pathlib import Path
from typing import List

from ..core.utils import U

DEFAULT_STORAGE = "local-lvm"


class ImportDisk:
    """`qm importdisk` wrapper (attach an image to a Proxmox VE VM's storage)."""

    @staticmethod
    def build_cmd(vm_id: int, image: Path, storage: str = DEFAULT_STORAGE) -> List[str]:
        return ["qm", "importdisk", str(int(vm_id)), str(image), storage]

    @staticmethod
    def run(
        logger: logging.Logger,
        vm_id: int,
        image: Path,
        storage: str = DEFAULT_STORAGE,
        *,
        dry_run: bool = False,
    ) -> str:
        cmd = ImportDisk.build_cmd(vm_id, image, storage)
        U.banner(logger, f"Import disk into VM {vm_id}")

        if dry_run:
            logger.info("[dry-run] %s", U._pretty_cmd(cmd))
            return ""

        if U.which("qm") is None:
            U.die(logger, "qm not found (is this a Proxmox VE host?)", 1)

        cp = U.run_cmd(logger, cmd, capture=True)
        out = (cp.stdout or "").strip()
        if out:
            logger.info("%s", out)
        return out
