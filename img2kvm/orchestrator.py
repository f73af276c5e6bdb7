# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# img2kvm/orchestrator.py
from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import List

from .converters.extractors import ContainerKind, materialize, open_stream
from .converters.extractors.sniff import strip_container_suffixes
from .converters.qemu_converter import Convert
from .core.logger import Log
from .core.utils import U
from .proxmox.importer import ImportDisk

TEMP_QCOW2 = "img2kvm_temp.qcow2"


class Orchestrator:
    """
    image -> (decompress) -> qemu-img convert -> qm importdisk -> cleanup
    """

    def __init__(self, logger: logging.Logger, args: argparse.Namespace):
        self.logger = logger
        self.args = args
        self.temp_files: List[Path] = []
        self.logger.trace(
            "Orchestrator init: image=%r vm_id=%r storage=%r workdir=%r",
            getattr(args, "image_name", None),
            getattr(args, "vm_id", None),
            getattr(args, "storage", None),
            getattr(args, "workdir", None),
        )

    def _resolve_image(self) -> Path:
        image = Path(str(self.args.image_name)).expanduser()
        if not image.exists():
            U.die(self.logger, f"Image not found: {image}", 1)
        if not image.is_file():
            U.die(self.logger, f"Image is not a regular file: {image}", 1)
        return image.resolve()

    def _payload_path(self, image: Path, workdir: Path) -> Path:
        stem = Path(strip_container_suffixes(image.name)).stem or "image"
        dest = (workdir / f"{stem}.img").resolve()
        if dest == image:
            # compressed content under a plain .img name
            dest = workdir.resolve() / f"{stem}.decompressed.img"
        return dest

    def _decompress(self, image: Path, workdir: Path) -> Path:
        """Return a path holding the raw payload: the image itself or a temp file."""
        Log.step(self.logger, f"Inspecting {image.name}", workdir=str(workdir))
        stream = open_stream(
            image,
            chunk_size=self.args.chunk_size,
            max_nesting=self.args.max_nesting,
            logger=self.logger,
        )
        if stream.layers == (ContainerKind.RAW,):
            stream.close()
            self.logger.info("Image is not compressed; converting it in place")
            return image

        dest = self._payload_path(image, workdir)
        written = materialize(self.logger, stream, dest)
        self.temp_files.append(dest)
        Log.ok(self.logger, f"Decompressed {image.name} ({U.human_bytes(written)})")
        return dest

    def _cleanup(self, image: Path) -> None:
        if getattr(self.args, "keep_temp", False):
            for p in self.temp_files:
                if p.exists():
                    self.logger.info("Keeping %s", p)
            return
        for p in self.temp_files:
            # never the user's input
            if p == image:
                continue
            if p.exists():
                self.logger.debug("Removing %s", p)
            U.safe_unlink(p)

    def run(self) -> int:
        dry_run = bool(getattr(self.args, "dry_run", False))
        image = self._resolve_image()
        workdir = Path(str(getattr(self.args, "workdir", None) or ".")).expanduser()
        U.ensure_dir(workdir)

        Log.banner(self.logger, f"img2kvm: {image.name} -> VM {self.args.vm_id}")
        if dry_run:
            self.logger.warning("Dry run: qemu-img and qm will not be executed")

        try:
            payload = self._decompress(image, workdir)

            qcow2 = (workdir / TEMP_QCOW2).resolve()
            self.temp_files.append(qcow2)
            Convert.convert_image(self.logger, payload, qcow2, out_format="qcow2", dry_run=dry_run)

            ImportDisk.run(self.logger, self.args.vm_id, qcow2, self.args.storage, dry_run=dry_run)
        finally:
            self._cleanup(image)

        if dry_run:
            Log.ok(self.logger, "Dry run finished")
        else:
            Log.ok(self.logger, f"Imported {image.name}", vm_id=self.args.vm_id, storage=self.args.storage)
        return 0
