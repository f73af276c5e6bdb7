# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# img2kvm/core/utils.py
from __future__ import annotations

import json
import logging
import shlex
import subprocess
from pathlib import Path
from shutil import which as _which
from typing import Any, Dict, List, Optional, Sequence, Union

from .exceptions import ExternalCommandError, Fatal


class U:
    @staticmethod
    def die(logger: logging.Logger, msg: str, code: int = 1) -> None:
        logger.error(msg)
        raise Fatal(code, msg)

    @staticmethod
    def ensure_dir(p: Path) -> None:
        p.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def which(prog: str) -> Optional[str]:
        return _which(prog)

    @staticmethod
    def json_dump(obj: Any) -> str:
        return json.dumps(obj, indent=2, sort_keys=True, default=str)

    @staticmethod
    def human_bytes(n: Optional[int]) -> str:
        if n is None:
            return "unknown"
        x = float(n)
        for unit in ["B", "KiB", "MiB", "GiB", "TiB", "PiB"]:
            if x < 1024 or unit == "PiB":
                return f"{x:.2f} {unit}" if unit != "B" else f"{int(x)} {unit}"
            x /= 1024
        return f"{n} B"

    @staticmethod
    def human_to_bytes(s: Union[str, int]) -> int:
        """
        Parse human sizes:
          - "1M", "1MiB", "1MB"
          - "64K"
          - "1024" (bytes)
        """
        if isinstance(s, int):
            return s
        raw = str(s).strip()
        if not raw:
            raise ValueError("empty size")

        t = raw.upper().replace(" ", "")
        t = t.replace("KIB", "K").replace("MIB", "M").replace("GIB", "G")
        t = t.replace("KB", "K").replace("MB", "M").replace("GB", "G")
        t = t.rstrip("B")

        multipliers = {"": 1, "K": 1024, "M": 1024**2, "G": 1024**3}

        num = t
        suf = ""
        for i, ch in enumerate(t):
            if not (ch.isdigit() or ch == "."):
                num, suf = t[:i], t[i:]
                break

        if suf not in multipliers or not num:
            raise ValueError(f"invalid size: {raw!r}")

        return int(float(num) * multipliers[suf])

    @staticmethod
    def banner(logger: logging.Logger, title: str) -> None:
        line = "─" * max(10, len(title) + 2)
        logger.info(line)
        logger.info(f" {title}")
        logger.info(line)

    @staticmethod
    def _pretty_cmd(cmd: Sequence[str]) -> str:
        return " ".join(shlex.quote(str(x)) for x in cmd)

    @staticmethod
    def run_cmd(
        logger: logging.Logger,
        cmd: List[str],
        *,
        check: bool = True,
        capture: bool = True,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[int] = None,
    ) -> subprocess.CompletedProcess:
        """
        Run an external command.

        Failures (non-zero exit with check=True, timeouts, missing binaries) are
        raised as ExternalCommandError carrying the stderr tail.
        """
        pretty = U._pretty_cmd(cmd)
        logger.debug("Running: %s", pretty)

        try:
            cp = subprocess.run(
                cmd,
                check=check,
                capture_output=capture,
                text=True,
                env=env,
                timeout=timeout,
            )
        except subprocess.CalledProcessError as e:
            stdout = (e.stdout or "").strip()
            stderr = (e.stderr or "").strip()
            logger.error(
                "Command failed: %s%s%s",
                pretty,
                f"\nstdout:\n{stdout}" if stdout else "",
                f"\nstderr:\n{stderr}" if stderr else "",
            )
            raise ExternalCommandError(
                msg=f"{cmd[0]} failed (rc={e.returncode}): {stderr or stdout or 'no output'}",
                cause=e,
                cmd=tuple(cmd),
                returncode=e.returncode,
                stderr=stderr,
            ) from e
        except subprocess.TimeoutExpired as e:
            logger.error("Command timed out: %s (timeout=%ss)", pretty, timeout)
            raise ExternalCommandError(msg=f"{cmd[0]} timed out", cause=e, cmd=tuple(cmd)) from e
        except OSError as e:
            logger.error("Command error: %s (%s)", pretty, e)
            raise ExternalCommandError(msg=f"Failed to execute {cmd[0]}: {e}", cause=e, cmd=tuple(cmd)) from e

        return cp

    @staticmethod
    def safe_unlink(p: Path, *, missing_ok: bool = True) -> None:
        try:
            p.unlink()
        except FileNotFoundError:
            if not missing_ok:
                raise
