# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# img2kvm/__main__.py
from __future__ import annotations

import logging
import sys
import traceback
from typing import Optional, Sequence

from .cli.argument_parser import parse_args_with_config
from .core.exceptions import Fatal, Img2KvmError, format_exception_for_cli
from .core.logger import Log
from .orchestrator import Orchestrator


def _print_stderr(msg: str) -> None:
    print(msg, file=sys.stderr)


def _safe_log(logger: Optional[logging.Logger], level: str, msg: str) -> None:
    if logger is None:
        _print_stderr(msg)
        return
    if level == "error":
        Log.fail(logger, msg)
        return
    getattr(logger, level)(msg)


def run(argv: Optional[Sequence[str]] = None) -> int:
    logger: Optional[logging.Logger] = None

    # Phase 1: parse (config errors are Fatal and already logged by U.die)
    try:
        args, _conf, logger = parse_args_with_config(argv)
    except Fatal as e:
        if logger is None:
            _print_stderr(f"💥 ERROR    {e}")
        return e.code
    except KeyboardInterrupt:
        _safe_log(logger, "warning", "Interrupted by user (Ctrl+C).")
        return 130

    # Phase 2: decompress, convert, import
    try:
        return Orchestrator(logger, args).run()
    except Fatal as e:
        # U.die() already logged it
        return e.code
    except Img2KvmError as e:
        _safe_log(logger, "error", format_exception_for_cli(e, verbose=args.verbose))
        return e.code
    except KeyboardInterrupt:
        _safe_log(logger, "warning", "Interrupted by user (Ctrl+C).")
        return 130
    except Exception as e:
        _safe_log(logger, "error", f"UNHANDLED {type(e).__name__}: {e}")
        _safe_log(logger, "debug", traceback.format_exc())
        return 1


def main() -> None:
    raise SystemExit(run())


if __name__ == "__main__":
    main()
