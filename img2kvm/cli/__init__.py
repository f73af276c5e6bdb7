# SPDX-License-Identifier: LGPL-3.0-or-later
# img2kvm/cli/__init__.py
from .argument_parser import build_parser, parse_args_with_config

__all__ = ["build_parser", "parse_args_with_config"]
