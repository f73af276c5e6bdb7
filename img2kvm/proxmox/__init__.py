# SPDX-License-Identifier: LGPL-3.0-or-later
# img2kvm/proxmox/__init__.py
"""Proxmox VE integration."""

from .importer import DEFAULT_STORAGE, ImportDisk

__all__ = ["DEFAULT_STORAGE", "ImportDisk"]
