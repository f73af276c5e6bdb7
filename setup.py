# SPDX-License-Identifier: LGPL-3.0-or-later
from setuptools import setup, find_packages

setup(
    name="img2kvm",
    version="0.1.0",
    description="Decompress disk images (gz, xz, bz2, lzma, zip, 7z) and import them into Proxmox VE VMs",
    python_requires=">=3.8",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[l.strip() for l in open("requirements.txt", encoding="utf-8") if l.strip() and not l.startswith("#")],
    extras_require={"test": ["pytest>=7.0"]},
    entry_points={"console_scripts": ["img2kvm=img2kvm.__main__:main"]},
)
