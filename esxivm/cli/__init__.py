"""CLI package exports for top-level command entry points."""

from __future__ import annotations

from .main import ESXiVMModalCLI, main

__all__ = ['ESXiVMModalCLI', 'main']
