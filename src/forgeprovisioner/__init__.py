"""
forge-provisioner-shell - runs shell provisioner scripts on Forge build machines
"""

__version__ = "0.1.0"

from .core import BuildReconciler, ShellProvisionerController
from .errors import ProvisionerError

__all__ = ["BuildReconciler", "ProvisionerError", "ShellProvisionerController"]
