"""WinPE Image Generator - offline customization pipeline for WinPE boot images.

This package orchestrates the build of customized WinPE/WinRE boot media:
exclusive image mounting, PowerShell runtime injection, parallel offline
customization, diagnostics capture and ISO/USB assembly.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
