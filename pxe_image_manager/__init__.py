"""Register ISO and IMG boot images with a PXE network boot server."""

from .__version__ import __version__

__all__ = ["__version__"]
