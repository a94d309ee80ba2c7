"""evocore — agent coordination and evolution scheduling core."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("evocore")
except PackageNotFoundError:
    __version__ = "0.1.0"  # fallback for development
