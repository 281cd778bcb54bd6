"""CHD Batch Converter - batch conversion of disc images to CHD and CHD verification."""

from .version import load_version

__version__ = load_version()
