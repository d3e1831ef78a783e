"""Convert exam documents in .docx format into a structured question model."""

from .version import __version__

__all__ = ["__version__"]
