"""Keelson - a terminal coding agent confined to one workspace."""

__version__ = "0.1.0"

from keelson.config import Config
from keelson.main import main

__all__ = ["Config", "main", "__version__"]
