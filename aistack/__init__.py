"""Tools for a local AI service stack: configuration, event logging, GPU and toolkit checks, and a GPU lock."""

__version__ = "0.1.0.dev0"