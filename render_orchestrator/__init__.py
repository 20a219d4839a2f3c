"""Render process orchestration for Blender-style command-line renderers."""

__version__ = "0.1.0"
