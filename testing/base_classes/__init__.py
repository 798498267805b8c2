"""Reusable test base classes for shipgate plugins."""

from __future__ import annotations

from testing.base_classes.plugin_metadata_tests import BasePluginMetadataTests

__all__ = ["BasePluginMetadataTests"]
