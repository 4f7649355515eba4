"""Test fixtures for pytest.

This module re-exports the tree models shared by the test suite.
"""

from .tree_models import Category, Folder, Place, Region, Section, Tag, Topic

__all__ = [
    "Category",
    "Folder",
    "Place",
    "Region",
    "Section",
    "Tag",
    "Topic",
]
