"""Contribution governance API for a community-edited genealogical wiki."""

__version__ = "0.1.0"
