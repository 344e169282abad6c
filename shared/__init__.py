"""Shared code used by every canopy gap tool."""
