"""
Core modules for usage_blocks.

This package contains session block segmentation, deduplication,
burn rate projection, pricing and live monitoring.
"""
