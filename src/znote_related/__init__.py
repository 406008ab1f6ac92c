"""
znote-related - related-note recommendations for a personal knowledge vault.

Fuses shared tags, explicit graph links and optional embedding similarity
into a single ranked list of related notes, and can explain each
recommendation with an LLM-generated relationship classification.

This version uses asyncio for all provider and storage I/O.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("znote-related")
except PackageNotFoundError:
    __version__ = "0.3.0"
