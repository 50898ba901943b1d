"""Speech-balloon detection, ordering and indexing engine.

This package focuses on:
- decoding detector output tensors into balloon boxes
- suppressing duplicates and ordering balloons for reading (LTR/RTL)
- balloon-by-balloon navigation state for a displayed page
- a per-book on-disk balloon index with background refresh

Rendering the balloon popup and fetching pages from a server are out of scope.
"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.1.0"
