"""
Shared datastructures and semantic type aliases for polystore.
"""

from __future__ import annotations

__all__: list[str] = []
