"""
Declarative form and multi-step wizard engine.

Metadata (flat section/group/field descriptors) goes in; a runtime session with
conditional visibility, formula fields, cascading remote options, debounced
validation and gated step navigation comes out.
"""

from __future__ import annotations

__version__ = "0.1.0"
