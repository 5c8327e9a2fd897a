"""Test package marker.

What:
  Marks ``tests`` as a package so pytest anchors imports at the project root.

Invariants & Safety:
  - The file must remain side-effect free so that importing ``tests`` never
    mutates environment state or test fixtures.
"""
