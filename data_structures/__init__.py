"""
Data structures for depth-feature decision forests.

Trees are stored as node arenas: every node lives in a flat list and refers
to its children by index.
"""
