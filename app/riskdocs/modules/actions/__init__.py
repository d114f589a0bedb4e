"""
Actions (findings/recommendations) with lineage-scoped reference numbers
that survive carry-forward into later versions.
"""
