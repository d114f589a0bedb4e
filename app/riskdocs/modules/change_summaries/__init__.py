"""
"What changed since last issue" summaries, generated once per issued pair.
"""
