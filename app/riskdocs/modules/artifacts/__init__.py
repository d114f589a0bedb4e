"""
Locked (content-addressed) rendered artifacts bound to issued versions.
"""
