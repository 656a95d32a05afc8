"""
relsync: incremental sync and caching of moderation relationships.
"""
__version__ = "0.1.0"
