"""
changefeed: a resilient follower for database changes feeds.

Turns the paginated ``_changes`` HTTP API into a resumable async stream of
change records that survives transient failures without losing its place.
"""

__version__ = "0.1.0"
