"""
CouchDB / Cloudant changes API connector.

- One request per call, failures surface raw
- POST /{db}/_changes for pages of the feed
- GET /{db} for batch sizing with include_docs
"""

from changefeed.connectors.couchdb.rest_client import CouchRestClient
from changefeed.connectors.couchdb.types import (
    BATCH_SIZE,
    LONGPOLL_TIMEOUT_MS,
    MIN_CLIENT_TIMEOUT_MS,
    ChangesStyle,
    ClientConfig,
    FeedType,
)

__all__ = [
    "BATCH_SIZE",
    "LONGPOLL_TIMEOUT_MS",
    "MIN_CLIENT_TIMEOUT_MS",
    "ChangesStyle",
    "ClientConfig",
    "CouchRestClient",
    "FeedType",
]
