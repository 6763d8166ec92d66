from __future__ import annotations
from fastapi import Request
from chainproof.services.ports import BlobStore
from chainproof.services.storage import MinioBlobStore


def get_blob_store(request: Request) -> BlobStore:
    # Built on first use so importing the app never touches the network.
    store = getattr(request.app.state, "blob_store", None)
    if store is None:
        store = MinioBlobStore.from_settings()
        request.app.state.blob_store = store
    return store


def get_correlation_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)
