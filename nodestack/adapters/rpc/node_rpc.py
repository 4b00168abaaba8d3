"""
HTTP node RPC: asks a node how far it has synced.

Posts a small JSON-RPC request and maps the reply into a SyncSample.
Replies may use camelCase (``currentHeight``) or snake_case
(``current_height``) keys, bare or wrapped in ``result``. Anything that
isn't a usable answer raises ConnectivityError.
"""

from __future__ import annotations

import json
import logging
import socket
import urllib.error
import urllib.request

from nodestack.adapters.base import NodeRpc
from nodestack.core.errors import ConnectivityError
from nodestack.core.models.sync import SyncSample

logger = logging.getLogger(__name__)

SYNC_METHOD = "getSyncStatus"


class HttpNodeRpc(NodeRpc):
    """Node sync status over HTTP.

    Args:
        url: Base URL of the node's RPC listener.
        timeout: Seconds before the call counts as timed out.
    """

    def __init__(self, url: str, *, timeout: float = 5.0) -> None:
        self.url = url.rstrip("/")
        self.timeout = timeout

    @property
    def endpoint(self) -> str:
        return self.url

    def get_sync_status(self) -> SyncSample:
        body = json.dumps({"jsonrpc": "2.0", "id": 1, "method": SYNC_METHOD, "params": {}}).encode()
        request = urllib.request.Request(
            self.url,
            data=body,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self.timeout) as resp:
                raw = resp.read()
        except TimeoutError as e:
            raise ConnectivityError(f"{self.url} timed out", target=self.url, timed_out=True) from e
        except urllib.error.URLError as e:
            timed_out = isinstance(e.reason, socket.timeout)
            raise ConnectivityError(f"{self.url} unreachable: {e.reason}", target=self.url,
                                    timed_out=timed_out) from e
        except OSError as e:
            raise ConnectivityError(f"{self.url} unreachable: {e}", target=self.url) from e

        return parse_sync_reply(raw, self.url)


def parse_sync_reply(raw: bytes | str, target: str = "") -> SyncSample:
    """Map a node's JSON reply into a SyncSample."""
    try:
        data = json.loads(raw)
    except (ValueError, TypeError) as e:
        raise ConnectivityError(f"Malformed reply from {target or 'node'}: {e}", target=target) from e

    if isinstance(data, dict) and "error" in data and data["error"]:
        raise ConnectivityError(f"Node error: {data['error']}", target=target)
    if isinstance(data, dict) and isinstance(data.get("result"), dict):
        data = data["result"]
    if not isinstance(data, dict):
        raise ConnectivityError(f"Malformed reply from {target or 'node'}: not an object", target=target)

    try:
        return SyncSample.model_validate(data)
    except ValueError as e:
        raise ConnectivityError(f"Malformed reply from {target or 'node'}: {e}", target=target) from e
