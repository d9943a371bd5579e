"""
hymnal_backend/store.py

Entitlement store clients: a remote key tree addressed by slash paths.

- FirebaseRestStore: Firebase Realtime Database over its REST API
- InMemoryStore: same semantics held in process (local dev and tests)

Both expose get/set/update/delete plus a conditional write keyed on the
ETag of a single sub-path. transaction() builds read-modify-write on top of
that primitive, so concurrent writers on the same path can only ever produce
"last validated write wins", never a lost update of a sibling path.

Every remote call is bounded by a timeout. Timeouts and transport failures
raise StoreUnavailable; they are never turned into an empty result.
"""

from __future__ import annotations

import copy
import hashlib
import json
import threading
from typing import Any, Callable, Dict, Optional, Tuple

import requests

from hymnal_backend import config
from hymnal_backend.errors import StoreUnavailable, Unauthorized


# ============================================================================
# Base Interface
# ============================================================================

class KeyTreeStore:
    """Common interface for entitlement store clients."""

    retries: int = config.STORE_TRANSACTION_RETRIES

    def get(self, path: str) -> Any:
        raise NotImplementedError

    def get_with_etag(self, path: str) -> Tuple[Any, str]:
        raise NotImplementedError

    def set(self, path: str, value: Any) -> None:
        raise NotImplementedError

    def update(self, path: str, values: Dict[str, Any]) -> None:
        """Write only the given children of ``path``; None deletes a child."""
        raise NotImplementedError

    def delete(self, path: str) -> None:
        raise NotImplementedError

    def put_if_match(self, path: str, value: Any, etag: str) -> Tuple[bool, Any, str]:
        """
        Conditionally replace ``path`` (None deletes it).

        Returns:
            (written, current value, current etag). When the etag no longer
            matches nothing is written and the fresh value/etag are returned.
        """
        raise NotImplementedError

    def probe(self) -> bool:
        """Connectivity check. Raises StoreUnavailable when unreachable."""
        raise NotImplementedError

    def transaction(self, path: str, update_fn: Callable[[Any], Any]) -> Any:
        """
        Atomically read-modify-write a single sub-path.

        ``update_fn`` receives a private copy of the current value and returns
        the new value (None deletes). It is re-run against fresh state on
        every conflict and may raise to abort without writing.

        Raises:
            StoreUnavailable: the retry budget ran out under contention
        """
        current, etag = self.get_with_etag(path)
        for attempt in range(1, self.retries + 1):
            new_value = update_fn(copy.deepcopy(current))
            written, current, etag = self.put_if_match(path, new_value, etag)
            if written:
                return new_value
            if config.IS_DEV:
                print(f"[STORE] Conflict on {path} (attempt {attempt}/{self.retries}), retrying")
        print(f"[STORE] Transaction on {path} gave up after {self.retries} conflicts")
        raise StoreUnavailable(f"Too much contention on {path}")


def split_path(path: str) -> list:
    return [part for part in (path or "").strip("/").split("/") if part]


# ============================================================================
# Firebase Realtime Database (REST)
# ============================================================================

class FirebaseRestStore(KeyTreeStore):
    """
    Realtime Database REST client.

    Conditional writes use the database's ETag support: a GET with
    ``X-Firebase-ETag: true`` returns the location's ETag, and a PUT/DELETE
    carrying ``if-match`` fails with 412 when the location changed.
    """

    def __init__(
        self,
        base_url: str,
        auth_token: str = "",
        timeout: float = config.STORE_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ):
        if not base_url:
            raise ValueError("Firebase database URL cannot be empty")
        if not base_url.startswith("https://") and not config.IS_DEV:
            raise ValueError(f"Firebase database URL must use HTTPS. Got: {base_url}")
        self.base_url = base_url.rstrip("/")
        self.auth_token = auth_token
        self.timeout = timeout
        self.session = session or requests.Session()

    def _url(self, path: str) -> str:
        parts = split_path(path)
        return f"{self.base_url}/{'/'.join(parts)}.json" if parts else f"{self.base_url}/.json"

    def _request(
        self,
        method: str,
        path: str,
        json_body: Any = None,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, str]] = None,
        allow_precondition_failed: bool = False,
    ) -> requests.Response:
        query = dict(params or {})
        if self.auth_token:
            query["auth"] = self.auth_token
        try:
            resp = self.session.request(
                method,
                self._url(path),
                json=json_body,
                headers=headers,
                params=query,
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout:
            print(f"[STORE] Timeout after {self.timeout}s on {method} {path}")
            raise StoreUnavailable(f"Store timed out after {self.timeout}s")
        except requests.exceptions.ConnectionError:
            print(f"[STORE] Connection error on {method} {path}")
            raise StoreUnavailable("Cannot connect to the entitlement store")
        except requests.exceptions.RequestException as e:
            print(f"[STORE] Transport error on {method} {path}: {type(e).__name__}")
            raise StoreUnavailable(f"Store transport error: {type(e).__name__}")

        if resp.status_code == 412 and allow_precondition_failed:
            return resp
        if resp.status_code in (401, 403):
            print(f"[STORE] Permission denied on {method} {path}")
            raise Unauthorized("Entitlement store denied access")
        if resp.status_code >= 400:
            print(f"[STORE] {method} {path} failed with HTTP {resp.status_code}")
            raise StoreUnavailable(f"Store returned HTTP {resp.status_code}")
        return resp

    def get(self, path: str) -> Any:
        return self._request("GET", path).json()

    def get_with_etag(self, path: str) -> Tuple[Any, str]:
        resp = self._request("GET", path, headers={"X-Firebase-ETag": "true"})
        return resp.json(), resp.headers.get("ETag", "")

    def set(self, path: str, value: Any) -> None:
        if value is None:
            self.delete(path)
            return
        self._request("PUT", path, json_body=value)
        if config.IS_DEV:
            print(f"[STORE] PUT {path}")

    def update(self, path: str, values: Dict[str, Any]) -> None:
        self._request("PATCH", path, json_body=values)
        if config.IS_DEV:
            print(f"[STORE] PATCH {path} keys={sorted(values)}")

    def delete(self, path: str) -> None:
        self._request("DELETE", path)
        if config.IS_DEV:
            print(f"[STORE] DELETE {path}")

    def put_if_match(self, path: str, value: Any, etag: str) -> Tuple[bool, Any, str]:
        headers = {"if-match": etag, "X-Firebase-ETag": "true"}
        if value is None:
            resp = self._request("DELETE", path, headers=headers, allow_precondition_failed=True)
        else:
            resp = self._request("PUT", path, json_body=value, headers=headers, allow_precondition_failed=True)
        if resp.status_code == 412:
            return False, resp.json(), resp.headers.get("ETag", "")
        return True, value, resp.headers.get("ETag", "")

    def probe(self) -> bool:
        self._request("GET", "", params={"shallow": "true"})
        return True


# ============================================================================
# In-Memory Store
# ============================================================================

def compute_etag(value: Any) -> str:
    encoded = json.dumps(value, sort_keys=True, separators=(",", ":")).encode()
    return hashlib.sha256(encoded).hexdigest()


def _prune(value: Any) -> Any:
    """Drop nulls and empty objects, as the Realtime Database does."""
    if isinstance(value, dict):
        pruned = {k: _prune(v) for k, v in value.items()}
        pruned = {k: v for k, v in pruned.items() if v is not None}
        return pruned or None
    if isinstance(value, list):
        items = [_prune(v) for v in value]
        return [v for v in items if v is not None] or None
    return value


class InMemoryStore(KeyTreeStore):
    """Process-local key tree with the same semantics as the REST client."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._tree: Dict[str, Any] = _prune(json.loads(json.dumps(initial or {}))) or {}
        self._lock = threading.RLock()

    def _read(self, path: str) -> Any:
        node: Any = self._tree
        for part in split_path(path):
            if not isinstance(node, dict) or part not in node:
                return None
            node = node[part]
        return copy.deepcopy(node)

    def _write(self, path: str, value: Any) -> None:
        parts = split_path(path)
        value = _prune(json.loads(json.dumps(value)))
        if not parts:
            self._tree = value or {}
            return
        node = self._tree
        trail = []
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            trail.append((node, part))
            node = child
        if value is None:
            node.pop(parts[-1], None)
        else:
            node[parts[-1]] = value
        # Remove parents left empty
        for parent, key in reversed(trail):
            if parent.get(key):
                break
            parent.pop(key, None)

    def get(self, path: str) -> Any:
        with self._lock:
            return self._read(path)

    def get_with_etag(self, path: str) -> Tuple[Any, str]:
        with self._lock:
            value = self._read(path)
            return value, compute_etag(value)

    def set(self, path: str, value: Any) -> None:
        with self._lock:
            self._write(path, value)

    def update(self, path: str, values: Dict[str, Any]) -> None:
        base = "/".join(split_path(path))
        with self._lock:
            for key, value in values.items():
                self._write(f"{base}/{key}" if base else key, value)

    def delete(self, path: str) -> None:
        with self._lock:
            self._write(path, None)

    def put_if_match(self, path: str, value: Any, etag: str) -> Tuple[bool, Any, str]:
        with self._lock:
            current = self._read(path)
            current_etag = compute_etag(current)
            if current_etag != etag:
                return False, current, current_etag
            self._write(path, value)
            stored = self._read(path)
            return True, stored, compute_etag(stored)

    def probe(self) -> bool:
        return True

    def dump(self) -> Dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._tree)
