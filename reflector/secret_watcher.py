"""
List-then-watch subscription over Secrets in one namespace (or cluster-wide).

Emits Restarted(batch) after every full list, then Applied/Deleted for each
watch event. Reconnects from the last seen resourceVersion when the stream
times out, relists on 410 Gone, and backs off on any other failure. This is
the only place that retries; the multiplexer above it never does. A stream
that closes immediately without events is treated as a failure.
"""

import threading
import time
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from kubernetes import watch
from kubernetes.client.exceptions import ApiException

from common.constants import (
    DEFAULT_WATCH_TIMEOUT_SECONDS,
    HTTP_GONE,
    WATCH_BACKOFF_INITIAL_SECONDS,
    WATCH_BACKOFF_MAX_SECONDS,
    WATCH_MIN_STREAM_SECONDS,
)
from common.logging_config import get_logger
from common.types import Applied, Deleted, Restarted, Secret, WatchEvent
from reflector.exceptions import MalformedSecretError
from reflector.kube_api import SECRET_KIND

logger = get_logger(__name__)


class SecretWatcher:
    """
    Blocking iterator of WatchEvent for one namespace, or all namespaces
    when namespace is None. Meant to be driven from a dedicated thread.
    """

    def __init__(
        self,
        core: Any,
        namespace: Optional[str] = None,
        label_selector: Optional[str] = None,
        field_selector: Optional[str] = None,
        timeout_seconds: int = DEFAULT_WATCH_TIMEOUT_SECONDS,
        watch_factory: Callable[[], Any] = watch.Watch,
    ):
        self.core = core
        self.namespace = namespace
        self.label_selector = label_selector
        self.field_selector = field_selector
        self.timeout_seconds = timeout_seconds
        self._watch_factory = watch_factory
        self._stop_event = threading.Event()
        self._watch_lock = threading.Lock()
        self._active_watch = None

    @property
    def scope(self) -> str:
        return self.namespace if self.namespace is not None else "<all namespaces>"

    def stop(self) -> None:
        """Request the iterator to finish and interrupt any open stream."""
        self._stop_event.set()
        with self._watch_lock:
            active = self._active_watch
        if active is not None:
            active.stop()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def _list_func(self) -> Callable:
        if self.namespace is None:
            return self.core.list_secret_for_all_namespaces
        return self.core.list_namespaced_secret

    def _request_kwargs(self) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {"timeout_seconds": self.timeout_seconds}
        if self.namespace is not None:
            kwargs["namespace"] = self.namespace
        if self.label_selector:
            kwargs["label_selector"] = self.label_selector
        if self.field_selector:
            kwargs["field_selector"] = self.field_selector
        return kwargs

    def _relist(self) -> Tuple[Tuple[Secret, ...], Optional[str]]:
        result = self._list_func()(**self._request_kwargs())
        secrets: List[Secret] = []
        for item in result.items or []:
            try:
                secrets.append(SECRET_KIND.to_domain(item))
            except MalformedSecretError as e:
                logger.warning(f"Skipping malformed secret during list of {self.scope}: {e}")
        resource_version = result.metadata.resource_version if result.metadata else None
        logger.info(f"Listed {len(secrets)} secret(s) in {self.scope} at resourceVersion {resource_version}")
        return tuple(secrets), resource_version

    def _open_watch(self):
        w = self._watch_factory()
        with self._watch_lock:
            self._active_watch = w
        return w

    def _close_watch(self) -> None:
        with self._watch_lock:
            self._active_watch = None

    @staticmethod
    def _resource_version_of(raw: Dict[str, Any]) -> Optional[str]:
        metadata = getattr(raw.get("object"), "metadata", None)
        if metadata is not None and getattr(metadata, "resource_version", None):
            return metadata.resource_version
        raw_object = raw.get("raw_object") or {}
        return (raw_object.get("metadata") or {}).get("resourceVersion")

    def _to_event(self, event_type: str, obj: Any) -> Optional[WatchEvent]:
        try:
            secret = SECRET_KIND.to_domain(obj)
        except MalformedSecretError as e:
            logger.warning(f"Skipping malformed {event_type} event in {self.scope}: {e}")
            return None

        if event_type in ("ADDED", "MODIFIED"):
            return Applied(secret, source=self.namespace)
        if event_type == "DELETED":
            return Deleted(secret, source=self.namespace)

        logger.debug(f"Ignored watch event type {event_type} in {self.scope}")
        return None

    def __iter__(self) -> Iterator[WatchEvent]:
        backoff = WATCH_BACKOFF_INITIAL_SECONDS
        resource_version: Optional[str] = None

        while not self._stop_event.is_set():
            try:
                if resource_version is None:
                    secrets, resource_version = self._relist()
                    yield Restarted(secrets, source=self.namespace)
                    backoff = WATCH_BACKOFF_INITIAL_SECONDS

                w = self._open_watch()
                logger.debug(f"Watching secrets in {self.scope} from resourceVersion {resource_version}")
                opened_at = time.monotonic()
                received = False
                for raw in w.stream(
                    self._list_func(),
                    resource_version=resource_version,
                    allow_watch_bookmarks=True,
                    **self._request_kwargs()
                ):
                    received = True
                    event_type = raw.get("type")

                    if event_type == "ERROR":
                        raw_object = raw.get("raw_object") or {}
                        raise ApiException(status=raw_object.get("code"), reason=raw_object.get("message"))

                    resource_version = self._resource_version_of(raw) or resource_version

                    if event_type == "BOOKMARK":
                        continue

                    event = self._to_event(event_type, raw.get("object"))
                    if event is not None:
                        yield event
                    backoff = WATCH_BACKOFF_INITIAL_SECONDS

                if received or self._stop_event.is_set() or time.monotonic() - opened_at >= WATCH_MIN_STREAM_SECONDS:
                    continue
                logger.warning(f"Watch of {self.scope} closed immediately without events")

            except ApiException as e:
                if e.status == HTTP_GONE:
                    logger.info(f"Watch of {self.scope} expired (410 Gone), relisting")
                    resource_version = None
                    continue
                logger.warning(f"Watch of {self.scope} failed: {e.status} {e.reason}")
            except Exception as e:
                logger.error(f"Watch of {self.scope} failed: {e}", exc_info=True)
            finally:
                self._close_watch()

            logger.info(f"Reconnecting watch of {self.scope} in {backoff:.0f}s")
            if self._stop_event.wait(backoff):
                break
            backoff = min(backoff * 2, WATCH_BACKOFF_MAX_SECONDS)

        logger.info(f"Watch of {self.scope} stopped")
