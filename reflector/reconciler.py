"""
Reconciler: turns watch events into destination secret writes.

For every applied source secret that matches a rule, each destination is
read through the client cache, created when absent, replaced when its data
differs and left alone when it is already identical. Failures are contained
to the destination they happen on.
"""

import re
from dataclasses import dataclass
from typing import Dict, Iterable, Optional

from common.constants import (
    MANAGED_BY_ANNOTATION,
    MANAGED_BY_VALUE,
    SOURCE_ANNOTATION,
)
from common.logging_config import get_logger
from common.types import (
    Applied,
    Deleted,
    Restarted,
    Secret,
    SecretRef,
    WatchEvent,
    full_name,
)
from reflector.client_cache import NamespacedClientCache
from reflector.exceptions import (
    ConflictError,
    MalformedSecretError,
    NotFoundError,
    ReflectorException,
)
from reflector.replication_config import ReplicationConfig

logger = get_logger(__name__)

# RFC 1123 label (namespaces) and subdomain (object names)
_DNS_LABEL = re.compile(r'^[a-z0-9]([-a-z0-9]*[a-z0-9])?$')
_DNS_SUBDOMAIN = re.compile(r'^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$')


@dataclass
class ReconcileReport:
    """Per-event outcome counters."""
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    conflicts: int = 0
    failed: int = 0
    skipped: int = 0
    orphaned: int = 0

    @property
    def writes(self) -> int:
        return self.created + self.updated

    def merge(self, other: "ReconcileReport") -> None:
        self.created += other.created
        self.updated += other.updated
        self.unchanged += other.unchanged
        self.conflicts += other.conflicts
        self.failed += other.failed
        self.skipped += other.skipped
        self.orphaned += other.orphaned


def managed_annotations(source: Secret, existing: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """Annotations a replica carries: whatever it had, plus the managed markers."""
    annotations = dict(existing or {})
    annotations[MANAGED_BY_ANNOTATION] = MANAGED_BY_VALUE
    annotations[SOURCE_ANNOTATION] = full_name(source)
    return annotations


def build_replica(source: Secret, destination: SecretRef) -> Secret:
    """
    Construct a new destination secret from a source.

    Raises:
        MalformedSecretError: If destination is not a valid namespace/name pair
    """
    if len(destination.namespace) > 63 or not _DNS_LABEL.match(destination.namespace):
        raise MalformedSecretError(f"Invalid destination namespace {destination.namespace!r}")
    if len(destination.name) > 253 or not _DNS_SUBDOMAIN.match(destination.name):
        raise MalformedSecretError(f"Invalid destination name {destination.name!r}")

    return Secret(
        ref=destination,
        data=source.data,
        annotations=managed_annotations(source),
    )


def refresh_replica(source: Secret, existing: Secret) -> Secret:
    """Existing destination with the source's payload and the managed markers."""
    return Secret(
        ref=existing.ref,
        data=source.data,
        annotations=managed_annotations(source, existing.annotations),
        labels=dict(existing.labels),
        resource_version=existing.resource_version,
    )


class Reconciler:
    """
    Drives destination writes for matching source secrets.

    Events are handled one at a time; every write an event triggers finishes
    before handle_event returns.
    """

    def __init__(self, config: ReplicationConfig, clients: NamespacedClientCache):
        self.config = config
        self.clients = clients

    async def run(self, events) -> ReconcileReport:
        """
        Consume an async event stream until it ends.

        Returns:
            Totals across all processed events
        """
        totals = ReconcileReport()
        async for event in events:
            try:
                totals.merge(await self.handle_event(event))
            except Exception as e:
                logger.error(f"Unexpected error reconciling {type(event).__name__} event: {e}", exc_info=True)
                totals.failed += 1
        logger.info(
            f"Event stream ended: created={totals.created} updated={totals.updated} "
            f"unchanged={totals.unchanged} conflicts={totals.conflicts} failed={totals.failed}"
        )
        return totals

    async def handle_event(self, event: WatchEvent) -> ReconcileReport:
        """
        Reconcile a single watch event. Never raises for API failures.
        """
        if isinstance(event, Applied):
            return await self.reconcile_secret(event.secret)

        if isinstance(event, Restarted):
            return await self.resync(event.secrets)

        if isinstance(event, Deleted):
            return self.handle_deleted(event.secret)

        raise TypeError(f"Unknown watch event {event!r}")

    async def resync(self, secrets: Iterable[Secret]) -> ReconcileReport:
        """Reconcile every secret of a relist exactly as if each were applied."""
        report = ReconcileReport()
        count = 0
        for secret in secrets:
            count += 1
            report.merge(await self.reconcile_secret(secret))
        logger.info(
            f"Resynced {count} secret(s): created={report.created} updated={report.updated} "
            f"unchanged={report.unchanged} failed={report.failed}"
        )
        return report

    def handle_deleted(self, secret: Secret) -> ReconcileReport:
        """
        Source deletions leave replicas in place; they are only reported.
        """
        report = ReconcileReport()
        for rule in self.config.rules_for(secret.ref):
            for destination in rule.destinations:
                report.orphaned += 1
                logger.info(f"Source {full_name(secret)} deleted; replica {destination} left in place")
        return report

    async def reconcile_secret(self, secret: Secret) -> ReconcileReport:
        """
        Bring every configured destination of secret in line with its data.
        """
        report = ReconcileReport()
        rules = self.config.rules_for(secret.ref)
        if not rules:
            return report

        source_name = full_name(secret)
        logger.debug(f"Reconciling {source_name} ({len(secret.data.data)} key(s)) for {len(rules)} rule(s)")

        for rule in rules:
            for destination in rule.destinations:
                if destination == secret.ref:
                    logger.warning(f"Skipping {destination}: destination is the source itself")
                    report.skipped += 1
                    continue
                try:
                    await self._sync_destination(secret, destination, report)
                except Exception as e:
                    logger.error(f"Unexpected error syncing {destination} from {source_name}: {e}", exc_info=True)
                    report.failed += 1

        return report

    async def _sync_destination(self, source: Secret, destination: SecretRef, report: ReconcileReport) -> None:
        dest_name = destination.full_name

        try:
            existing = await self.clients.get(dest_name)
        except NotFoundError:
            existing = None
        except ReflectorException as e:
            logger.error(f"Failed to read destination {dest_name}: {e}")
            report.failed += 1
            return

        if existing is None:
            await self._create(source, destination, report)
            return

        if existing.data.same_payload(source.data):
            logger.debug(f"Destination {dest_name} already up to date")
            report.unchanged += 1
            return

        await self._update(source, existing, report)

    async def _create(self, source: Secret, destination: SecretRef, report: ReconcileReport) -> None:
        dest_name = destination.full_name
        try:
            replica = build_replica(source, destination)
        except MalformedSecretError as e:
            logger.error(f"Cannot build replica {dest_name} of {full_name(source)}: {e}")
            report.skipped += 1
            return

        try:
            await self.clients.create(destination.namespace, replica)
        except ConflictError:
            logger.info(f"Destination {dest_name} was created concurrently by another writer")
            report.conflicts += 1
            return
        except ReflectorException as e:
            logger.error(f"Failed to create destination {dest_name}: {e}")
            report.failed += 1
            return

        logger.info(f"Created {dest_name} from {full_name(source)}")
        report.created += 1

    async def _update(self, source: Secret, existing: Secret, report: ReconcileReport) -> None:
        dest_name = existing.ref.full_name
        if existing.annotations.get(MANAGED_BY_ANNOTATION) != MANAGED_BY_VALUE:
            logger.warning(f"Destination {dest_name} is not marked as managed; taking it over")

        try:
            await self.clients.replace(dest_name, refresh_replica(source, existing))
        except ConflictError:
            logger.info(f"Destination {dest_name} changed while updating; will retry on next event")
            report.conflicts += 1
            return
        except ReflectorException as e:
            logger.error(f"Failed to update destination {dest_name}: {e}")
            report.failed += 1
            return

        logger.info(f"Updated {dest_name} from {full_name(source)}")
        report.updated += 1
