"""Sequential multi-portal harvesting."""

from __future__ import annotations

from dataclasses import dataclass, field
import time
from typing import Callable, Iterable

from ceres.core.logging import Logger, get_logger

from .errors import FailureKind
from .gateways import PortalFetcher
from .models import BatchReport, PortalDescriptor, PortalSyncReport
from .orchestrator import SyncOrchestrator

__all__ = ["BatchCoordinator"]


@dataclass(slots=True)
class _BatchReportBuilder:
    """Collects portal reports until the batch is finalized."""

    started: float
    reports: list[PortalSyncReport] = field(default_factory=list)

    def append(self, report: PortalSyncReport) -> None:
        self.reports.append(report)

    def finalize(self, finished: float) -> BatchReport:
        return BatchReport(
            portals=tuple(self.reports),
            duration=round(finished - self.started, 3),
        )


class BatchCoordinator:
    """Run :class:`SyncOrchestrator` over several portals, one at a time.

    Portals are never processed concurrently, which bounds the total load
    placed on the embedding provider. A failing portal, whether it aborts
    during sync or cannot be listed at all, is recorded and the batch moves
    on to the next one.
    """

    def __init__(
        self,
        *,
        fetcher: PortalFetcher,
        orchestrator: SyncOrchestrator,
        logger: Logger | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._fetcher = fetcher
        self._orchestrator = orchestrator
        self._logger = logger or get_logger(__name__, component="batch")
        self._clock = clock

    def run_batch(self, portals: Iterable[PortalDescriptor]) -> BatchReport:
        """Harvest ``portals`` in order and return the frozen batch report."""

        builder = _BatchReportBuilder(started=self._clock())
        portal_list = list(portals)
        self._logger.info("batch-start", portals=len(portal_list))

        for index, portal in enumerate(portal_list, start=1):
            self._logger.info(
                "batch-portal-start",
                portal=portal.name,
                position=index,
                total=len(portal_list),
            )
            builder.append(self._run_portal(portal))

        report = builder.finalize(self._clock())
        self._logger.info(
            "batch-complete",
            status=str(report.status),
            portals=report.total_portals,
            successful=report.successful_count,
            failed=report.failed_count,
            datasets=report.total_datasets,
            duration=report.duration,
        )
        return report

    def _run_portal(self, portal: PortalDescriptor) -> PortalSyncReport:
        started = self._clock()
        try:
            datasets = self._fetcher.fetch(portal)
        except Exception as exc:
            self._logger.error(
                "batch-portal-fetch-failed",
                portal=portal.name,
                url=portal.url,
                error=str(exc),
            )
            return PortalSyncReport.portal_failure(
                portal.name,
                reason=FailureKind.FETCH,
                error=f"Failed to list portal: {exc}",
                duration=round(self._clock() - started, 3),
            )
        try:
            return self._orchestrator.sync_portal(portal, datasets)
        except Exception as exc:
            self._logger.exception(
                "batch-portal-sync-failed",
                portal=portal.name,
                url=portal.url,
                error=str(exc),
            )
            return PortalSyncReport.portal_failure(
                portal.name,
                reason=FailureKind.UNKNOWN,
                error=f"Portal sync failed: {exc}",
                duration=round(self._clock() - started, 3),
            )
