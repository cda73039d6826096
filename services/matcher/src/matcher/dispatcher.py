from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Literal, Protocol

from common.utils import log_event

from matcher.geo import within_radius
from matcher.mailer import NotificationSender
from matcher.models import Location, OperatingArea, Opportunity, Subscriber
from matcher.preferences import PreferenceGate

LOGGER = logging.getLogger("catchment.matcher")

OutcomeStatus = Literal["sent", "skipped", "failed"]


class SubscriberDirectory(Protocol):
    async def list_verified_subscribers(self) -> list[Subscriber]: ...


class OperatingAreaStore(Protocol):
    async def get_operating_area(self, subscriber_id: str) -> OperatingArea | None: ...


class DirectoryUnavailableError(RuntimeError):
    """The candidate list could not be fetched; the whole fan-out is aborted."""


@dataclass(frozen=True)
class CandidateOutcome:
    subscriber_id: str
    status: OutcomeStatus
    reason: str
    error: str | None = None


@dataclass
class DispatchReport:
    opportunity_id: str
    location_missing: bool = False
    outcomes: list[CandidateOutcome] = field(default_factory=list)

    @property
    def sent(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == "sent")

    @property
    def skipped(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == "skipped")

    @property
    def failed(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == "failed")

    def reasons(self) -> dict[str, str]:
        return {outcome.subscriber_id: outcome.reason for outcome in self.outcomes}

    def summary(self) -> dict[str, object]:
        return {
            "opportunity_id": self.opportunity_id,
            "location_missing": self.location_missing,
            "candidates": len(self.outcomes),
            "sent": self.sent,
            "skipped": self.skipped,
            "failed": self.failed,
        }


class OpportunityDispatcher:
    def __init__(
        self,
        directory: SubscriberDirectory,
        areas: OperatingAreaStore,
        gate: PreferenceGate,
        sender: NotificationSender,
    ) -> None:
        self.directory = directory
        self.areas = areas
        self.gate = gate
        self.sender = sender

    async def handle(self, opportunity: Opportunity) -> DispatchReport:
        """Fan one opportunity out to every eligible subscriber.

        Raises ``DirectoryUnavailableError`` only when the candidate list itself
        cannot be fetched. Everything that goes wrong for a single candidate is
        recorded in the returned report.
        """
        report = DispatchReport(opportunity_id=opportunity.id)
        if opportunity.location is None:
            report.location_missing = True
            log_event(
                LOGGER,
                logging.WARNING,
                "opportunity_without_location",
                opportunity_id=opportunity.id,
            )
            return report

        try:
            candidates = await self.directory.list_verified_subscribers()
        except Exception as exc:
            raise DirectoryUnavailableError(
                f"Could not list subscribers for opportunity {opportunity.id}"
            ) from exc

        seen_ids: set[str] = set()
        seen_emails: set[str] = set()
        for subscriber in candidates:
            outcome = await self._process_candidate(
                subscriber,
                opportunity,
                opportunity.location,
                seen_ids=seen_ids,
                seen_emails=seen_emails,
            )
            report.outcomes.append(outcome)

        log_event(LOGGER, logging.INFO, "opportunity_dispatched", **report.summary())
        return report

    async def _process_candidate(
        self,
        subscriber: Subscriber,
        opportunity: Opportunity,
        point: Location,
        *,
        seen_ids: set[str],
        seen_emails: set[str],
    ) -> CandidateOutcome:
        if not subscriber.email:
            return CandidateOutcome(subscriber.id, "skipped", "no_email")

        email_key = subscriber.email.strip().lower()
        if subscriber.id in seen_ids or email_key in seen_emails:
            return CandidateOutcome(subscriber.id, "skipped", "duplicate")
        seen_ids.add(subscriber.id)

        if not await self.gate.should_notify(subscriber.id):
            return CandidateOutcome(subscriber.id, "skipped", "notifications_disabled")

        try:
            area = await self.areas.get_operating_area(subscriber.id)
        except Exception as exc:
            log_event(
                LOGGER,
                logging.WARNING,
                "candidate_failed",
                opportunity_id=opportunity.id,
                subscriber_id=subscriber.id,
                stage="operating_area",
                error=str(exc),
            )
            return CandidateOutcome(
                subscriber.id, "failed", "operating_area_lookup_failed", error=str(exc)
            )

        if area is None:
            return CandidateOutcome(subscriber.id, "skipped", "no_operating_area")

        if not within_radius(area, point):
            return CandidateOutcome(subscriber.id, "skipped", "outside_radius")

        seen_emails.add(email_key)
        result = await self.sender.send(subscriber.email, opportunity)
        if not result.ok:
            log_event(
                LOGGER,
                logging.WARNING,
                "candidate_failed",
                opportunity_id=opportunity.id,
                subscriber_id=subscriber.id,
                stage="send",
                error=result.error,
            )
            return CandidateOutcome(subscriber.id, "failed", "send_failed", error=result.error)
        return CandidateOutcome(subscriber.id, "sent", "sent")
