from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

import structlog

from .balance import BalanceStore
from .config import HoneySettings, get_settings
from .errors import (
    AlreadyAppliedError,
    AlreadyTerminalError,
    ApplicationNotFoundError,
    ApplicationNotPendingError,
    BusyError,
    JobNotOpenError,
    LedgerInconsistencyError,
    NotAuthorizedError,
)
from .guard import ContentGuard
from .ledger import ApplicationLedger
from .models import (
    Application,
    ApplicationResponse,
    ApplicationStatus,
    DecisionResponse,
    EntryState,
    ReconcileReport,
)
from .storage import InMemoryStorage, JobCatalog, KeyedLocks

logger = structlog.get_logger(__name__)


class AccessPolicy:
    """Who may decide on, withdraw, or list applications."""

    def __init__(self, jobs: JobCatalog, admin_ids: frozenset = frozenset()):
        self.jobs = jobs
        self.admin_ids = admin_ids

    def is_admin(self, user_id: UUID) -> bool:
        return user_id in self.admin_ids

    def can_decide(self, caller_id: UUID, job_id: UUID) -> bool:
        return self.is_admin(caller_id) or self.jobs.get_owner(job_id) == caller_id

    def can_withdraw(self, caller_id: UUID, application: dict) -> bool:
        return application["applicant_id"] == caller_id

    def can_edit(self, caller_id: UUID, application: dict) -> bool:
        return application["applicant_id"] == caller_id


class ApplicationService:
    """Drives the application lifecycle and the bidding fee attached to it.

    Every transition of the applications on one job runs under that job's
    lock. Settlement of ledger entries is idempotent, so an interrupted
    refund fan-out is finished by ``reconcile`` (or by retrying ``accept``)
    without crediting anyone twice.
    """

    def __init__(
        self,
        jobs: JobCatalog,
        storage: Optional[InMemoryStorage] = None,
        settings: Optional[HoneySettings] = None,
        guard: Optional[ContentGuard] = None,
        policy: Optional[AccessPolicy] = None,
    ):
        self.settings = settings or get_settings()
        self.storage = storage or InMemoryStorage()
        self.jobs = jobs
        self.guard = guard or ContentGuard()
        self.policy = policy or AccessPolicy(jobs, self.settings.admin_ids)
        self.balances = BalanceStore(self.storage, self._locks("balance"))
        self.ledger = ApplicationLedger(self.balances, self.storage, self._locks("ledger"))
        self.job_locks = self._locks("job")

    def _locks(self, name: str) -> KeyedLocks:
        return KeyedLocks(
            name,
            lock_timeout=self.settings.lock_timeout,
            max_attempts=self.settings.max_attempts,
            backoff_base=self.settings.backoff_base,
        )

    def submit(
        self,
        job_id: UUID,
        applicant_id: UUID,
        cover_letter_text: str,
        proposed_rate: Optional[Decimal] = None,
        application_id: Optional[UUID] = None,
    ) -> ApplicationResponse:
        log = logger.bind(job_id=str(job_id), applicant_id=str(applicant_id))

        replay = self._replayed_submission(application_id, job_id, applicant_id)
        if replay:
            return replay

        if not self.jobs.is_job_open(job_id):
            raise JobNotOpenError(f"Job {job_id} is not accepting applications")

        self.guard.enforce(cover_letter_text)

        application_id = application_id or uuid4()
        fee = self.settings.bid_fee

        with self.job_locks.hold(job_id):
            replay = self._replayed_submission(application_id, job_id, applicant_id)
            if replay:
                return replay

            if self.storage.find_application(job_id, applicant_id):
                raise AlreadyAppliedError(f"Applicant {applicant_id} has already applied to job {job_id}")
            if self.ledger.get_entry(application_id) is not None:
                raise AlreadyAppliedError(f"Application id {application_id} belongs to a rolled-back submission")

            # The entry exists before any drops leave the balance, so every
            # reservation can be found by reconcile.
            try:
                entry = self.ledger.create_entry(application_id, applicant_id, job_id, fee)
                self.balances.reserve(
                    applicant_id,
                    fee,
                    description=f"Application fee for job {job_id}",
                    reference=str(application_id),
                )
            except Exception:
                self.ledger.discard_entry(application_id)
                raise

            try:
                application_data = {
                    "id": application_id,
                    "job_id": job_id,
                    "applicant_id": applicant_id,
                    "status": ApplicationStatus.PENDING,
                    "cover_letter_text": cover_letter_text,
                    "proposed_rate": proposed_rate,
                    "submitted_at": datetime.now(timezone.utc),
                    "reviewed_at": None,
                    "updated_at": None,
                }
                self.storage.add_application(application_data)
            except Exception:
                log.exception("submit_failed", application_id=str(application_id))
                # A busy refund leaves the entry RESERVED for reconcile.
                self._settle(application_id, EntryState.REFUNDED)
                raise

        log.info("application_submitted", application_id=str(application_id), fee=fee)
        return ApplicationResponse(
            application=Application(**application_data),
            ledger_entry=entry,
            message="Application submitted successfully",
        )

    def accept(self, application_id: UUID, caller_id: UUID) -> DecisionResponse:
        job_id = self._get(application_id)["job_id"]
        with self.job_locks.hold(job_id):
            application = self._get(application_id)
            self._authorize_decision(caller_id, job_id)

            if application["status"] == ApplicationStatus.ACCEPTED:
                # A retried accept finishes whatever settlement the first call left open.
                self._settle_job(job_id)
            self._require_pending(application)

            self._transition(application, ApplicationStatus.ACCEPTED)
            self._settle(application_id, EntryState.CAPTURED)

            siblings = [
                a for a in self.storage.applications_for_job(job_id)
                if a["id"] != application_id and a["status"] == ApplicationStatus.PENDING
            ]
            for sibling in siblings:
                self._transition(sibling, ApplicationStatus.REJECTED)
            refunded = [s["id"] for s in siblings if self._settle(s["id"], EntryState.REFUNDED)]

        logger.info(
            "application_accepted",
            application_id=str(application_id),
            job_id=str(job_id),
            rejected=len(siblings),
            refunded=len(refunded),
        )
        return DecisionResponse(
            application=Application(**application),
            refunded_application_ids=refunded,
            message=f"Application accepted; {len(refunded)} competing bids refunded",
        )

    def reject(self, application_id: UUID, caller_id: UUID) -> DecisionResponse:
        job_id = self._get(application_id)["job_id"]
        with self.job_locks.hold(job_id):
            application = self._get(application_id)
            self._authorize_decision(caller_id, job_id)
            self._require_pending(application)
            self._transition(application, ApplicationStatus.REJECTED)
            refunded = self._settle(application_id, EntryState.REFUNDED)

        logger.info("application_rejected", application_id=str(application_id), job_id=str(job_id))
        return DecisionResponse(
            application=Application(**application),
            refunded_application_ids=[application_id] if refunded else [],
            message="Application rejected; bidding fee refunded",
        )

    def withdraw(self, application_id: UUID, applicant_id: UUID) -> DecisionResponse:
        job_id = self._get(application_id)["job_id"]
        with self.job_locks.hold(job_id):
            application = self._get(application_id)
            if not self.policy.can_withdraw(applicant_id, application):
                raise NotAuthorizedError(f"User {applicant_id} cannot withdraw application {application_id}")
            self._require_pending(application)
            self._transition(application, ApplicationStatus.WITHDRAWN)
            refunded = self._settle(application_id, EntryState.REFUNDED)

        logger.info("application_withdrawn", application_id=str(application_id), job_id=str(job_id))
        return DecisionResponse(
            application=Application(**application),
            refunded_application_ids=[application_id] if refunded else [],
            message="Application withdrawn; bidding fee refunded",
        )

    def update(
        self,
        application_id: UUID,
        applicant_id: UUID,
        cover_letter_text: Optional[str] = None,
        proposed_rate: Optional[Decimal] = None,
    ) -> Application:
        """Edit the cover letter or rate of a PENDING application.

        New cover letter text goes through the same contact-information check
        as a submission. The fee is untouched.
        """
        job_id = self._get(application_id)["job_id"]
        with self.job_locks.hold(job_id):
            application = self._get(application_id)
            if not self.policy.can_edit(applicant_id, application):
                raise NotAuthorizedError(f"User {applicant_id} cannot edit application {application_id}")
            self._require_pending(application)
            if cover_letter_text is not None:
                self.guard.enforce(cover_letter_text)
                application["cover_letter_text"] = cover_letter_text
            if proposed_rate is not None:
                application["proposed_rate"] = proposed_rate
            application["updated_at"] = datetime.now(timezone.utc)

        logger.info("application_updated", application_id=str(application_id), job_id=str(job_id))
        return Application(**application)

    def get_application(self, application_id: UUID) -> Application:
        return Application(**self._get(application_id))

    def list_for_job(self, job_id: UUID, caller_id: UUID) -> list[Application]:
        self._authorize_decision(caller_id, job_id)
        applications = [Application(**a) for a in self.storage.applications_for_job(job_id)]
        applications.sort(key=lambda a: a.submitted_at, reverse=True)
        return applications

    def list_for_applicant(self, applicant_id: UUID) -> list[Application]:
        applications = [
            Application(**a) for a in list(self.storage.applications.values())
            if a["applicant_id"] == applicant_id
        ]
        applications.sort(key=lambda a: a.submitted_at, reverse=True)
        return applications

    def get_balance(self, user_id: UUID) -> int:
        return self.balances.get_balance(user_id)

    def reconcile(self, job_id: Optional[UUID] = None) -> ReconcileReport:
        """Settle entries left RESERVED behind a terminal application and report drift."""
        report = ReconcileReport()
        if job_id is not None:
            job_ids = {job_id}
        else:
            job_ids = {e["job_id"] for e in list(self.storage.ledger_entries.values())}
            job_ids |= {a["job_id"] for a in list(self.storage.applications.values())}

        for current_job in sorted(job_ids, key=str):
            try:
                with self.job_locks.hold(current_job):
                    self._reconcile_job(current_job, report)
            except BusyError:
                report.busy.append(current_job)

        logger.info(
            "reconcile_finished",
            refunded=len(report.refunded),
            captured=len(report.captured),
            inconsistencies=len(report.inconsistencies),
            busy=len(report.busy),
        )
        return report

    def _reconcile_job(self, job_id: UUID, report: ReconcileReport) -> None:
        for entry in self.ledger.entries_for_job(job_id):
            application = self.storage.applications.get(entry.application_id)
            if application is None:
                # An entry without an application is a rolled-back submission; it must end refunded.
                if entry.state == EntryState.RESERVED:
                    if self._settle(entry.application_id, EntryState.REFUNDED):
                        report.refunded.append(entry.application_id)
                elif entry.state == EntryState.CAPTURED:
                    self._report_inconsistency(report, f"Ledger entry {entry.application_id} has no application")
                continue
            expected = self._expected_entry_state(application["status"])
            if entry.state == EntryState.RESERVED:
                if expected is None:
                    continue
                if self._settle(entry.application_id, expected):
                    target = report.captured if expected == EntryState.CAPTURED else report.refunded
                    target.append(entry.application_id)
            elif expected != entry.state:
                self._report_inconsistency(
                    report,
                    f"Application {entry.application_id} is {application['status'].value} "
                    f"but its ledger entry is {entry.state.value}",
                )

        for application in self.storage.applications_for_job(job_id):
            if application["id"] not in self.storage.ledger_entries:
                self._report_inconsistency(report, f"Application {application['id']} has no ledger entry")

    def _settle_job(self, job_id: UUID) -> None:
        for entry in self.ledger.open_entries(job_id):
            application = self.storage.applications.get(entry.application_id)
            if application is None:
                continue
            expected = self._expected_entry_state(application["status"])
            if expected is not None:
                self._settle(entry.application_id, expected)

    def _settle(self, application_id: UUID, state: EntryState) -> bool:
        try:
            if state == EntryState.CAPTURED:
                self.ledger.mark_captured(application_id)
            else:
                self.ledger.mark_refunded(application_id)
        except AlreadyTerminalError:
            logger.debug("entry_already_settled", application_id=str(application_id))
            return False
        except BusyError:
            logger.warning("settlement_deferred", application_id=str(application_id), state=state.value)
            return False
        except LedgerInconsistencyError as exc:
            logger.error("ledger_inconsistency", application_id=str(application_id), error=str(exc))
            return False
        return True

    def _replayed_submission(
        self,
        application_id: Optional[UUID],
        job_id: UUID,
        applicant_id: UUID,
    ) -> Optional[ApplicationResponse]:
        if application_id is None:
            return None
        existing = self.storage.applications.get(application_id)
        if existing is None:
            return None
        if existing["job_id"] != job_id or existing["applicant_id"] != applicant_id:
            raise AlreadyAppliedError(f"Application id {application_id} belongs to another submission")
        logger.info("submit_replayed", application_id=str(application_id))
        return ApplicationResponse(
            application=Application(**existing),
            ledger_entry=self.ledger.get_entry(application_id),
            message="Application already submitted (idempotent return)",
        )

    def _authorize_decision(self, caller_id: UUID, job_id: UUID) -> None:
        if not self.policy.can_decide(caller_id, job_id):
            raise NotAuthorizedError(f"User {caller_id} cannot decide on applications for job {job_id}")

    def _get(self, application_id: UUID) -> dict:
        application = self.storage.applications.get(application_id)
        if application is None:
            raise ApplicationNotFoundError(f"Application {application_id} not found")
        return application

    @staticmethod
    def _require_pending(application: dict) -> None:
        if application["status"] != ApplicationStatus.PENDING:
            raise ApplicationNotPendingError(
                f"Application {application['id']} is {application['status'].value}, not PENDING"
            )

    @staticmethod
    def _transition(application: dict, status: ApplicationStatus) -> None:
        application["status"] = status
        application["reviewed_at"] = datetime.now(timezone.utc)

    @staticmethod
    def _expected_entry_state(status: ApplicationStatus) -> Optional[EntryState]:
        if status == ApplicationStatus.ACCEPTED:
            return EntryState.CAPTURED
        if status in (ApplicationStatus.REJECTED, ApplicationStatus.WITHDRAWN):
            return EntryState.REFUNDED
        return None

    @staticmethod
    def _report_inconsistency(report: ReconcileReport, message: str) -> None:
        logger.error("ledger_inconsistency", detail=message)
        report.inconsistencies.append(message)
