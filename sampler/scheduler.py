"""Sampler - Chain Scheduler.

Runs ordered job chains for samples:
1. submit_chain persists the chain (status waiting) with one row per link
2. The oldest waiting chain of a sample is promoted to queued only when no
   other chain of that sample is queued/running (single conditional UPDATE)
3. Each link is dispatched to the execution backend; on Success the next
   link is dispatched, on Failure the chain halts and later links are skipped
4. When a chain terminates the next waiting chain of the same sample is promoted

Chains for different samples share nothing but the worker pool, so a failure
in one never affects another.

Dispatch backends:
- "threads": in-process ThreadPoolExecutor (bounded by WORKER_POOL_SIZE)
- "inline": run the link in the caller's thread (tests, CLI)
- callable(chain_id, position): hand off to an external queue (Huey)
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime, timedelta
from typing import Protocol

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.orm import aliased, sessionmaker

from sampler.chains import Chain, ChainHandle, Failure, Job, JobResult, Success
from sampler.config import CHAIN_LINK_TTL_SECONDS, MAX_ACTIVE_CHAINS, WORKER_POOL_SIZE
from sampler.errors import ErrorCode, ExternalToolError, PipelineError, QueueUnavailable
from sampler.models import (
    ACTIVE_CHAIN_STATUSES,
    ChainLinkRecord,
    ChainRecord,
    ChainStatus,
    LinkStatus,
    utc_now,
)

logger = logging.getLogger(__name__)

DISPATCH_INLINE = "inline"
DISPATCH_THREADS = "threads"

# Chains counted against MAX_ACTIVE_CHAINS
OPEN_CHAIN_STATUSES = (ChainStatus.WAITING, *ACTIVE_CHAIN_STATUSES)

JobHandler = Callable[[Job], JobResult]
Enqueue = Callable[[str, int], object]


class ChainListener(Protocol):
    """Receives link outcomes before the scheduler advances the chain."""

    def on_link_success(self, job: Job, result: Success) -> None: ...

    def on_link_failure(self, job: Job, result: Failure) -> None: ...


class ChainScheduler:
    """Durable, per-sample serialized executor of job chains."""

    def __init__(
        self,
        session_factory: sessionmaker,
        handlers: Mapping[str, JobHandler],
        listener: ChainListener | None = None,
        dispatch: str | Enqueue = DISPATCH_THREADS,
        workers: int = WORKER_POOL_SIZE,
        max_active_chains: int = MAX_ACTIVE_CHAINS,
        link_ttl_seconds: int = CHAIN_LINK_TTL_SECONDS,
    ):
        self._session_factory = session_factory
        self._handlers = dict(handlers)
        self._listener = listener
        self._max_active_chains = max_active_chains
        self._link_ttl = timedelta(seconds=link_ttl_seconds)

        self._accepting = True
        self._executor: ThreadPoolExecutor | None = None
        self._in_flight = 0
        self._idle = threading.Condition()

        if dispatch == DISPATCH_INLINE:
            self._enqueue: Enqueue = self.run_link
        elif dispatch == DISPATCH_THREADS:
            self._executor = ThreadPoolExecutor(
                max_workers=workers, thread_name_prefix="chain-worker"
            )
            self._enqueue = self._submit_to_pool
        elif callable(dispatch):
            self._enqueue = dispatch
        else:
            raise ValueError(f"unknown dispatch backend: {dispatch!r}")

    def register(self, kind: str, handler: JobHandler) -> None:
        self._handlers[kind] = handler

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit_chain(self, chain: Chain) -> ChainHandle:
        """Persist a chain and start it if its sample has no active chain.

        Returns:
            Handle with the chain status after submission (waiting, queued,
            or already further along when dispatch is inline).

        Raises:
            QueueUnavailable: Scheduler shut down, saturated, or the backend
                refused the first link. Nothing runs in that case.
        """
        if not self._accepting:
            raise QueueUnavailable("scheduler is shutting down")

        chain_id = uuid.uuid4().hex
        with self._session_factory() as session:
            open_chains = session.execute(
                select(func.count())
                .select_from(ChainRecord)
                .where(ChainRecord.status.in_(OPEN_CHAIN_STATUSES))
            ).scalar_one()
            if open_chains >= self._max_active_chains:
                raise QueueUnavailable(f"{open_chains} chains already pending")

            session.add(
                ChainRecord(
                    chain_id=chain_id,
                    sample_id=chain.sample_id,
                    status=ChainStatus.WAITING,
                    current_link=0,
                    link_count=len(chain.jobs),
                )
            )
            for position, job in enumerate(chain.jobs):
                session.add(
                    ChainLinkRecord(
                        chain_id=chain_id,
                        position=position,
                        kind=str(job.kind),
                        payload_json=job.payload_json(),
                        status=LinkStatus.PENDING,
                    )
                )
            session.commit()

        logger.info(
            "Submitted chain %s for sample %s: %s",
            chain_id,
            chain.sample_id,
            " -> ".join(chain.kinds),
        )

        promoted = self._promote_next(chain.sample_id)
        if promoted is not None:
            try:
                self._dispatch(promoted, 0)
            except QueueUnavailable as e:
                self._fail_undispatched(promoted, 0, e)
                if promoted == chain_id:
                    raise

        handle = self.get_chain(chain_id)
        if handle is None:
            raise RuntimeError(f"chain {chain_id} vanished after submission")
        return handle

    def _promote_next(self, sample_id: str) -> str | None:
        """Move the oldest waiting chain of a sample to queued.

        The NOT EXISTS guard and the status change are one UPDATE, so two
        concurrent promoters can never both claim the sample's slot.

        Returns:
            chain_id of the promoted chain, or None.
        """
        waiting = aliased(ChainRecord, name="waiting_chain")
        active = aliased(ChainRecord, name="active_chain")

        oldest_waiting = (
            select(waiting.chain_id)
            .where(waiting.sample_id == sample_id, waiting.status == ChainStatus.WAITING)
            .order_by(waiting.id)
            .limit(1)
            .scalar_subquery()
        )
        slot_taken = (
            select(active.id)
            .where(
                active.sample_id == sample_id,
                active.status.in_(ACTIVE_CHAIN_STATUSES),
            )
            .exists()
        )

        with self._session_factory() as session:
            result = session.execute(
                update(ChainRecord)
                .where(ChainRecord.chain_id == oldest_waiting, ~slot_taken)
                .values(status=ChainStatus.QUEUED, updated_at=utc_now())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                session.commit()
                return None
            chain_id = session.execute(
                select(ChainRecord.chain_id).where(
                    ChainRecord.sample_id == sample_id,
                    ChainRecord.status == ChainStatus.QUEUED,
                )
            ).scalar_one()
            session.commit()

        logger.debug("Promoted chain %s for sample %s", chain_id, sample_id)
        return chain_id

    def _promote_and_dispatch(self, sample_id: str) -> None:
        promoted = self._promote_next(sample_id)
        if promoted is None:
            return
        try:
            self._dispatch(promoted, 0)
        except QueueUnavailable as e:
            self._fail_undispatched(promoted, 0, e)

    # ------------------------------------------------------------------
    # Dispatch backends
    # ------------------------------------------------------------------

    def _dispatch(self, chain_id: str, position: int) -> None:
        logger.debug("Dispatching link %d of chain %s", position, chain_id)
        try:
            self._enqueue(chain_id, position)
        except QueueUnavailable:
            raise
        except Exception as e:
            raise QueueUnavailable(f"enqueue failed: {e}") from e

    def _submit_to_pool(self, chain_id: str, position: int) -> None:
        if self._executor is None:
            raise QueueUnavailable("no worker pool configured")
        with self._idle:
            self._in_flight += 1
        try:
            self._executor.submit(self._pool_worker, chain_id, position)
        except RuntimeError as e:
            self._worker_done()
            raise QueueUnavailable("worker pool is shut down") from e

    def _pool_worker(self, chain_id: str, position: int) -> None:
        try:
            self.run_link(chain_id, position)
        except Exception:
            logger.exception("Unhandled error running link %d of chain %s", position, chain_id)
        finally:
            self._worker_done()

    def _worker_done(self) -> None:
        with self._idle:
            self._in_flight -= 1
            if self._in_flight == 0:
                self._idle.notify_all()

    # ------------------------------------------------------------------
    # Link execution
    # ------------------------------------------------------------------

    def run_link(self, chain_id: str, position: int) -> JobResult:
        """Execute one link and advance (or halt) its chain.

        Safe to call more than once for the same link: deliveries for a
        terminal chain, a completed link, or a position other than the
        chain's current one are ignored.
        """
        job = self._claim_link(chain_id, position)
        if job is None:
            return Failure(ErrorCode.STALE_STATE, f"link {position} of chain {chain_id} not runnable")

        logger.info(
            "Running %s for sample %s (chain %s, link %d)",
            job.kind,
            job.sample_id,
            chain_id,
            position,
        )
        result = self._execute(job)
        return self._record_outcome(job, result)

    def _claim_link(self, chain_id: str, position: int) -> Job | None:
        with self._session_factory() as session:
            chain = session.execute(
                select(ChainRecord).where(ChainRecord.chain_id == chain_id)
            ).scalar_one_or_none()
            if chain is None:
                logger.error("Link delivered for unknown chain %s", chain_id)
                return None
            if chain.status not in ACTIVE_CHAIN_STATUSES:
                logger.info(
                    "Ignoring link %d of chain %s in status %s", position, chain_id, chain.status
                )
                return None
            if chain.current_link != position:
                logger.warning(
                    "Ignoring out-of-order link %d of chain %s (current %d)",
                    position,
                    chain_id,
                    chain.current_link,
                )
                return None

            link = session.execute(
                select(ChainLinkRecord).where(
                    ChainLinkRecord.chain_id == chain_id,
                    ChainLinkRecord.position == position,
                )
            ).scalar_one()
            if link.status not in (LinkStatus.PENDING, LinkStatus.RUNNING):
                logger.info("Ignoring duplicate delivery of link %d of chain %s", position, chain_id)
                return None
            if link.status == LinkStatus.RUNNING and not self._claim_expired(link.started_at):
                logger.info(
                    "Ignoring delivery of link %d of chain %s, attempt %d still running",
                    position,
                    chain_id,
                    link.attempt,
                )
                return None

            abandoned = chain.abandon_requested
            sample_id = chain.sample_id
            if not abandoned:
                now = utc_now()
                # Pending, or running under a claim older than the TTL
                claimable = or_(
                    ChainLinkRecord.status == LinkStatus.PENDING,
                    and_(
                        ChainLinkRecord.status == LinkStatus.RUNNING,
                        ChainLinkRecord.started_at < now - self._link_ttl,
                    ),
                )
                claimed = session.execute(
                    update(ChainLinkRecord)
                    .where(
                        ChainLinkRecord.id == link.id,
                        ChainLinkRecord.attempt == link.attempt,
                        claimable,
                    )
                    .values(
                        status=LinkStatus.RUNNING,
                        attempt=link.attempt + 1,
                        started_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if claimed.rowcount != 1:
                    session.rollback()
                    logger.info("Link %d of chain %s claimed concurrently", position, chain_id)
                    return None
                chain.status = ChainStatus.RUNNING
                chain.updated_at = now
                job = Job(
                    sample_id=sample_id,
                    kind=link.kind,
                    payload=json.loads(link.payload_json or "{}"),
                    chain_id=chain_id,
                    position=position,
                    attempt=link.attempt + 1,
                )
            session.commit()

        if abandoned:
            self._settle_abandoned(chain_id, position, sample_id)
            return None
        return job

    def _claim_expired(self, started_at: datetime | None) -> bool:
        if started_at is None:
            return True
        if started_at.tzinfo is None:
            started_at = started_at.replace(tzinfo=UTC)
        return started_at < utc_now() - self._link_ttl

    def _execute(self, job: Job) -> JobResult:
        """Run the handler for a job, converting every error into a Failure."""
        handler = self._handlers.get(job.kind)
        if handler is None:
            return Failure(ErrorCode.UNKNOWN_JOB_KIND, f"no handler for job kind {job.kind}")

        try:
            result = handler(job)
        except ExternalToolError as e:
            logger.error("%s failed for sample %s: %s", job.kind, job.sample_id, e.detail)
            return Failure(e.error_code, e.detail)
        except PipelineError as e:
            logger.error("%s failed for sample %s: %s", job.kind, job.sample_id, e.message)
            return Failure(e.error_code, e.message)
        except Exception as e:
            logger.exception("Unexpected error in %s for sample %s", job.kind, job.sample_id)
            return Failure(ErrorCode.WORKER_ERROR, f"{type(e).__name__}: {e}")

        if not isinstance(result, (Success, Failure)):
            return Failure(
                ErrorCode.WORKER_ERROR,
                f"handler for {job.kind} returned {type(result).__name__}",
            )
        return result

    def _record_outcome(self, job: Job, result: JobResult) -> JobResult:
        chain_id = job.chain_id
        position = job.position
        if chain_id is None or position is None:
            raise RuntimeError(f"job {job.kind} for sample {job.sample_id} is not bound to a chain")

        if not self._holds_claim(job):
            logger.warning(
                "Discarding result of superseded attempt %d of link %d of chain %s",
                job.attempt,
                position,
                chain_id,
            )
            return result
        if self._is_abandon_requested(chain_id):
            self._settle_abandoned(chain_id, position, job.sample_id)
            return result

        # Listener sees the outcome before the next link can run
        if isinstance(result, Success) and self._listener is not None:
            try:
                self._listener.on_link_success(job, result)
            except Exception as e:
                logger.exception("Recording result of %s for sample %s failed", job.kind, job.sample_id)
                result = Failure(ErrorCode.WORKER_ERROR, f"recording result failed: {e}")
        if isinstance(result, Failure):
            self._notify_failure(job, result)

        next_position: int | None = None
        now = utc_now()
        with self._session_factory() as session:
            # Conditional on the claim; also holds the write lock until commit
            held = session.execute(
                update(ChainLinkRecord)
                .where(
                    ChainLinkRecord.chain_id == chain_id,
                    ChainLinkRecord.position == position,
                    ChainLinkRecord.status == LinkStatus.RUNNING,
                    ChainLinkRecord.attempt == job.attempt,
                )
                .values(finished_at=now)
                .execution_options(synchronize_session=False)
            )
            if held.rowcount != 1:
                session.rollback()
                logger.warning(
                    "Link %d of chain %s was reclaimed while attempt %d ran",
                    position,
                    chain_id,
                    job.attempt,
                )
                return result
            chain = session.execute(
                select(ChainRecord).where(ChainRecord.chain_id == chain_id)
            ).scalar_one()
            link = session.execute(
                select(ChainLinkRecord).where(
                    ChainLinkRecord.chain_id == chain_id,
                    ChainLinkRecord.position == position,
                )
            ).scalar_one()
            link.finished_at = now
            chain.updated_at = now

            if isinstance(result, Success):
                link.status = LinkStatus.COMPLETED
                link.artifacts_json = json.dumps(result.artifacts, sort_keys=True)
                if position + 1 < chain.link_count:
                    next_position = position + 1
                    chain.current_link = next_position
                else:
                    chain.status = ChainStatus.COMPLETED
                    chain.finished_at = now
            else:
                link.status = LinkStatus.FAILED
                link.error_code = result.error_code
                link.error_message = result.detail
                self._halt_chain(session, chain, result)
            session.commit()

        if next_position is not None:
            try:
                self._dispatch(chain_id, next_position)
            except QueueUnavailable as e:
                self._fail_undispatched(chain_id, next_position, e)
                self._promote_and_dispatch(job.sample_id)
            return result

        if isinstance(result, Success):
            logger.info("Chain %s for sample %s completed", chain_id, job.sample_id)
        else:
            logger.warning(
                "Chain %s for sample %s halted at %s: %s",
                chain_id,
                job.sample_id,
                job.kind,
                result.error_code,
            )
        self._promote_and_dispatch(job.sample_id)
        return result

    def _notify_failure(self, job: Job, result: Failure) -> None:
        if self._listener is None:
            return
        try:
            self._listener.on_link_failure(job, result)
        except Exception:
            logger.exception("Failure listener raised for sample %s", job.sample_id)

    def _halt_chain(self, session, chain: ChainRecord, failure: Failure) -> None:
        """Mark a chain failed and skip every link after the current one."""
        chain.status = ChainStatus.FAILED
        chain.finished_at = utc_now()
        chain.error_code = failure.error_code
        chain.error_message = failure.detail
        session.execute(
            update(ChainLinkRecord)
            .where(
                ChainLinkRecord.chain_id == chain.chain_id,
                ChainLinkRecord.position > chain.current_link,
                ChainLinkRecord.status == LinkStatus.PENDING,
            )
            .values(status=LinkStatus.SKIPPED)
            .execution_options(synchronize_session=False)
        )

    def _fail_undispatched(self, chain_id: str, position: int, error: QueueUnavailable) -> None:
        """Terminate a chain whose next link the backend refused."""
        failure = Failure(ErrorCode.QUEUE_UNAVAILABLE, error.message)
        with self._session_factory() as session:
            chain = session.execute(
                select(ChainRecord).where(ChainRecord.chain_id == chain_id)
            ).scalar_one()
            link = session.execute(
                select(ChainLinkRecord).where(
                    ChainLinkRecord.chain_id == chain_id,
                    ChainLinkRecord.position == position,
                )
            ).scalar_one()
            link.status = LinkStatus.FAILED
            link.error_code = failure.error_code
            link.error_message = failure.detail
            link.finished_at = utc_now()
            self._halt_chain(session, chain, failure)
            job = Job(
                sample_id=chain.sample_id,
                kind=link.kind,
                payload=json.loads(link.payload_json or "{}"),
                chain_id=chain_id,
                position=position,
            )
            session.commit()

        logger.error("Chain %s could not dispatch link %d: %s", chain_id, position, error.message)
        self._notify_failure(job, failure)

    # ------------------------------------------------------------------
    # Abandonment and recovery
    # ------------------------------------------------------------------

    def abandon_chain(self, chain_id: str) -> bool:
        """Stop a chain. An in-flight link finishes but its result is discarded.

        Returns:
            False if the chain is unknown or already terminal.
        """
        with self._session_factory() as session:
            chain = session.execute(
                select(ChainRecord).where(ChainRecord.chain_id == chain_id)
            ).scalar_one_or_none()
            if chain is None or chain.status not in OPEN_CHAIN_STATUSES:
                return False

            if chain.status == ChainStatus.WAITING:
                # Never held the sample's slot; nothing to release
                chain.status = ChainStatus.ABANDONED
                chain.finished_at = utc_now()
                session.execute(
                    update(ChainLinkRecord)
                    .where(ChainLinkRecord.chain_id == chain_id)
                    .values(status=LinkStatus.SKIPPED)
                    .execution_options(synchronize_session=False)
                )
            else:
                chain.abandon_requested = True
            session.commit()

        logger.warning("Chain %s abandoned", chain_id)
        return True

    def _holds_claim(self, job: Job) -> bool:
        with self._session_factory() as session:
            attempt = session.execute(
                select(ChainLinkRecord.attempt).where(
                    ChainLinkRecord.chain_id == job.chain_id,
                    ChainLinkRecord.position == job.position,
                    ChainLinkRecord.status == LinkStatus.RUNNING,
                )
            ).scalar_one_or_none()
        return attempt == job.attempt

    def _is_abandon_requested(self, chain_id: str) -> bool:
        with self._session_factory() as session:
            return bool(
                session.execute(
                    select(ChainRecord.abandon_requested).where(ChainRecord.chain_id == chain_id)
                ).scalar_one()
            )

    def _settle_abandoned(self, chain_id: str, position: int, sample_id: str) -> None:
        """Discard the returning link of an abandoned chain and free the slot."""
        now = utc_now()
        with self._session_factory() as session:
            session.execute(
                update(ChainLinkRecord)
                .where(
                    ChainLinkRecord.chain_id == chain_id,
                    ChainLinkRecord.position == position,
                )
                .values(status=LinkStatus.DISCARDED, finished_at=now)
                .execution_options(synchronize_session=False)
            )
            session.execute(
                update(ChainLinkRecord)
                .where(
                    ChainLinkRecord.chain_id == chain_id,
                    ChainLinkRecord.position > position,
                    ChainLinkRecord.status == LinkStatus.PENDING,
                )
                .values(status=LinkStatus.SKIPPED)
                .execution_options(synchronize_session=False)
            )
            session.execute(
                update(ChainRecord)
                .where(ChainRecord.chain_id == chain_id)
                .values(status=ChainStatus.ABANDONED, finished_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            session.commit()

        logger.info("Discarded link %d of abandoned chain %s", position, chain_id)
        self._promote_and_dispatch(sample_id)

    def reclaim_stale_links(self, now: datetime | None = None) -> int:
        """Re-dispatch work interrupted by a crash or lost by the backend.

        - Active chains untouched for longer than the link TTL get their
          current link dispatched again (the claim ignores it while an unexpired
          attempt still holds the link)
        - Samples with waiting chains but no active chain get one promoted

        Returns:
            Number of dispatches issued.
        """
        cutoff = (now or utc_now()) - self._link_ttl
        with self._session_factory() as session:
            stale = session.execute(
                select(ChainRecord.chain_id, ChainRecord.current_link).where(
                    ChainRecord.status.in_(ACTIVE_CHAIN_STATUSES),
                    ChainRecord.updated_at < cutoff,
                )
            ).all()
            stranded = session.execute(
                select(ChainRecord.sample_id)
                .where(ChainRecord.status == ChainStatus.WAITING)
                .distinct()
            ).scalars().all()

        dispatched = 0
        for chain_id, position in stale:
            logger.warning("Reclaiming link %d of stale chain %s", position, chain_id)
            with self._session_factory() as session:
                session.execute(
                    update(ChainRecord)
                    .where(ChainRecord.chain_id == chain_id)
                    .values(updated_at=utc_now())
                    .execution_options(synchronize_session=False)
                )
                session.commit()
            try:
                self._dispatch(chain_id, position)
            except QueueUnavailable as e:
                logger.error("Reclaim stopped: %s", e.message)
                return dispatched
            dispatched += 1

        for sample_id in stranded:
            promoted = self._promote_next(sample_id)
            if promoted is None:
                continue
            logger.warning("Promoting stranded chain %s for sample %s", promoted, sample_id)
            try:
                self._dispatch(promoted, 0)
            except QueueUnavailable as e:
                self._fail_undispatched(promoted, 0, e)
                return dispatched
            dispatched += 1

        return dispatched

    # ------------------------------------------------------------------
    # Inspection and lifecycle
    # ------------------------------------------------------------------

    def get_chain(self, chain_id: str) -> ChainHandle | None:
        with self._session_factory() as session:
            row = session.execute(
                select(ChainRecord.chain_id, ChainRecord.sample_id, ChainRecord.status).where(
                    ChainRecord.chain_id == chain_id
                )
            ).one_or_none()
        if row is None:
            return None
        return ChainHandle(chain_id=row.chain_id, sample_id=row.sample_id, status=row.status)

    def get_links(self, chain_id: str) -> list[ChainLinkRecord]:
        """Detached link rows of a chain, in order."""
        with self._session_factory() as session:
            return list(
                session.execute(
                    select(ChainLinkRecord)
                    .where(ChainLinkRecord.chain_id == chain_id)
                    .order_by(ChainLinkRecord.position)
                ).scalars()
            )

    def chains_for_sample(self, sample_id: str) -> list[ChainHandle]:
        with self._session_factory() as session:
            rows = session.execute(
                select(ChainRecord.chain_id, ChainRecord.sample_id, ChainRecord.status)
                .where(ChainRecord.sample_id == sample_id)
                .order_by(ChainRecord.id)
            ).all()
        return [ChainHandle(chain_id=r.chain_id, sample_id=r.sample_id, status=r.status) for r in rows]

    def join(self, timeout: float | None = None) -> bool:
        """Wait until no pool-dispatched link is in flight.

        Returns:
            False if the timeout expired first.
        """
        with self._idle:
            return self._idle.wait_for(lambda: self._in_flight == 0, timeout)

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting chains. Chains already running drain when wait=True."""
        self._accepting = False
        if self._executor is None:
            return
        if wait:
            self.join()
        self._executor.shutdown(wait=wait)
        logger.info("Chain scheduler shut down")
