# scheduler.py
"""
Runs every JobPlan of a workflow.

Plans are independent units dispatched onto a thread pool. Ordering
across plans is only constrained by job-level `needs`; fail-fast works
across the matrix siblings of one job:

- fail_fast=True: the first Failed sibling cancels the rest. Siblings not
  yet started are recorded Cancelled without being dispatched; running
  siblings see the cancellation token before their next step.
- fail_fast=False: every sibling runs to a terminal state.
"""
from __future__ import annotations

import os
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Deque, Dict, List, Optional, Sequence, Set

from .dag import build_dag
from .executor import CancellationToken, JobExecutor
from .matrix import check_unique_plan_ids
from .model import JobPlan, JobResult, JobStatus
from .ui.console import Console, get_console


def default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


class Scheduler:
    def __init__(
        self,
        executor: JobExecutor,
        *,
        max_workers: Optional[int] = None,
        console: Optional[Console] = None,
    ):
        self.executor = executor
        self.max_workers = max_workers or default_workers()
        self._console = console

    @property
    def console(self) -> Console:
        return self._console or get_console()

    def run(self, plans: Sequence[JobPlan]) -> Dict[str, JobResult]:
        """
        Execute `plans` and return plan_id -> JobResult for every plan.

        Never raises for job-level problems: an unexpected error inside a
        job is recorded as that job's Failed result.
        Plans sharing a plan_id are rejected with DefinitionError before
        anything is dispatched.
        """
        return _Run(self, plans).execute()


class _Run:
    """Mutable bookkeeping for one Scheduler.run call (driver thread only)."""

    def __init__(self, scheduler: Scheduler, plans: Sequence[JobPlan]):
        self.scheduler = scheduler
        self.console = scheduler.console
        check_unique_plan_ids(plans)

        self.order: List[str] = []
        self.pending: Dict[str, Deque[JobPlan]] = {}
        self.plan_ids: Dict[str, List[str]] = {}
        for plan in plans:
            if plan.job_id not in self.pending:
                self.order.append(plan.job_id)
                self.pending[plan.job_id] = deque()
                self.plan_ids[plan.job_id] = []
            self.pending[plan.job_id].append(plan)
            self.plan_ids[plan.job_id].append(plan.plan_id)

        needs = {job: self.pending[job][0].needs for job in self.order}
        self.adj, self.indeg = build_dag(needs)

        self.tokens: Dict[str, CancellationToken] = {job: CancellationToken() for job in self.order}
        self.running: Dict[str, int] = {job: 0 for job in self.order}
        self.remaining: Dict[str, int] = {job: len(self.pending[job]) for job in self.order}
        self.ready: List[str] = [job for job in self.order if self.indeg[job] == 0]
        self.blocked: Set[str] = set()
        self.finished: Set[str] = set()
        self.results: Dict[str, JobResult] = {}
        self.in_flight: Dict[Future, JobPlan] = {}

    # ------------------------------------------------------------------

    def execute(self) -> Dict[str, JobResult]:
        with ThreadPoolExecutor(max_workers=self.scheduler.max_workers) as pool:
            try:
                self._dispatch(pool)
                while self.in_flight:
                    done, _ = wait(list(self.in_flight), return_when=FIRST_COMPLETED)
                    for fut in done:
                        plan = self.in_flight.pop(fut)
                        self.running[plan.job_id] -= 1
                        self._record(plan, self._outcome(fut, plan))
                    self._dispatch(pool)
            except KeyboardInterrupt:
                for token in self.tokens.values():
                    token.cancel("interrupted")
                raise

        # plans that could never become ready
        for job in self.order:
            while self.pending[job]:
                plan = self.pending[job].popleft()
                self._record(
                    plan,
                    JobResult(plan.plan_id, JobStatus.SKIPPED, reason="dependencies never completed"),
                    announce=True,
                )

        return {pid: self.results[pid] for job in self.order for pid in self.plan_ids[job]}

    def _outcome(self, fut: Future, plan: JobPlan) -> JobResult:
        try:
            return fut.result()
        except Exception as e:
            self.console.print_exception(e)
            result = JobResult(plan.plan_id, JobStatus.FAILED, reason=f"internal error: {e}")
            self.console.print_job_finished(result)
            return result

    def _dispatch(self, pool: ThreadPoolExecutor) -> None:
        # recording a result can make other jobs ready, so repeat until stable
        progressed = True
        while progressed:
            progressed = False
            for job in list(self.ready):
                queue = self.pending[job]
                while queue and len(self.in_flight) < self.scheduler.max_workers:
                    limit = queue[0].max_parallel
                    if limit is not None and self.running[job] >= limit:
                        break
                    plan = queue.popleft()
                    progressed = True
                    token = self.tokens[job]
                    if token.cancelled:
                        self._record(plan, JobResult(plan.plan_id, JobStatus.CANCELLED, reason=token.reason), announce=True)
                        continue
                    fut = pool.submit(self.scheduler.executor.execute, plan, token)
                    self.in_flight[fut] = plan
                    self.running[job] += 1

    def _record(self, plan: JobPlan, result: JobResult, *, announce: bool = False) -> None:
        job = plan.job_id
        self.results[plan.plan_id] = result
        self.remaining[job] -= 1
        if announce:
            # never dispatched, so the executor did not report it
            self.console.print_job_finished(result)

        if result.status is JobStatus.FAILED and plan.fail_fast:
            token = self.tokens[job]
            token.cancel(f"fail-fast: {plan.plan_id} failed")
            while self.pending[job]:
                sibling = self.pending[job].popleft()
                self._record(
                    sibling,
                    JobResult(sibling.plan_id, JobStatus.CANCELLED, reason=token.reason),
                    announce=True,
                )

        if self.remaining[job] == 0:
            self._finish_job(job)

    def _finish_job(self, job: str) -> None:
        if job in self.finished:
            return
        self.finished.add(job)
        if job in self.ready:
            self.ready.remove(job)
        passed = all(self.results[pid].status is JobStatus.PASSED for pid in self.plan_ids[job])

        for child in (j for j in self.order if j in self.adj[job]):
            if child in self.blocked:
                continue
            if passed:
                self.indeg[child] -= 1
                if self.indeg[child] == 0:
                    self.ready.append(child)
                continue

            self.blocked.add(child)
            reason = f"needs '{job}' which did not pass"
            while self.pending[child]:
                plan = self.pending[child].popleft()
                self._record(plan, JobResult(plan.plan_id, JobStatus.SKIPPED, reason=reason), announce=True)
