# aggregate.py
from __future__ import annotations

from typing import Iterable, Mapping, Optional

from .model import JobResult, JobStatus, PipelineResult, PipelineStatus


def aggregate(
    results: Mapping[str, JobResult],
    expected: Optional[Iterable[str]] = None,
) -> PipelineResult:
    """
    Fold per-job results into one pipeline result.

    Failed iff any job Failed, or any expected plan has no result at all.
    Cancelled and Skipped jobs are reported but do not fail the pipeline
    on their own. The outcome does not depend on completion order: jobs
    are keyed by plan id and ordered by `expected` (declared order) when
    given, else sorted.
    """
    if expected is not None:
        expected = list(expected)
        missing = tuple(pid for pid in expected if pid not in results)
        order = [pid for pid in expected if pid in results]
        order += sorted(pid for pid in results if pid not in set(expected))
    else:
        missing = ()
        order = sorted(results)

    jobs = {pid: results[pid] for pid in order}
    failed = missing or any(r.status is JobStatus.FAILED for r in jobs.values())
    return PipelineResult(
        jobs=jobs,
        status=PipelineStatus.FAILED if failed else PipelineStatus.PASSED,
        missing=missing,
    )
