"""Runs many pipeline runs concurrently over one shared proxy pool."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from .config import AppSettings
from .errors import UnknownRun
from .models import RunResult, SearchQuery
from .pipeline import EventSink, PipelineRun
from .proxy_pool import ProxyPool
from .retry import RetryPolicy
from .stages import StageExecutors

logger = logging.getLogger(__name__)

ExecutorSource = Union[StageExecutors, Callable[[], StageExecutors]]


class Orchestrator:
    """Owns active runs keyed by run id and archives them once finished.

    Every run is one asyncio task; the only shared state between runs is the
    proxy pool.
    """

    def __init__(
        self,
        pool: ProxyPool,
        executors: ExecutorSource,
        settings: Optional[AppSettings] = None,
        retry_policy_factory: Optional[Callable[[], RetryPolicy]] = None,
        sinks: Iterable[EventSink] = (),
    ):
        self.pool = pool
        self.settings = settings or AppSettings()
        self._executors = executors
        self._retry_policy_factory = retry_policy_factory
        self._sinks = list(sinks)
        self._runs: Dict[str, PipelineRun] = {}
        self._tasks: Dict[str, "asyncio.Task[RunResult]"] = {}
        self._archive: Dict[str, RunResult] = {}

    def _build_executors(self) -> StageExecutors:
        if isinstance(self._executors, StageExecutors):
            return self._executors
        return self._executors()

    def create_run(self, query: SearchQuery) -> PipelineRun:
        retry_policy = self._retry_policy_factory() if self._retry_policy_factory else None
        return PipelineRun(
            query,
            self.pool,
            self._build_executors(),
            settings=self.settings,
            retry_policy=retry_policy,
            sinks=self._sinks,
        )

    def start(self, query: SearchQuery) -> str:
        """Schedule a run for ``query`` on the running loop and return its id."""
        run = self.create_run(query)
        self._runs[run.run_id] = run
        task = asyncio.get_running_loop().create_task(run.run(), name=f"run-{run.run_id}")
        task.add_done_callback(lambda _task, run_id=run.run_id: self._archive_run(run_id))
        self._tasks[run.run_id] = task
        logger.info("Started run %s for query '%s'", run.run_id, query.sentence)
        return run.run_id

    def _archive_run(self, run_id: str) -> None:
        run = self._runs.pop(run_id, None)
        self._tasks.pop(run_id, None)
        if run is None:
            return
        result = run.result()
        self._archive[run_id] = result
        logger.info(
            "Archived run %s: %s (%d links)",
            run_id,
            result.final_state.value,
            result.collected_link_count,
        )

    def _get(self, run_id: str) -> PipelineRun:
        run = self._runs.get(run_id)
        if run is None:
            raise UnknownRun(run_id)
        return run

    # ==================== Control ====================

    def pause(self, run_id: str) -> bool:
        return self._get(run_id).pause()

    def resume(self, run_id: str) -> bool:
        return self._get(run_id).resume()

    def cancel(self, run_id: str) -> bool:
        return self._get(run_id).cancel()

    def skip(self, run_id: str) -> bool:
        return self._get(run_id).skip()

    # ==================== Queries ====================

    def status(self, run_id: str) -> Dict[str, Any]:
        run = self._runs.get(run_id)
        if run is not None:
            return run.status()
        if run_id in self._archive:
            result = self._archive[run_id]
            return {
                "run_id": run_id,
                "state": result.final_state.value,
                "link_count": result.collected_link_count,
                "cause": result.cause,
            }
        raise UnknownRun(run_id)

    def result(self, run_id: str) -> Optional[RunResult]:
        """Result of a finished run, or None while it is still active."""
        if run_id in self._archive:
            return self._archive[run_id]
        if run_id in self._runs:
            return None
        raise UnknownRun(run_id)

    def active_runs(self) -> List[str]:
        return list(self._runs)

    def proxy_health(self) -> List[Dict[str, Any]]:
        return self.pool.snapshot()

    async def wait(self, run_id: str) -> RunResult:
        task = self._tasks.get(run_id)
        if task is not None:
            return await task
        result = self.result(run_id)
        assert result is not None
        return result

    async def wait_all(self) -> List[RunResult]:
        return list(await asyncio.gather(*(self.wait(run_id) for run_id in list(self._tasks))))

    async def shutdown(self) -> None:
        """Cancel every active run and wait for the tasks to settle."""
        for run in list(self._runs.values()):
            if not run.state.is_finished():
                run.cancel()
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
