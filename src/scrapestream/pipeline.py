"""
Pipeline run state machine.

A ``PipelineRun`` drives one ``SearchQuery`` through the search API, scraper
and parser stages, repeating scrape/parse rounds until the link target is met
or the round cap is hit. Control requests (pause, resume, cancel, skip) change
the state immediately; the stage loop observes them at checkpoints between
attempts, never in the middle of a network call.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from typing import Any, Callable, Deque, Dict, FrozenSet, Iterable, List, Optional, Set

from .aggregator import ResultAggregator
from .config import AppSettings
from .errors import (
    BlockedDomainFailure,
    FailureKind,
    GoalUnreachable,
    InvalidControlRequest,
    InvalidTransition,
    NoProxyAvailable,
)
from .models import (
    PipelineStage,
    PipelineState,
    ProxyRecord,
    RunResult,
    RunStats,
    SearchQuery,
    StageEvent,
    utcnow,
)
from .proxy_pool import ProxyPool
from .retry import GiveUp, RetryPolicy
from .stages import StageExecutor, StageExecutors, StageRunner

logger = logging.getLogger(__name__)

Stage = PipelineStage
State = PipelineState

STAGE_TRANSITIONS: Dict[PipelineStage, FrozenSet[PipelineStage]] = {
    Stage.STARTED: frozenset({Stage.API_CALLER_STARTED}),
    Stage.API_CALLER_STARTED: frozenset({Stage.API_CALLER_COMPLETE}),
    Stage.API_CALLER_COMPLETE: frozenset({Stage.SCRAPER_STARTED}),
    Stage.SCRAPER_STARTED: frozenset({Stage.SCRAPER_COMPLETE}),
    Stage.SCRAPER_COMPLETE: frozenset({Stage.PARSER_STARTED}),
    Stage.PARSER_STARTED: frozenset({Stage.PARSER_COMPLETE}),
    # Another scrape/parse round
    Stage.PARSER_COMPLETE: frozenset({Stage.SCRAPER_STARTED}),
}

STATE_TRANSITIONS: Dict[PipelineState, FrozenSet[PipelineState]] = {
    State.PENDING: frozenset({State.RUNNING, State.CANCELLED}),
    State.RUNNING: frozenset(
        {State.PAUSED, State.SKIPPING, State.CANCELLED, State.COMPLETED, State.FAILED}
    ),
    State.PAUSED: frozenset({State.RUNNING, State.CANCELLED}),
    State.SKIPPING: frozenset({State.RUNNING, State.COMPLETED, State.FAILED, State.CANCELLED}),
    State.CANCELLED: frozenset(),
    State.COMPLETED: frozenset(),
    State.FAILED: frozenset(),
}

EventSink = Callable[[StageEvent], None]


def check_combination(stage: PipelineStage, state: PipelineState) -> bool:
    """Whether a run may sit at ``stage`` while in ``state``."""
    if state is State.PENDING:
        return stage is Stage.STARTED
    if state is State.COMPLETED:
        return stage is Stage.PARSER_COMPLETE
    return True


class RunEventLog:
    """In-memory event sink; the default for every run."""

    def __init__(self) -> None:
        self._events: List[StageEvent] = []

    def __call__(self, event: StageEvent) -> None:
        self._events.append(event)

    def __len__(self) -> int:
        return len(self._events)

    @property
    def events(self) -> List[StageEvent]:
        return list(self._events)

    def for_run(self, run_id: str) -> List[StageEvent]:
        return [event for event in self._events if event.run_id == run_id]

    def stages(self, run_id: Optional[str] = None) -> List[PipelineStage]:
        """Stage sequence with consecutive repeats collapsed."""
        sequence: List[PipelineStage] = []
        events = self._events if run_id is None else self.for_run(run_id)
        for event in events:
            if not sequence or sequence[-1] is not event.stage:
                sequence.append(event.stage)
        return sequence

    def states(self, run_id: Optional[str] = None) -> List[PipelineState]:
        sequence: List[PipelineState] = []
        events = self._events if run_id is None else self.for_run(run_id)
        for event in events:
            if not sequence or sequence[-1] is not event.state:
                sequence.append(event.state)
        return sequence


class _Stopped(Exception):
    """Internal: the run was cancelled or failed inside a stage."""


class PipelineRun:
    """One execution of a search query through the pipeline."""

    def __init__(
        self,
        query: SearchQuery,
        pool: ProxyPool,
        executors: StageExecutors,
        settings: Optional[AppSettings] = None,
        retry_policy: Optional[RetryPolicy] = None,
        sinks: Iterable[EventSink] = (),
        run_id: Optional[str] = None,
    ):
        self.run_id = run_id or str(uuid.uuid4())
        self.query = query
        self.pool = pool
        self.executors = executors
        self.settings = settings or AppSettings()
        self.retry_policy = retry_policy or RetryPolicy.from_settings(self.settings)
        self.runner = StageRunner(pool)
        self.aggregator = ResultAggregator(query)

        self.stage = Stage.STARTED
        self.state = State.PENDING
        self.attempt_count = 0
        self.stage_entered_at = utcnow()
        self.cause: Optional[str] = None
        self.stats = RunStats()

        self.event_log = RunEventLog()
        self._sinks: List[EventSink] = [self.event_log, *sinks]
        self._frontier: Deque[str] = deque()
        self._visited: Set[str] = set()
        # Set whenever the run is not paused
        self._resume_event = asyncio.Event()
        self._resume_event.set()
        # Set by any control request; pre-empts backoff sleeps
        self._wakeup = asyncio.Event()

    # ==================== Control ====================

    def pause(self) -> bool:
        if self.state is State.PAUSED:
            return False
        if self.state is not State.RUNNING:
            raise InvalidControlRequest(f"Cannot pause run {self.run_id} in state {self.state.value}")
        self._resume_event.clear()
        self._set_state(State.PAUSED)
        self._wakeup.set()
        return True

    def resume(self) -> bool:
        if self.state in (State.RUNNING, State.SKIPPING):
            return False
        if self.state is not State.PAUSED:
            raise InvalidControlRequest(f"Cannot resume run {self.run_id} in state {self.state.value}")
        self._set_state(State.RUNNING)
        self._resume_event.set()
        self._wakeup.set()
        return True

    def cancel(self) -> bool:
        if self.state is State.CANCELLED:
            return False
        if self.state in (State.COMPLETED, State.FAILED):
            raise InvalidControlRequest(f"Cannot cancel finished run {self.run_id}")
        self._set_state(State.CANCELLED, cause="CANCELLED")
        self._resume_event.set()
        self._wakeup.set()
        return True

    def skip(self) -> bool:
        if self.state is State.SKIPPING:
            return False
        if self.state is not State.RUNNING:
            raise InvalidControlRequest(f"Cannot skip run {self.run_id} in state {self.state.value}")
        self._set_state(State.SKIPPING)
        self._wakeup.set()
        return True

    # ==================== Transitions ====================

    def _set_state(self, state: PipelineState, cause: Optional[str] = None) -> bool:
        if state is self.state:
            return False
        if state not in STATE_TRANSITIONS[self.state]:
            raise InvalidTransition(f"{self.state.value} -> {state.value} not allowed")
        if not check_combination(self.stage, state):
            raise InvalidTransition(f"State {state.value} invalid at stage {self.stage.value}")
        logger.info("Run %s: state %s -> %s", self.run_id, self.state.value, state.value)
        self.state = state
        if cause is not None:
            self.cause = cause
        self._emit(cause)
        return True

    def _set_stage(self, stage: PipelineStage) -> None:
        if stage not in STAGE_TRANSITIONS[self.stage]:
            raise InvalidTransition(f"Stage {self.stage.value} -> {stage.value} not allowed")
        if not check_combination(stage, self.state):
            raise InvalidTransition(f"Stage {stage.value} invalid in state {self.state.value}")
        logger.debug("Run %s: stage %s -> %s", self.run_id, self.stage.value, stage.value)
        self.stage = stage
        self.attempt_count = 0
        self.stage_entered_at = utcnow()
        self._emit()

    def _emit(self, cause: Optional[str] = None) -> None:
        event = StageEvent(
            run_id=self.run_id,
            stage=self.stage,
            state=self.state,
            attempt_count=self.attempt_count,
            cause=cause,
        )
        for sink in self._sinks:
            try:
                sink(event)
            except Exception:
                logger.exception("Event sink %r failed for run %s", sink, self.run_id)

    def _fail(self, cause: str, detail: str) -> None:
        logger.error("Run %s failed at %s: %s (%s)", self.run_id, self.stage.value, cause, detail)
        self._set_state(State.FAILED, cause=cause)

    # ==================== Execution ====================

    async def run(self) -> RunResult:
        """Drive the run to a terminal state and return its result."""
        if self.state is State.CANCELLED:
            return self.result()
        if self.state is not State.PENDING:
            raise InvalidTransition(f"Run {self.run_id} already started")

        self.stats.start_time = utcnow()
        self._set_state(State.RUNNING)
        try:
            await self._drive()
        except _Stopped:
            pass
        except GoalUnreachable as exc:
            self._fail("GOAL_UNREACHABLE", str(exc))
        except NoProxyAvailable as exc:
            self._fail("NO_PROXY_AVAILABLE", str(exc))
        except asyncio.CancelledError:
            if not self.state.is_finished():
                self._set_state(State.CANCELLED, cause="CANCELLED")
            raise
        except Exception as exc:
            logger.exception("Unexpected error in run %s at stage %s", self.run_id, self.stage.value)
            self._fail(FailureKind.UNEXPECTED.value, f"{type(exc).__name__}: {exc}")
        finally:
            self.stats.end_time = utcnow()
        return self.result()

    async def _drive(self) -> None:
        links = await self._run_stage(
            self.executors.api_caller, self.query, Stage.API_CALLER_STARTED, Stage.API_CALLER_COMPLETE
        )
        self._extend_frontier(link.link for link in links)

        while True:
            if self.stats.rounds >= self.settings.MAX_ROUNDS:
                raise GoalUnreachable(
                    f"Round cap {self.settings.MAX_ROUNDS} reached with "
                    f"{self.query.link_count}/{self.query.target_link_count} links",
                    collected=self.query.link_count,
                    target=self.query.target_link_count,
                )
            if not self._frontier:
                raise GoalUnreachable(
                    f"No URLs left to scrape with "
                    f"{self.query.link_count}/{self.query.target_link_count} links",
                    collected=self.query.link_count,
                    target=self.query.target_link_count,
                )

            self.stats.rounds += 1
            pages = await self._run_stage(
                self.executors.scraper,
                self._next_batch(),
                Stage.SCRAPER_STARTED,
                Stage.SCRAPER_COMPLETE,
            )
            self.stats.pages_scraped += len(pages)

            parsed = await self._run_stage(
                self.executors.parser, pages, Stage.PARSER_STARTED, Stage.PARSER_COMPLETE
            )
            new_count, goal_reached = self.aggregator.fold(self.query.link_count, parsed)
            self.aggregator.apply(new_count)
            self.stats.links_created = new_count
            self._extend_frontier(parsed)

            if goal_reached:
                self._set_state(State.COMPLETED)
                logger.info(
                    "Run %s completed with %d/%d links",
                    self.run_id,
                    new_count,
                    self.query.target_link_count,
                )
                return
            logger.info(
                "Run %s round %d: %d/%d links, continuing",
                self.run_id,
                self.stats.rounds,
                new_count,
                self.query.target_link_count,
            )

    async def _run_stage(
        self,
        executor: StageExecutor,
        stage_input: Any,
        started: PipelineStage,
        complete: PipelineStage,
    ) -> Any:
        if self.state is State.SKIPPING:
            self._set_state(State.RUNNING)
        self._set_stage(started)
        tried: Set[str] = set()
        deadline = executor.deadline(self.settings)

        while True:
            if not await self._checkpoint():
                if self.state is State.SKIPPING:
                    return self._complete_stage(complete, [])
                raise _Stopped()

            try:
                executor.precheck(stage_input)
            except BlockedDomainFailure as exc:
                logger.info("Run %s: %s", self.run_id, exc.message)
                stage_input = self._drop_blocked(stage_input, exc.urls)
                if stage_input:
                    continue
                logger.info("Run %s: every candidate URL was blocked", self.run_id)
                return self._complete_stage(complete, [])

            proxy: Optional[ProxyRecord] = None
            if executor.needs_proxy:
                proxy = self.pool.select_proxy(executor.protocol_preference, exclude=tried)
                tried.add(proxy.id)

            self.attempt_count += 1
            report = await self.runner.attempt(
                executor, stage_input, proxy, deadline, run_id=self.run_id
            )

            if self.state is State.PAUSED:
                await self._checkpoint()
            if self.state.is_finished():
                raise _Stopped()
            if report.ok:
                return self._complete_stage(complete, report.output)
            if self.state is State.SKIPPING:
                return self._complete_stage(complete, [])

            failure = report.failure
            assert failure is not None
            if isinstance(failure, BlockedDomainFailure):
                # Blocked targets cost neither an attempt nor a health sample
                self.attempt_count -= 1
                stage_input = self._drop_blocked(stage_input, failure.urls)
                if stage_input:
                    continue
                logger.info("Run %s: every candidate URL was blocked", self.run_id)
                return self._complete_stage(complete, [])

            self.stats.errors_count += 1
            decision = self.retry_policy.decide(self.attempt_count, failure.kind)
            if isinstance(decision, GiveUp):
                self._fail(failure.kind.value, f"{decision.reason}: {failure.message}")
                raise _Stopped()
            logger.info(
                "Run %s: retrying %s in %d ms (attempt %d/%d)",
                self.run_id,
                started.value,
                decision.backoff_ms,
                self.attempt_count,
                self.retry_policy.max_attempts,
            )
            await self._backoff(decision.backoff_ms)

    def _complete_stage(self, complete: PipelineStage, output: Any) -> Any:
        self._set_stage(complete)
        return output

    async def _checkpoint(self) -> bool:
        """Block while paused; True when the next attempt may start."""
        while self.state is State.PAUSED:
            await self._resume_event.wait()
        return self.state is State.RUNNING

    async def _backoff(self, delay_ms: int) -> None:
        if delay_ms <= 0 or self.state is not State.RUNNING:
            return
        self._wakeup.clear()
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=delay_ms / 1000)
        except asyncio.TimeoutError:
            pass

    # ==================== Frontier ====================

    def _extend_frontier(self, urls: Iterable[str]) -> None:
        for url in urls:
            if url not in self._visited and url not in self._frontier:
                self._frontier.append(url)

    def _next_batch(self) -> List[str]:
        batch: List[str] = []
        while self._frontier and len(batch) < self.settings.SCRAPE_BATCH_SIZE:
            url = self._frontier.popleft()
            self._visited.add(url)
            batch.append(url)
        return batch

    def _drop_blocked(self, batch: Any, blocked: List[str]) -> List[str]:
        self.stats.blocked_urls += len(blocked)
        rejected = set(blocked)
        remaining = [url for url in batch if url not in rejected]
        return remaining or self._next_batch()

    # ==================== Results ====================

    def status(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "query_id": self.query.id,
            "stage": self.stage.value,
            "state": self.state.value,
            "attempt_count": self.attempt_count,
            "link_count": self.query.link_count,
            "target_link_count": self.query.target_link_count,
            "cause": self.cause,
            "stage_entered_at": self.stage_entered_at.isoformat(),
        }

    def result(self) -> RunResult:
        return RunResult(
            run_id=self.run_id,
            collected_link_count=self.query.link_count,
            description=self.aggregator.describe(),
            final_state=self.state,
            cause=self.cause,
            stats=self.stats,
            links=self.aggregator.links,
        )
