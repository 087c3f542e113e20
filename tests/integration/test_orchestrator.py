import asyncio

import pytest

from scrapestream.errors import NetworkFailure, UnknownRun
from scrapestream.models import PipelineState, SearchQuery
from scrapestream.orchestrator import Orchestrator


async def _until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


@pytest.fixture
def built(executor_factory, link_factory):
    """Executor factory that remembers each run's executors."""
    created = []

    def factory():
        executors = executor_factory(parser=[link_factory(4, prefix="https://found.test/")])
        created.append(executors)
        return executors

    factory.created = created
    return factory


async def test_concurrent_runs_complete_and_archive(pool, settings, built):
    orchestrator = Orchestrator(pool, built, settings=settings)
    ids = [
        orchestrator.start(SearchQuery(sentence=f"query {i}", target_link_count=4))
        for i in range(3)
    ]
    assert len(set(ids)) == 3
    assert sorted(orchestrator.active_runs()) == sorted(ids)

    results = await orchestrator.wait_all()
    await asyncio.sleep(0)

    assert [r.final_state for r in results] == [PipelineState.COMPLETED] * 3
    assert orchestrator.active_runs() == []
    for run_id in ids:
        assert orchestrator.status(run_id)["state"] == "COMPLETED"
        assert orchestrator.result(run_id).collected_link_count == 4
    # Three scrapes spread over the shared pool
    assert sum(snap["success_count"] for snap in orchestrator.proxy_health()) == 3


async def test_control_by_run_id(pool, settings, built):
    orchestrator = Orchestrator(pool, built, settings=settings)
    first = orchestrator.start(SearchQuery(sentence="first", target_link_count=4))
    second = orchestrator.start(SearchQuery(sentence="second", target_link_count=4))
    gate = asyncio.Event()
    built.created[0].scraper.gate = gate

    await _until(lambda: len(built.created[0].scraper.calls) == 1)
    assert orchestrator.pause(first) is True
    assert orchestrator.result(first) is None

    # The other run is unaffected
    assert (await orchestrator.wait(second)).final_state is PipelineState.COMPLETED
    gate.set()
    await asyncio.sleep(0.05)
    assert orchestrator.status(first)["state"] == "PAUSED"

    assert orchestrator.resume(first) is True
    assert (await orchestrator.wait(first)).final_state is PipelineState.COMPLETED


async def test_cancel_and_unknown_runs(pool, settings, built):
    orchestrator = Orchestrator(pool, built, settings=settings)
    run_id = orchestrator.start(SearchQuery(sentence="q", target_link_count=4))
    assert orchestrator.cancel(run_id) is True

    result = await orchestrator.wait(run_id)
    await asyncio.sleep(0)
    assert result.final_state is PipelineState.CANCELLED
    assert orchestrator.result(run_id).cause == "CANCELLED"

    with pytest.raises(UnknownRun):
        orchestrator.pause(run_id)  # archived runs cannot be controlled
    with pytest.raises(UnknownRun):
        orchestrator.status("missing")
    with pytest.raises(UnknownRun):
        orchestrator.result("missing")


async def test_failures_in_one_run_are_seen_by_another(pool, settings, executor_factory, link_factory):
    failing = executor_factory(scraper=[NetworkFailure("refused")])
    healthy = executor_factory(parser=[link_factory(4)])
    sources = iter([failing, healthy])
    orchestrator = Orchestrator(pool, lambda: next(sources), settings=settings)

    bad = orchestrator.start(SearchQuery(sentence="bad", target_link_count=4))
    assert (await orchestrator.wait(bad)).cause == "NETWORK_ERROR"
    assert all(snap["failure_count"] == 1 for snap in orchestrator.proxy_health())

    good = orchestrator.start(SearchQuery(sentence="good", target_link_count=4))
    assert (await orchestrator.wait(good)).final_state is PipelineState.COMPLETED


async def test_shutdown_cancels_active_runs(pool, settings, built):
    orchestrator = Orchestrator(pool, built, settings=settings)
    run_id = orchestrator.start(SearchQuery(sentence="q", target_link_count=4))
    gate = asyncio.Event()
    built.created[0].scraper.gate = gate
    await _until(lambda: len(built.created[0].scraper.calls) == 1)

    asyncio.get_running_loop().call_later(0.05, gate.set)
    await orchestrator.shutdown()
    await asyncio.sleep(0)

    assert orchestrator.active_runs() == []
    assert orchestrator.result(run_id).final_state is PipelineState.CANCELLED
