from scrapestream.aggregator import ResultAggregator
from scrapestream.models import SearchQuery


def _aggregator(target=3):
    return ResultAggregator(SearchQuery(sentence="coffee roasters", target_link_count=target))


def test_fold_counts_distinct_links():
    aggregator = _aggregator()
    count, reached = aggregator.fold(0, ["https://a.test/", " https://a.test/ ", "https://b.test/", ""])
    assert count == 2
    assert reached is False
    assert aggregator.links == ["https://a.test/", "https://b.test/"]


def test_fold_detects_goal():
    aggregator = _aggregator(target=2)
    aggregator.fold(0, ["https://a.test/"])
    count, reached = aggregator.fold(1, ["https://a.test/", "https://b.test/"])
    assert (count, reached) == (2, True)


def test_fold_never_lowers_count():
    aggregator = _aggregator()
    count, _ = aggregator.fold(5, ["https://a.test/"])
    assert count == 5


def test_apply_updates_query_description():
    aggregator = _aggregator(target=2)
    count, _ = aggregator.fold(0, ["https://a.test/", "https://b.test/"])
    aggregator.apply(count)
    assert aggregator.query.link_count == 2
    assert aggregator.query.description == "Collected 2/2 links for 'coffee roasters' (goal reached)"


def test_apply_ignores_decrease():
    aggregator = _aggregator()
    aggregator.apply(2)
    before = aggregator.query.updated_at
    aggregator.apply(1)
    assert aggregator.query.link_count == 2
    assert aggregator.query.updated_at == before


def test_describe_partial():
    aggregator = _aggregator(target=4)
    aggregator.fold(0, ["https://a.test/"])
    assert aggregator.describe().endswith("(partial)")
