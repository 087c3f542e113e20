import json

import pytest

from scrapestream.models import ProxyProtocol, ProxyRecord, ProxyStatus, V2RayParams
from scrapestream.storage import ProxyStore


def test_missing_file_is_empty_store(tmp_path):
    assert ProxyStore(tmp_path / "missing.json").load() == []


def test_save_and_load_keeps_health(tmp_path):
    store = ProxyStore(tmp_path / "nested" / "proxies.json")
    records = [
        ProxyRecord(
            protocol=ProxyProtocol.SOCKS5,
            host="10.0.0.1",
            port=1080,
            status=ProxyStatus.DEGRADED,
            success_count=3,
            failure_count=2,
            avg_response_time_ms=150.0,
        ),
        ProxyRecord(
            protocol=ProxyProtocol.VLESS,
            host="v.test",
            port=443,
            params=V2RayParams(uuid="abc", local_port=20000),
        ),
    ]

    assert store.save(records) == 2
    assert not (tmp_path / "nested" / "proxies.json.tmp").exists()

    loaded = store.load()
    assert [record.id for record in loaded] == [record.id for record in records]
    assert loaded[0].status is ProxyStatus.DEGRADED
    assert loaded[0].failure_count == 2
    assert loaded[1].params.local_port == 20000


def test_save_writes_versioned_document(tmp_path):
    path = tmp_path / "proxies.json"
    ProxyStore(path).save([])
    document = json.loads(path.read_text(encoding="utf-8"))
    assert document["version"] == 1
    assert document["proxies"] == []
    assert "saved_at" in document


def test_corrupt_file_raises(tmp_path):
    path = tmp_path / "proxies.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(ValueError, match="corrupt"):
        ProxyStore(path).load()


def test_invalid_entries_are_skipped(tmp_path):
    path = tmp_path / "proxies.json"
    path.write_text(
        json.dumps(
            {
                "proxies": [
                    {"id": "ok", "protocol": "HTTP", "host": "h.test", "port": 8080},
                    {"id": "bad-port", "protocol": "HTTP", "host": "h.test", "port": 0},
                    {"id": "no-host", "protocol": "HTTP", "port": 80},
                ]
            }
        ),
        encoding="utf-8",
    )
    loaded = ProxyStore(path).load()
    assert [record.id for record in loaded] == ["ok"]
