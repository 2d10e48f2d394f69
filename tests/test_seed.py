from __future__ import annotations

from pathlib import Path

import pytest

from uptime_checks.targets import TargetType
from uptime_registry import db as dbm
from uptime_registry.seed import SeedError, apply_seed, parse_maintenance, seed_from_file
from uptime_registry.settings import RegistrySettings


SEED = """
targets:
  - id: api
    name: API
    type: https
    owner_id: team-a
    url: https://api.example.test/health
    interval: 30
    max_retries: 2
    headers:
      X-Probe: "1"
  - id: db
    name: Postgres
    type: port
    owner_id: team-a
    hostname: db.internal
    port: 5432
    active: false
channels:
  - id: slack-ops
    owner_id: team-a
    name: Ops
    type: Slack
    config:
      webhook_url: https://hooks.slack.test/x
maintenance:
  - id: mw1
    title: Database upgrade
    start: 2026-01-01T00:00:00Z
    end: 2026-01-01T02:00:00Z
    targets: [db]
"""


@pytest.fixture()
def settings(tmp_path: Path) -> RegistrySettings:
    return RegistrySettings(db_path=str(tmp_path / "uptime.db"))


def test_seed_from_file_upserts_everything(tmp_path: Path, settings: RegistrySettings) -> None:
    path = tmp_path / "seed.yaml"
    path.write_text(SEED, encoding="utf-8")

    result = seed_from_file(settings, path)

    assert (result.targets, result.channels, result.maintenance) == (2, 1, 1)
    api = dbm.get_target(settings, target_id="api")
    assert api is not None
    assert api.type is TargetType.HTTP
    assert api.interval == 30
    assert api.max_retries == 2
    assert api.headers == {"X-Probe": "1"}
    assert [t.id for t in dbm.list_active_targets(settings)] == ["api"]

    channel = dbm.get_channel(settings, channel_id="slack-ops")
    assert channel is not None
    assert channel.type == "slack"

    # 2026-01-01T01:00:00Z
    assert dbm.is_under_maintenance(settings, target_id="db", now_ts=1767229200.0) is True
    assert dbm.is_under_maintenance(settings, target_id="api", now_ts=1767229200.0) is False


def test_seed_is_idempotent(settings: RegistrySettings) -> None:
    cfg = {"targets": [{"id": "x", "name": "X", "type": "dns", "owner_id": "o", "hostname": "example.test"}]}
    apply_seed(settings, cfg)
    cfg["targets"][0]["name"] = "X renamed"
    apply_seed(settings, cfg)

    target = dbm.get_target(settings, target_id="x")
    assert target is not None
    assert target.name == "X renamed"
    assert len(dbm.list_active_targets(settings)) == 1


def test_bad_entries_write_nothing(settings: RegistrySettings) -> None:
    cfg = {
        "targets": [
            {"id": "ok", "name": "OK", "type": "http", "owner_id": "o", "url": "https://ok.test"},
            {"id": "bad", "name": "Bad", "type": "smtp", "owner_id": "o"},
        ]
    }
    with pytest.raises(SeedError, match="Unsupported target type"):
        apply_seed(settings, cfg)

    dbm.ensure_schema(settings)
    assert dbm.get_target(settings, target_id="ok") is None


def test_maintenance_window_must_end_after_start() -> None:
    with pytest.raises(SeedError, match="end must be after start"):
        parse_maintenance({"id": "m", "title": "t", "start": 2000, "end": 1000})

    window = parse_maintenance({"id": "m", "title": "t", "start": "1000", "end": "2026-01-01"})
    assert window.start_ts == 1000.0
    assert window.end_ts == 1767225600.0


def test_missing_and_invalid_files(tmp_path: Path, settings: RegistrySettings) -> None:
    with pytest.raises(SeedError, match="not found"):
        seed_from_file(settings, tmp_path / "nope.yaml")

    listy = tmp_path / "list.yaml"
    listy.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(SeedError, match="must contain a mapping"):
        seed_from_file(settings, listy)
