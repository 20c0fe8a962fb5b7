from datetime import datetime, timedelta

import pytest

from api.algorithm_registry import (
    deprecate_version,
    get_current_version,
    list_versions,
    register_version,
)
from api.response_envelope import error_envelope, rejected_envelope, success_envelope
from api.settings import ProcessAllocationSettings


def test_every_operation_has_a_version():
    for operation in (
        "save_flowchart", "update_node", "delete_node", "delete_scope", "get_allocations",
        "update_allocations", "auto_distribute", "calculate_process_summary", "query_audit_log",
    ):
        assert get_current_version(operation).version == "1.0.0"


def test_unknown_operation():
    with pytest.raises(KeyError):
        get_current_version("recalculate_everything")


def test_future_version_stays_dormant_until_effective():
    register_version("rollup_preview", "1.0.0", "current")
    register_version(
        "rollup_preview", "2.0.0", "scheduled",
        effective_from=datetime.utcnow() + timedelta(days=30),
    )
    assert get_current_version("rollup_preview").version == "1.0.0"


def test_deprecate_falls_back_to_previous():
    register_version("split_preview", "1.0.0", "first", effective_from=datetime(2020, 1, 1))
    register_version("split_preview", "1.1.0", "second", effective_from=datetime(2021, 1, 1))
    assert get_current_version("split_preview").version == "1.1.0"

    deprecate_version("split_preview", "1.1.0")
    assert get_current_version("split_preview").version == "1.0.0"
    assert len(list_versions("split_preview")) == 2

    with pytest.raises(KeyError):
        deprecate_version("split_preview", "9.9.9")


def test_envelopes():
    ok = success_envelope("get_allocations", "1.0.0", {"a": 1}, "done", "audit-1", [{"type": "W"}])
    assert ok.ok
    assert ok.to_dict()["warnings"] == [{"type": "W"}]

    rejected = rejected_envelope("save_flowchart", "1.0.0", {"code": "X"}, "blocked", "audit-2")
    assert not rejected.ok
    assert rejected.status == "rejected"

    failed = error_envelope("delete_node", "1.0.0", "boom", "audit-3")
    assert failed.data is None
    assert failed.message == "boom"


def test_settings_from_env(monkeypatch):
    monkeypatch.setenv("PROCESS_ALLOC_DB_URL", "sqlite://")
    monkeypatch.setenv("PROCESS_ALLOC_SUM_TOLERANCE", "0.05")
    monkeypatch.setenv("PROCESS_ALLOC_MIN_CONTRIBUTION", "not-a-number")
    monkeypatch.setenv("PROCESS_ALLOC_LOG_LEVEL", "debug")

    settings = ProcessAllocationSettings.from_env()
    assert settings.database_url == "sqlite://"
    assert settings.sum_tolerance == 0.05
    assert settings.min_detail_contribution == 0.0001
    assert settings.log_level == "DEBUG"


def test_settings_defaults(monkeypatch):
    for name in ("DB_URL", "SUM_TOLERANCE", "MIN_CONTRIBUTION", "LOG_LEVEL"):
        monkeypatch.delenv(f"PROCESS_ALLOC_{name}", raising=False)
    settings = ProcessAllocationSettings.from_env()
    assert settings.database_url == "sqlite:///process_allocation.db"
    assert settings.sum_tolerance == 0.01
