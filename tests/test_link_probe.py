import threading
from dataclasses import replace

from pureflow.adapters.base import AdapterError, AdapterTimeoutError, CheckResult
from pureflow.config import load_config
from pureflow.runctx import RunContext
from pureflow.storage import (
    create_affiliate_link,
    create_product,
    get_latest_probe_run,
    get_link,
    init_db,
    list_link_alerts,
    list_observations,
)
from pureflow.linkhealth import probe_all
from pureflow.utils import parse_iso


class ScriptedChecker:
    """Answers per URL from a queue of status codes or exceptions."""

    def __init__(self, script=None, default=200, response_time_ms=120):
        self.script = {url: list(items) for url, items in (script or {}).items()}
        self.default = default
        self.response_time_ms = response_time_ms
        self.checked = []
        self._lock = threading.Lock()

    def check(self, url, timeout):
        with self._lock:
            self.checked.append(url)
            queue = self.script.get(url)
            outcome = queue.pop(0) if queue else self.default
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, tuple):
            status, elapsed = outcome
            return CheckResult(status_code=status, response_time_ms=elapsed)
        return CheckResult(status_code=outcome, response_time_ms=self.response_time_ms)


def _link(conn, url, category="sleep"):
    product_id = create_product(conn, f"product for {url}", category)
    return create_affiliate_link(conn, product_id, url)


def test_two_failures_keep_link_active_third_opens_circuit(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    link = _link(conn, "https://shop.example/melatonin")
    checker = ScriptedChecker({link.original_url: [500, 500, 500]})
    config = load_config()

    probe_all(conn, checker, config)
    probe_all(conn, checker, config)
    assert get_link(conn, link.id).is_active is True

    summary = probe_all(conn, checker, config)
    stored = get_link(conn, link.id)
    assert stored.is_active is False
    assert stored.deactivated_reason == "circuit_open:3"
    assert summary.deactivated == [link.id]
    alerts = list_link_alerts(conn, link.id)
    assert [alert["alert_type"] for alert in alerts] == ["circuit_open"]


def test_success_resets_consecutive_failures(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    link = _link(conn, "https://shop.example/magnesium")
    checker = ScriptedChecker({link.original_url: [404, 404, 200]})
    config = load_config()

    probe_all(conn, checker, config)
    probe_all(conn, checker, config)
    summary = probe_all(conn, checker, config)

    observations = list_observations(conn, link.id)
    assert [obs.consecutive_failures for obs in observations] == [1, 2, 0]
    assert get_link(conn, link.id).is_active is True
    assert summary.recently_fixed == 1
    assert summary.working == 1


def test_deactivated_link_is_not_probed_or_reactivated(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    link = _link(conn, "https://shop.example/ashwagandha")
    checker = ScriptedChecker({link.original_url: [503, 503, 503, 200]})
    config = load_config()

    for _ in range(3):
        probe_all(conn, checker, config)
    assert get_link(conn, link.id).is_active is False

    summary = probe_all(conn, checker, config)

    assert summary.total == 0
    assert get_link(conn, link.id).is_active is False
    assert len(list_observations(conn, link.id)) == 3
    assert len(checker.checked) == 3


def test_transport_error_counts_as_failure_with_status_zero(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    link = _link(conn, "https://gone.example/")
    other = _link(conn, "https://fine.example/")
    checker = ScriptedChecker(
        {link.original_url: [AdapterTimeoutError("timeout after 10.0s"), AdapterError("network_error: refused")]}
    )
    config = load_config()

    first = probe_all(conn, checker, config)
    probe_all(conn, checker, config)

    assert first.total == 2
    assert first.broken == 1
    assert first.working == 1
    observations = list_observations(conn, link.id)
    assert [obs.status_code for obs in observations] == [0, 0]
    assert [obs.consecutive_failures for obs in observations] == [1, 2]
    assert observations[0].error_message == "timeout after 10.0s"
    assert observations[1].is_working is False
    assert get_link(conn, other.id).last_checked_at is not None


def test_unexpected_exception_does_not_abort_loop(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    broken = _link(conn, "https://a.example/")
    healthy = _link(conn, "https://b.example/")
    checker = ScriptedChecker({broken.original_url: [RuntimeError("boom")]})

    summary = probe_all(conn, checker, load_config())

    assert summary.total == 2
    assert summary.broken == 1
    assert list_observations(conn, healthy.id)[0].is_working is True


def test_slow_response_is_tracked_without_deactivation(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    link = _link(conn, "https://slow.example/")
    checker = ScriptedChecker({link.original_url: [(200, 4500)]})

    summary = probe_all(conn, checker, load_config())

    assert summary.slow == 1
    assert summary.working == 1
    obs = list_observations(conn, link.id)[0]
    assert obs.is_slow is True
    assert obs.is_working is True
    assert get_link(conn, link.id).is_active is True


def test_slow_failure_counts_as_broken_not_slow(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    link = _link(conn, "https://slow-broken.example/")
    checker = ScriptedChecker({link.original_url: [(503, 5000)]})

    summary = probe_all(conn, checker, load_config())

    assert summary.broken == 1
    assert summary.slow == 0
    assert get_latest_probe_run(conn)["slow"] == 0
    obs = list_observations(conn, link.id)[0]
    assert obs.is_working is False
    assert obs.is_slow is True


def test_observations_are_ordered_and_consistent(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    link = _link(conn, "https://order.example/")
    sequence = [500, 200, 500, 500, 200, 500]
    checker = ScriptedChecker({link.original_url: list(sequence)})
    config = load_config()

    for _ in sequence:
        probe_all(conn, checker, config)

    observations = list_observations(conn, link.id)
    checked = [parse_iso(obs.checked_at) for obs in observations]
    assert checked == sorted(checked)

    expected = []
    run = 0
    for status in sequence:
        run = 0 if status == 200 else run + 1
        expected.append(run)
    assert [obs.consecutive_failures for obs in observations] == expected


def test_parallel_probing_keeps_per_link_history(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    links = [_link(conn, f"https://parallel.example/{index}") for index in range(6)]
    script = {link.original_url: [500, 500, 200] for link in links}
    checker = ScriptedChecker(script)
    config = load_config()
    config = replace(config, links=replace(config.links, probe_concurrency=3))

    for _ in range(3):
        summary = probe_all(conn, checker, config)
        assert summary.total == 6

    for link in links:
        observations = list_observations(conn, link.id)
        assert [obs.consecutive_failures for obs in observations] == [1, 2, 0]


def test_cancelled_run_is_marked_aborted(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    _link(conn, "https://one.example/")
    _link(conn, "https://two.example/")
    ctx = RunContext()
    ctx.cancel("shutdown")
    checker = ScriptedChecker()

    summary = probe_all(conn, checker, load_config(), ctx=ctx)

    assert summary.aborted is True
    assert summary.total == 0
    assert checker.checked == []
    assert get_latest_probe_run(conn)["aborted"] is True


def test_deadline_stops_remaining_links(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    for index in range(3):
        _link(conn, f"https://deadline.example/{index}")
    now = [0.0]

    class AdvancingChecker(ScriptedChecker):
        def check(self, url, timeout):
            now[0] += 6
            return super().check(url, timeout)

    ctx = RunContext(deadline_seconds=10, clock=lambda: now[0])
    summary = probe_all(conn, AdvancingChecker(), load_config(), ctx=ctx)

    assert summary.aborted is True
    assert summary.total == 2


def test_summary_is_persisted(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    _link(conn, "https://x.example/")
    checker = ScriptedChecker({"https://x.example/": [404]})

    probe_all(conn, checker, load_config())

    run = get_latest_probe_run(conn)
    assert run["total"] == 1
    assert run["broken"] == 1
    assert run["aborted"] is False
