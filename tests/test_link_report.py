from pureflow.adapters.base import CheckResult
from pureflow.config import load_config
from pureflow.linkhealth import get_health_report, probe_all
from pureflow.models import LinkHealthObservation
from pureflow.storage import create_affiliate_link, create_product, init_db, insert_observation
from pureflow.utils import utc_now_iso_offset


class StatusChecker:
    def __init__(self, statuses):
        self.statuses = statuses

    def check(self, url, timeout):
        return CheckResult(status_code=self.statuses.get(url, 200), response_time_ms=50)


def _observation(link_id, checked_at, is_working, response_time_ms, consecutive=0):
    return LinkHealthObservation(
        id=None,
        link_id=link_id,
        checked_at=checked_at,
        status_code=200 if is_working else 500,
        is_working=is_working,
        is_slow=response_time_ms > 3000,
        response_time_ms=response_time_ms,
        consecutive_failures=consecutive,
        error_message=None if is_working else "HTTP 500",
    )


def test_empty_report_has_zero_summary(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))

    report = get_health_report(conn, load_config())

    assert report["summary"]["total"] == 0
    assert report["summary"]["last_run_at"] is None
    assert report["broken_links"] == []
    assert report["slow_links"] == []


def test_report_uses_latest_run_and_sorts_broken_links(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    product_id = create_product(conn, "Sleep kit", "sleep")
    ok = create_affiliate_link(conn, product_id, "https://ok.example/")
    flaky = create_affiliate_link(conn, product_id, "https://flaky.example/")
    dead = create_affiliate_link(conn, product_id, "https://dead.example/")
    config = load_config()

    probe_all(conn, StatusChecker({flaky.original_url: 500, dead.original_url: 500}), config)
    probe_all(conn, StatusChecker({dead.original_url: 404}), config)

    report = get_health_report(conn, config)

    assert report["summary"]["total"] == 3
    assert report["summary"]["broken"] == 1
    assert report["summary"]["recently_fixed"] == 1
    assert [link["id"] for link in report["broken_links"]] == [dead.id]
    assert report["broken_links"][0]["consecutive_failures"] == 2
    assert ok.id not in [link["id"] for link in report["broken_links"]]


def test_slow_links_use_seven_day_working_average(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    product_id = create_product(conn, "Tea", "sleep")
    slow = create_affiliate_link(conn, product_id, "https://slow.example/")
    fast = create_affiliate_link(conn, product_id, "https://fast.example/")
    stale = create_affiliate_link(conn, product_id, "https://stale.example/")

    recent = utc_now_iso_offset(seconds=-3600)
    insert_observation(conn, _observation(slow.id, recent, True, 4000))
    insert_observation(conn, _observation(slow.id, utc_now_iso_offset(seconds=-60), True, 3500))
    insert_observation(conn, _observation(fast.id, recent, True, 200))
    insert_observation(conn, _observation(fast.id, utc_now_iso_offset(seconds=-60), False, 9000, 1))
    insert_observation(conn, _observation(stale.id, utc_now_iso_offset(seconds=-10 * 86400), True, 9000))

    report = get_health_report(conn, load_config())

    assert [link["id"] for link in report["slow_links"]] == [slow.id]
    assert report["slow_links"][0]["average_response_time"] == 3750
