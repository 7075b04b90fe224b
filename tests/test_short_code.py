import re

import pytest

from pureflow.storage import (
    SHORT_CODE_MAX_ATTEMPTS,
    ShortCodeExhaustedError,
    create_affiliate_link,
    create_product,
    generate_short_code,
    init_db,
)


def test_generated_code_shape():
    code = generate_short_code()
    assert re.fullmatch(r"[A-Za-z0-9]{8}", code)


def test_collision_is_retried(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    product_id = create_product(conn, "Melatonin", "sleep")
    create_affiliate_link(conn, product_id, "https://a.example/", short_code_factory=lambda: "AAAA1111")
    codes = iter(["AAAA1111", "AAAA1111", "BBBB2222"])

    link = create_affiliate_link(conn, product_id, "https://b.example/", short_code_factory=lambda: next(codes))

    assert link.short_code == "BBBB2222"
    assert link.is_active is True
    assert link.ctr_14d == 0


def test_exhausted_short_codes_raise(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    product_id = create_product(conn, "Melatonin", "sleep")
    create_affiliate_link(conn, product_id, "https://a.example/", short_code_factory=lambda: "SAMECODE")
    calls = []

    def _same():
        calls.append(1)
        return "SAMECODE"

    with pytest.raises(ShortCodeExhaustedError):
        create_affiliate_link(conn, product_id, "https://b.example/", short_code_factory=_same)
    assert len(calls) == SHORT_CODE_MAX_ATTEMPTS
