# SPDX-License-Identifier: MIT

from kdcube_credits.economics.ids import SnowflakeGenerator, new_transaction_no, new_entry_id


def test_snowflake_ids_unique_and_increasing():
    gen = SnowflakeGenerator(worker_id=7)
    ids = [gen.next_id() for _ in range(5000)]
    assert len(set(ids)) == len(ids)
    assert ids == sorted(ids)
    assert all((i >> 12) & 0x3FF == 7 for i in ids)


def test_transaction_no_is_decimal_string():
    txno = new_transaction_no()
    assert isinstance(txno, str) and txno.isdigit()
    assert new_transaction_no() != txno


def test_entry_ids_are_unique():
    assert new_entry_id() != new_entry_id()
