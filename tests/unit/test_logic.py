import json
from datetime import datetime

import pytest

from statement_analyzer.errors import MalformedResponseError, NotBankStatementError
from statement_analyzer.logic import (
    EPOCH,
    aggregate_chunks,
    coerce_number,
    dedupe_transactions,
    normalize_transactions,
    parse_chunk_response,
    parse_statement_date,
)
from statement_analyzer.schema import RawChunkResult, RawTransaction, Transaction


def _chunk(transactions, **header) -> RawChunkResult:
    return RawChunkResult.model_validate({"transactions": transactions, **header})


def test_parse_chunk_response_plain_json() -> None:
    res = parse_chunk_response('{"accountName": "ADA OBI", "transactions": [{"date": "01/02/2026", "amount": 5}]}')

    assert res.account_name == "ADA OBI"
    assert res.transactions[0].amount == 5
    assert res.is_not_bank_statement is False


def test_parse_chunk_response_extracts_object_from_prose() -> None:
    text = 'Here you go:\n```json\n{"isNotBankStatement": true}\n```\nThanks'

    assert parse_chunk_response(text).is_not_bank_statement is True


def test_parse_chunk_response_rejects_unparseable_text() -> None:
    with pytest.raises(MalformedResponseError):
        parse_chunk_response("I could not read the document")
    with pytest.raises(MalformedResponseError):
        parse_chunk_response("{ broken json ")
    with pytest.raises(MalformedResponseError):
        parse_chunk_response("[1, 2, 3]")


def test_raw_chunk_result_tolerates_odd_shapes() -> None:
    res = RawChunkResult.model_validate(
        {"accountName": None, "transactions": [{"date": "01/01/2026", "amount": 1}, "junk", 3]}
    )

    assert res.account_name == ""
    assert len(res.transactions) == 1
    assert RawChunkResult.model_validate({"transactions": "none"}).transactions == []


def test_coerce_number_strips_currency_and_commas() -> None:
    assert coerce_number("₦1,000.50") == 1000.50
    assert coerce_number("2000") == 2000
    assert coerce_number(350) == 350.0
    assert coerce_number("N/A") is None
    assert coerce_number(None) is None


def test_normalize_drops_records_missing_date_or_amount() -> None:
    raw = [
        RawTransaction(date="01/02/2026", description="  NIP  TRF   FROM  ADA ", amount="₦1,000.50", balance="5,000"),
        RawTransaction(description="no date", amount="2000"),
        RawTransaction(date="02/02/2026", description="no amount"),
        RawTransaction(date="03/02/2026", description="plain", amount="2000"),
    ]

    txs = normalize_transactions(raw)

    assert [t.description for t in txs] == ["NIP TRF FROM ADA", "plain"]
    assert txs[0].amount == 1000.50
    assert txs[0].balance == 5000.0
    assert txs[1].amount == 2000
    assert txs[1].balance == 0.0
    assert all(t.type == "credit" for t in txs)


def test_dedupe_is_idempotent() -> None:
    a = Transaction(date="01/01/2026", description="x", amount=1, balance=10)
    b = Transaction(date="01/01/2026", description="x", amount=1, balance=11)
    once = dedupe_transactions([a, a, b, a])
    twice = dedupe_transactions(once)

    assert once == [a, b]
    assert twice == once


@pytest.mark.parametrize(
    "text, expected",
    [
        ("15/01/2026", datetime(2026, 1, 15)),
        ("01/02/2026", datetime(2026, 2, 1)),  # ambiguous -> day first
        ("02/15/2026", datetime(2026, 2, 15)),  # second segment must be the day
        ("5-3-26", datetime(2026, 3, 5)),
        ("2025-12-20", datetime(2025, 12, 20)),
        ("20 Dec 2025", datetime(2025, 12, 20)),
        ("31/02/2026", EPOCH),
        ("yesterday", EPOCH),
        ("", EPOCH),
    ],
)
def test_parse_statement_date(text: str, expected: datetime) -> None:
    assert parse_statement_date(text) == expected


def test_aggregate_sorts_by_date_and_sets_range() -> None:
    results = [
        _chunk(
            [
                {"date": "15/01/2026", "description": "a", "amount": 100, "balance": 100},
                {"date": "01/02/2026", "description": "b", "amount": "200.25", "balance": 300},
            ],
            accountName="ADA OBI",
            accountNumber="0123456789",
            bankName="GTBank",
        ),
        _chunk([{"date": "20/12/2025", "description": "c", "amount": 50, "balance": 50}]),
    ]

    report = aggregate_chunks(results)

    assert [t.date for t in report.transactions] == ["20/12/2025", "15/01/2026", "01/02/2026"]
    assert report.start_date == "20/12/2025"
    assert report.end_date == "01/02/2026"
    assert report.total_credits == 350.25
    assert (report.account_name, report.account_number, report.bank_name) == ("ADA OBI", "0123456789", "GTBank")


def test_aggregate_removes_rows_repeated_across_chunk_seam() -> None:
    row = {"date": "02/01/2026", "description": "TRF FROM OBI", "amount": 500, "balance": 1500}
    results = [_chunk([row]), _chunk([row, {**row, "balance": 2000}])]

    report = aggregate_chunks(results)

    assert len(report.transactions) == 2
    assert report.total_credits == 1000


def test_aggregate_header_skips_placeholders() -> None:
    results = [
        _chunk([], accountName="...", bankName="N/A"),
        _chunk([], accountName="ADA OBI", bankName="Access Bank"),
        _chunk([], accountName="SOMEONE ELSE"),
    ]

    report = aggregate_chunks(results)

    assert report.account_name == "ADA OBI"
    assert report.bank_name == "Access Bank"


def test_aggregate_fails_if_any_chunk_is_not_a_statement() -> None:
    good = _chunk([{"date": "01/01/2026", "description": "x", "amount": 1, "balance": 1}])
    bad = RawChunkResult.model_validate({"isNotBankStatement": True})

    with pytest.raises(NotBankStatementError):
        aggregate_chunks([good, good, bad])


def test_aggregate_of_empty_results_is_empty_report() -> None:
    report = aggregate_chunks([_chunk([]), None])

    assert report.transactions == []
    assert report.total_credits == 0
    assert report.start_date == ""


def test_report_serialises_with_camel_case_keys() -> None:
    report = aggregate_chunks([_chunk([{"date": "01/01/2026", "description": "x", "amount": 1, "balance": 1}])])
    data = report.model_dump(by_alias=True)

    assert set(data) == {
        "accountName", "accountNumber", "bankName", "startDate", "endDate", "transactions", "totalCredits",
    }
    assert data["transactions"][0]["type"] == "credit"


def test_coerce_number_rejects_non_scalars() -> None:
    assert coerce_number({"value": 5}) is None
    assert coerce_number([5]) is None
    assert coerce_number(True) is None


def test_chunk_with_one_bad_record_keeps_the_good_rows() -> None:
    res = parse_chunk_response(json.dumps({
        "transactions": [
            {"date": "01/01/2026", "description": "good", "amount": 100, "balance": 100},
            {"date": "02/01/2026", "description": "object amount", "amount": {"value": 5}, "balance": 105},
            {"date": "03/01/2026", "description": "list balance", "amount": "50", "balance": [150]},
            {"date": {"day": 4}, "description": "object date", "amount": 20, "balance": 170},
        ]
    }))

    report = aggregate_chunks([res])

    assert [t.description for t in report.transactions] == ["good", "list balance"]
    assert report.transactions[1].balance == 0.0
    assert report.total_credits == 150
