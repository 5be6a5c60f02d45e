# statement_analyzer/logic.py
import json
import re
from datetime import datetime
from typing import Iterable, List, Optional, Sequence

from pydantic import ValidationError

from .errors import MalformedResponseError, NotBankStatementError
from .schema import RawChunkResult, RawTransaction, StatementReport, Transaction

# -------- Response decoding --------

FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.MULTILINE)
THINK_TAG_RE = re.compile(r"<think>[\s\S]*?</think>", re.IGNORECASE)
OUTER_OBJECT_RE = re.compile(r"\{[\s\S]*\}")

PLACEHOLDERS = {"", "...", "n/a"}


def parse_response_json(text: Optional[str]) -> dict:
    """
    Decode a model reply as a JSON object. Direct parse first; failing that,
    take the outermost {...} span (after dropping code fences and <think>
    traces) and parse again.
    """
    text = (text or "").strip()
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        cleaned = THINK_TAG_RE.sub("", FENCE_RE.sub("", text))
        match = OUTER_OBJECT_RE.search(cleaned)
        if not match:
            raise MalformedResponseError("Invalid JSON response from AI: no JSON object found")
        try:
            data = json.loads(match.group(0))
        except json.JSONDecodeError as e:
            raise MalformedResponseError(f"Invalid JSON response from AI: {e}") from e
    if not isinstance(data, dict):
        raise MalformedResponseError(f"Invalid JSON response from AI: expected an object, got {type(data).__name__}")
    return data


def parse_chunk_response(text: Optional[str]) -> RawChunkResult:
    data = parse_response_json(text)
    try:
        return RawChunkResult.model_validate(data)
    except ValidationError as e:
        raise MalformedResponseError(f"JSON response from AI does not match the schema: {e}") from e


# -------- Normalisation --------

def coerce_number(value) -> Optional[float]:
    """
    Numbers pass through; strings lose currency symbols, commas and spaces.
    Anything else (objects, lists, booleans) is not a number.
    """
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str):
        return None
    cleaned = re.sub(r"[^0-9.]", "", value)
    try:
        return float(cleaned)
    except ValueError:
        return None


def normalize_transactions(raw: Iterable[RawTransaction]) -> List[Transaction]:
    out: List[Transaction] = []
    for t in raw:
        if not t.date or not t.amount or isinstance(t.date, (dict, list)):
            continue
        amount = coerce_number(t.amount)
        if amount is None:
            continue
        out.append(
            Transaction(
                date=str(t.date).strip(),
                description=re.sub(r"\s+", " ", str(t.description or "")).strip(),
                amount=amount,
                balance=coerce_number(t.balance) or 0.0,
            )
        )
    return out


def dedupe_transactions(txs: Iterable[Transaction]) -> List[Transaction]:
    """Drop repeats of (date, description, amount, balance); first one wins."""
    seen = set()
    out: List[Transaction] = []
    for t in txs:
        key = (t.date, t.description, t.amount, t.balance)
        if key in seen:
            continue
        seen.add(key)
        out.append(t)
    return out


# -------- Dates --------

EPOCH = datetime(1970, 1, 1)
DMY_RE = re.compile(r"^(\d{1,2})[/\-](\d{1,2})[/\-](\d{2,4})$")
ISO_RE = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})$")
GENERIC_FORMATS = (
    "%Y-%m-%dT%H:%M:%S",
    "%Y/%m/%d",
    "%d %b %Y",
    "%d-%b-%Y",
    "%d-%b-%y",
    "%d %B %Y",
    "%b %d, %Y",
    "%B %d, %Y",
    "%d.%m.%Y",
)


def _safe_date(year: int, month: int, day: int) -> datetime:
    try:
        return datetime(year, month, day)
    except ValueError:
        return EPOCH


def parse_statement_date(text: Optional[str]) -> datetime:
    """
    Best-effort date for sorting. Slash/dash dates are day-first (Nigerian
    statements) unless the second segment can only be a day. Anything
    unparseable sorts first as the Unix epoch.
    """
    if not text:
        return EPOCH
    s = str(text).strip()

    m = DMY_RE.match(s)
    if m:
        p1, p2, p3 = m.groups()
        year = int(f"20{p3}") if len(p3) == 2 else int(p3)
        v1, v2 = int(p1), int(p2)
        if v1 > 12:
            return _safe_date(year, v2, v1)
        if v2 > 12:
            return _safe_date(year, v1, v2)
        return _safe_date(year, v2, v1)

    m = ISO_RE.match(s)
    if m:
        yyyy, mm, dd = (int(g) for g in m.groups())
        return _safe_date(yyyy, mm, dd)

    try:
        return datetime.fromisoformat(s).replace(tzinfo=None)
    except ValueError:
        pass
    for fmt in GENERIC_FORMATS:
        try:
            return datetime.strptime(s, fmt)
        except ValueError:
            continue
    return EPOCH


# -------- Aggregation --------

def _first_header_value(results: Sequence[Optional[RawChunkResult]], field: str) -> str:
    for res in results:
        if res is None:
            continue
        value = getattr(res, field)
        if value and value.lower() not in PLACEHOLDERS:
            return value
    return ""


def aggregate_chunks(results: Sequence[Optional[RawChunkResult]]) -> StatementReport:
    """
    Fold per-chunk results (in chunk order) into one report. Raises
    NotBankStatementError if any chunk flagged the document.
    """
    if any(res is not None and res.is_not_bank_statement for res in results):
        raise NotBankStatementError()

    txs: List[Transaction] = []
    for res in results:
        if res is not None:
            txs.extend(normalize_transactions(res.transactions))
    txs = dedupe_transactions(txs)
    # stable: same-day rows keep statement order
    txs.sort(key=lambda t: parse_statement_date(t.date))

    report = StatementReport(
        account_name=_first_header_value(results, "account_name"),
        account_number=_first_header_value(results, "account_number"),
        bank_name=_first_header_value(results, "bank_name"),
        transactions=txs,
    )
    if txs:
        report.start_date = txs[0].date
        report.end_date = txs[-1].date
        report.total_credits = round(sum(t.amount for t in txs), 2)
    return report
